import base64
import datetime
import json

import apko_oci.client as oc
import apko_oci.model as om


def test_append_b64_padding_if_missing():
    def encode_and_decode(octets: bytes):
        encoded = base64.b64encode(octets).decode('utf-8')
        encoded_wo_padding = encoded.strip('=')

        assert encoded == oc._append_b64_padding_if_missing(encoded_wo_padding)

    encode_and_decode(b'a')
    encode_and_decode(b'ab')
    encode_and_decode(b'abc')
    encode_and_decode(b'abcd')


def test_oauth_token_from_jwt():
    now = int(datetime.datetime.now(tz=datetime.timezone.utc).timestamp())
    payload = base64.urlsafe_b64encode(
        json.dumps({'iat': now, 'exp': now + 300}).encode('utf-8'),
    ).decode('utf-8').rstrip('=')

    token = oc.OauthToken(token=f'header.{payload}.signature', scope='repository:foo:pull')

    assert token.expires_in == 300
    assert token.valid()


def test_oauth_token_cache():
    cache = oc.OauthTokenCache()
    token = oc.OauthToken(token='opaque', scope='repository:foo:pull')

    cache.set_token(token)
    assert cache.token(scope='repository:foo:pull') is token
    assert cache.token(scope='repository:bar:pull') is None

    cache.set_auth_method('example.org/foo:1', oc.AuthMethod.BASIC)
    assert cache.auth_method('example.org/bar:2') is oc.AuthMethod.BASIC
    assert cache.auth_method('other.org/foo:1') is None


def test_routes():
    routes = oc.OciRoutes()
    ref = om.OciImageReference('example.org/some/image:1.2.3')

    assert routes.manifest_url(ref) == 'https://example.org/v2/some/image/manifests/1.2.3'
    assert routes.blob_url(ref, digest='sha256:abc') == \
        'https://example.org/v2/some/image/blobs/sha256:abc'
    assert routes.uploads_url(ref) == 'https://example.org/v2/some/image/blobs/uploads/'


def test_scope():
    assert oc._scope('example.org/some/image:1', action='pull') == 'repository:some/image:pull'
