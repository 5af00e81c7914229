import base64
import functools
import json

import pytest

import apko_oci.auth as oa

fake_creds = oa.OciBasicAuthCredentials(username='u', password='p')

mk_cfg = functools.partial(
    oa.OciConfig,
    credentials=fake_creds,
)

ro = oa.Privileges.READONLY
rw = oa.Privileges.READWRITE
rd = None


def test_OciConfig_matching():
    no_restrictions = mk_cfg(privileges=rd, url_prefixes=())

    # if no restrictions are specified, everything should match
    assert no_restrictions.valid_for(image_reference='foo', privileges=rd)
    assert no_restrictions.valid_for(image_reference='foo', privileges=ro)
    assert no_restrictions.valid_for(image_reference='foo', privileges=rw)

    with_url_prefix = mk_cfg(privileges=rd, url_prefixes=('example1.org/foo', 'example2.org/bar'))

    assert with_url_prefix.valid_for(image_reference='example1.org/foo/bar', privileges=rw)
    assert with_url_prefix.valid_for(image_reference='example2.org/bar/foo')
    assert not with_url_prefix.valid_for(image_reference='not.example.org/foo')

    # will be normalised to `registry-1.docker.io/library/alpine`
    w_normalised_prefix = mk_cfg(privileges=rd, url_prefixes=('alpine',))

    assert w_normalised_prefix.valid_for(image_reference='alpine:3')


def test_OciConfig_privileges():
    readonly = mk_cfg(privileges=ro)

    assert readonly.valid_for(image_reference='foo', privileges=ro)
    assert not readonly.valid_for(image_reference='foo', privileges=rw)


def test_mk_credentials_lookup():
    lookup = oa.mk_credentials_lookup(
        cfgs=mk_cfg(privileges=rw, url_prefixes=('example.org',)),
    )

    assert lookup(image_reference='example.org/foo:1') is fake_creds
    assert lookup(image_reference='other.org/foo:1', absent_ok=True) is None

    with pytest.raises(ValueError):
        lookup(image_reference='other.org/foo:1')


def _write_docker_cfg(path, auths: dict):
    with open(path, 'w') as f:
        json.dump({'auths': auths}, f)
    return str(path)


def test_docker_credentials_lookup(tmp_path):
    docker_cfg = _write_docker_cfg(
        tmp_path / 'config.json',
        auths={
            'https://example.org:5000/v2/': {
                'auth': base64.b64encode(b'user:pass:word').decode('utf-8'),
            },
        },
    )
    lookup = oa.docker_credentials_lookup(docker_cfg=docker_cfg)

    # ports are ignored for matching
    creds = lookup(image_reference='example.org/foo:1')
    assert creds == oa.OciBasicAuthCredentials(username='user', password='pass:word')

    assert lookup(image_reference='other.org/foo:1', absent_ok=True) is None


def test_docker_credentials_lookup_absent(tmp_path):
    with pytest.raises(RuntimeError):
        oa.docker_credentials_lookup(docker_cfg=str(tmp_path / 'absent.json'))

    lookup = oa.docker_credentials_lookup(
        docker_cfg=str(tmp_path / 'absent.json'),
        absent_ok=True,
    )
    assert lookup(image_reference='example.org/foo:1', absent_ok=True) is None


def test_docker_cfg_path():
    assert oa.docker_cfg_path(environ={'DOCKER_CONFIG': '/cfg', 'HOME': '/home/u'}) \
        == '/cfg/config.json'
    assert oa.docker_cfg_path(environ={'HOME': '/home/u'}) == '/home/u/.docker/config.json'


def test_github_credentials_lookup():
    lookup = oa.github_credentials_lookup(
        environ={'GITHUB_TOKEN': 'token', 'GITHUB_ACTOR': 'actor'},
    )

    assert lookup(image_reference='ghcr.io/org/image:1') == oa.OciBasicAuthCredentials(
        username='actor',
        password='token',
    )
    assert lookup(image_reference='example.org/image:1', absent_ok=True) is None

    no_token_lookup = oa.github_credentials_lookup(environ={})
    assert no_token_lookup(image_reference='ghcr.io/org/image:1', absent_ok=True) is None


def test_multi_credentials_lookup():
    other_creds = oa.OciBasicAuthCredentials(username='other', password='other')

    lookup = oa.multi_credentials_lookup(
        oa.mk_credentials_lookup(mk_cfg(privileges=rw, url_prefixes=('example.org',))),
        oa.mk_credentials_lookup(
            oa.OciConfig(privileges=rw, credentials=other_creds, url_prefixes=()),
        ),
    )

    # first match wins
    assert lookup(image_reference='example.org/foo:1') is fake_creds
    assert lookup(image_reference='other.org/foo:1') is other_creds

    empty_lookup = oa.multi_credentials_lookup()
    assert empty_lookup(image_reference='other.org/foo:1', absent_ok=True) is None
    with pytest.raises(ValueError):
        empty_lookup(image_reference='other.org/foo:1')
