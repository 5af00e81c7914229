'''
minimalistic client for OCI-registries (distribution-spec v2), covering what is needed for
publishing (and copying) single-layer images, image-indexes and their peripherals.
'''

import base64
import dataclasses
import datetime
import enum
import hashlib
import json
import logging
import threading
import typing
import urllib.parse

import dacite
import dateutil.parser
import requests
import requests.auth
import www_authenticate

import apko_oci.auth as oa
import apko_oci.model as om
import apko_oci.util

urljoin = apko_oci.util.urljoin

logger = logging.getLogger(__name__)

request_logger = logging.getLogger('apko_oci.client.request_logger')

USER_AGENT = 'apko-oci (python3)'


def _append_b64_padding_if_missing(b64_str: str):
    if b64_str[-1] == '=':
        return b64_str

    if (mod4 := len(b64_str) % 4) == 2:
        return b64_str + '=' * 2
    elif mod4 == 3:
        return b64_str + '='
    elif mod4 == 0:
        return b64_str
    else:
        raise ValueError(f'invalid base64-length: {len(b64_str)=}')


class AuthMethod(enum.Enum):
    BEARER = 'bearer'
    BASIC = 'basic'


@dataclasses.dataclass
class OauthToken:
    token: str
    scope: str
    expires_in: int = None
    issued_at: str = None

    def valid(self):
        issued_at = dateutil.parser.isoparse(self.issued_at)
        # pessimistically deduct 30s
        expiry_date = issued_at + datetime.timedelta(seconds=self.expires_in - 30)

        now = datetime.datetime.now(tz=datetime.timezone.utc)
        return now < expiry_date

    def __post_init__(self):
        if not self.issued_at:
            self.issued_at = datetime.datetime.now(tz=datetime.timezone.utc).isoformat()
        if self.expires_in:
            return

        # jwt: read expiry from payload
        if self.token.count('.') >= 2:
            payload = _append_b64_padding_if_missing(b64_str=self.token.split('.')[1])
            parsed = json.loads(base64.urlsafe_b64decode(payload.encode('utf-8')))

            iat = parsed['iat']
            self.expires_in = parsed['exp'] - iat
            self.issued_at = datetime.datetime.fromtimestamp(
                iat,
                tz=datetime.timezone.utc,
            ).isoformat()
        else:
            # not given - assume a short validity
            self.expires_in = datetime.timedelta(minutes=10).seconds


class OauthTokenCache:
    def __init__(self):
        self.tokens = {} # {scope: token}
        self.auth_methods = {} # {netloc: method}
        self._lock = threading.Lock()

    def token(self, scope: str) -> OauthToken | None:
        with self._lock:
            # purge expired tokens
            self.tokens = {s: t for s, t in self.tokens.items() if t.valid()}

            return self.tokens.get(scope)

    def set_token(self, token: OauthToken):
        if not token.valid():
            raise ValueError(f'token expired: {token=}')

        with self._lock:
            self.tokens[token.scope] = token

    def set_auth_method(
        self,
        image_reference: str | om.OciImageReference,
        auth_method: AuthMethod,
    ):
        netloc = om.OciImageReference.to_image_ref(image_reference).netloc
        with self._lock:
            self.auth_methods[netloc] = auth_method

    def auth_method(self, image_reference: str | om.OciImageReference) -> AuthMethod | None:
        netloc = om.OciImageReference.to_image_ref(image_reference).netloc
        return self.auth_methods.get(netloc)


def base_api_url(
    image_reference: str | om.OciImageReference,
) -> str:
    image_reference = om.OciImageReference.to_image_ref(image_reference)

    return urljoin(f'https://{image_reference.netloc}', 'v2') + '/'


class OciRoutes:
    def __init__(
        self,
        base_api_url_lookup: typing.Callable[[str], str]=base_api_url,
    ):
        self.base_api_url_lookup = base_api_url_lookup

    def artefact_base_url(
        self,
        image_reference: str | om.OciImageReference,
    ) -> str:
        image_reference = om.OciImageReference.to_image_ref(image_reference)

        return urljoin(
            self.base_api_url_lookup(image_reference=str(image_reference)),
            image_reference.name,
        )

    def _blobs_url(self, image_reference: str | om.OciImageReference) -> str:
        return urljoin(
            self.artefact_base_url(image_reference),
            'blobs',
        )

    def uploads_url(self, image_reference: str | om.OciImageReference) -> str:
        return urljoin(
            self._blobs_url(image_reference),
            'uploads',
        ) + '/'

    def blob_url(self, image_reference: str | om.OciImageReference, digest: str) -> str:
        return urljoin(
            self._blobs_url(image_reference=image_reference),
            digest,
        )

    def manifest_url(self, image_reference: str | om.OciImageReference) -> str:
        image_reference = om.OciImageReference.to_image_ref(image_reference)

        if not (tag := image_reference.tag):
            raise ValueError(f'{image_reference=} does not seem to contain a tag')

        return urljoin(
            self.artefact_base_url(image_reference=image_reference),
            'manifests',
            tag,
        )


def _scope(image_reference: str | om.OciImageReference, action: str):
    image_reference = om.OciImageReference.to_image_ref(image_reference)

    # action: pull | push,pull
    return f'repository:{image_reference.name}:{action}'


def _privileges(scope: str) -> oa.Privileges | None:
    actions = scope.split(':')[-1]
    if 'push' in actions:
        return oa.Privileges.READWRITE
    elif 'pull' in actions:
        return oa.Privileges.READONLY
    return None


class Client:
    def __init__(
        self,
        credentials_lookup: oa.credentials_lookup,
        routes: OciRoutes=None,
        disable_tls_validation: bool=False,
        timeout_seconds: int=None,
        session: requests.Session=None,
    ):
        self.credentials_lookup = credentials_lookup
        self.token_cache = OauthTokenCache()
        self.session = session or requests.Session()
        self.routes = routes or OciRoutes()
        self.disable_tls_validation = disable_tls_validation

        if timeout_seconds:
            timeout_seconds = int(timeout_seconds)
        self.timeout_seconds = timeout_seconds

    def _credentials(
        self,
        image_reference: om.OciImageReference,
        scope: str,
    ) -> oa.OciBasicAuthCredentials | None:
        return self.credentials_lookup(
            image_reference=image_reference.original_image_reference,
            privileges=_privileges(scope),
            absent_ok=True,
        )

    def _authenticate(
        self,
        image_reference: om.OciImageReference,
        scope: str,
    ):
        cached_auth_method = self.token_cache.auth_method(image_reference=image_reference)
        if cached_auth_method is AuthMethod.BASIC:
            return # basic-auth does not require any additional preliminary steps
        if cached_auth_method is AuthMethod.BEARER and self.token_cache.token(scope=scope):
            return # no re-auth required, yet

        oci_creds = self._credentials(image_reference=image_reference, scope=scope)
        if not oci_creds:
            logger.warning(f'no credentials for {image_reference=} - attempting anonymous-auth')

        res = self.session.get(
            url=base_api_url(image_reference=image_reference),
            verify=not self.disable_tls_validation,
            timeout=self.timeout_seconds,
        )

        auth_challenge = www_authenticate.parse(res.headers.get('www-authenticate'))

        # fallback to basic-auth if endpoint does not state what it wants
        if 'basic' in auth_challenge or not auth_challenge:
            self.token_cache.set_auth_method(
                image_reference=image_reference,
                auth_method=AuthMethod.BASIC,
            )
            return
        elif 'bearer' not in auth_challenge:
            raise ValueError(f'did not understand {auth_challenge=} for {image_reference=}')

        bearer = auth_challenge['bearer']
        self.token_cache.set_auth_method(
            image_reference=image_reference,
            auth_method=AuthMethod.BEARER,
        )

        realm = bearer['realm'] + '?' + urllib.parse.urlencode({
            'scope': scope,
            'service': bearer['service'],
        })

        if oci_creds:
            auth = requests.auth.HTTPBasicAuth(
              username=oci_creds.username,
              password=oci_creds.password,
            )
        else:
            auth = None

        res = self.session.get(
            url=realm,
            verify=not self.disable_tls_validation,
            auth=auth,
            timeout=self.timeout_seconds,
        )

        if not res.ok:
            logger.warning(
                f'rq against {realm=} failed: {res.status_code=} {res.reason=} {res.content=}'
            )

        res.raise_for_status()

        token_dict = res.json()
        token_dict['scope'] = scope
        # some token-services return `access_token` instead of `token`
        if 'token' not in token_dict and 'access_token' in token_dict:
            token_dict['token'] = token_dict['access_token']

        token = dacite.from_dict(
            data=token_dict,
            data_class=OauthToken,
        )

        self.token_cache.set_token(token)

    def _request(
        self,
        url: str,
        image_reference: str | om.OciImageReference,
        scope: str,
        method: str='GET',
        headers: dict=None,
        raise_for_status=True,
        warn_if_not_ok=True,
        **kwargs,
    ) -> requests.Response:
        if 'timeout' not in kwargs and self.timeout_seconds:
            kwargs['timeout'] = self.timeout_seconds

        image_reference = om.OciImageReference.to_image_ref(image_reference)

        self._authenticate(
            image_reference=image_reference,
            scope=scope,
        )
        headers = headers or {}
        headers['User-Agent'] = USER_AGENT
        auth = None

        if self.token_cache.auth_method(image_reference=image_reference) is AuthMethod.BASIC:
            if oci_creds := self._credentials(image_reference=image_reference, scope=scope):
                auth = oci_creds.username, oci_creds.password
            else:
                logger.warning(f'did not find any matching credentials for {image_reference=}')
        else:
            headers = {
              'Authorization': f'Bearer {self.token_cache.token(scope=scope).token}',
              **headers,
            }

        if self.disable_tls_validation:
            kwargs['verify'] = False

        request_logger.debug(f'oci request sent {method=} {url=}')

        res = self.session.request(
            method=method,
            url=url,
            auth=auth,
            headers=headers,
            **kwargs,
        )
        if not res.ok and warn_if_not_ok:
            logger.warning(
                f'rq against {url=} failed {res.status_code=} {res.reason=} {method=} {res.content}'
            )

        if raise_for_status:
            res.raise_for_status()

        return res

    def manifest_raw(
        self,
        image_reference: str | om.OciImageReference,
        absent_ok: bool=False,
        accept: str=None,
    ) -> requests.Response | None:
        image_reference = om.OciImageReference.to_image_ref(image_reference)

        if not accept:
            accept = om.MimeTypes.prefer_multiarch

        try:
            return self._request(
                url=self.routes.manifest_url(image_reference=image_reference),
                image_reference=image_reference,
                scope=_scope(image_reference=image_reference, action='pull'),
                warn_if_not_ok=not absent_ok,
                headers={
                    'Accept': accept,
                },
            )
        except requests.exceptions.HTTPError as he:
            if he.response is not None and he.response.status_code == 404:
                if absent_ok:
                    return None
                raise om.OciImageNotFoundException(he) from he
            raise

    def manifest(
        self,
        image_reference: str | om.OciImageReference,
        absent_ok: bool=False,
        accept: str=None,
    ) -> om.OciImageManifest | om.OciImageManifestList | None:
        '''
        returns the parsed manifest for the given image reference. Depending on the artefact
        and the passed `accept`-header, the returned value is either a single-image manifest, or
        a manifest-list (image-index).
        '''
        res = self.manifest_raw(
            image_reference=image_reference,
            absent_ok=absent_ok,
            accept=accept,
        )

        if res is None:
            return None

        return om.as_manifest(res.content)

    def put_manifest(
        self,
        image_reference: str | om.OciImageReference,
        manifest: bytes,
    ) -> requests.Response:
        image_reference = om.OciImageReference.to_image_ref(image_reference)

        content_type = json.loads(manifest).get('mediaType', om.OCI_MANIFEST_SCHEMA_V2_MIME)
        logger.debug(f'putting manifest to {image_reference} {content_type=}')

        res = self._request(
            url=self.routes.manifest_url(image_reference=image_reference),
            image_reference=image_reference,
            scope=_scope(image_reference=image_reference, action='push,pull'),
            method='PUT',
            raise_for_status=False,
            headers={
                'Content-Type': content_type,
            },
            data=manifest,
        )

        if not res.ok:
            logger.warning(f'our manifest was rejected (see below for more details): {manifest=}')
        res.raise_for_status()

        return res

    def blob(
        self,
        image_reference: str | om.OciImageReference,
        digest: str,
        stream=True,
        absent_ok=False,
    ) -> requests.Response | None:
        image_reference = om.OciImageReference.to_image_ref(image_reference)

        res = self._request(
            url=self.routes.blob_url(image_reference=image_reference, digest=digest),
            image_reference=image_reference,
            scope=_scope(image_reference=image_reference, action='pull'),
            method='GET',
            stream=stream,
            timeout=None,
            raise_for_status=False,
        )

        if absent_ok and res.status_code == requests.codes.NOT_FOUND: # noqa
            return None
        res.raise_for_status()

        return res

    def head_blob(
        self,
        image_reference: str | om.OciImageReference,
        digest: str,
        absent_ok=True,
    ) -> requests.Response:
        image_reference = om.OciImageReference.to_image_ref(image_reference)

        res = self._request(
            url=self.routes.blob_url(
                image_reference=image_reference,
                digest=digest,
            ),
            method='HEAD',
            scope=_scope(image_reference=image_reference, action='pull'),
            image_reference=image_reference,
            raise_for_status=False,
            warn_if_not_ok=not absent_ok,
        )

        if absent_ok and res.status_code == 404:
            return res

        res.raise_for_status()

        return res

    def put_blob(
        self,
        image_reference: str | om.OciImageReference,
        digest: str,
        octets_count: int,
        data: bytes | typing.BinaryIO | requests.Response,
        max_chunk=1024 * 1024 * 1, # 1 MiB
    ):
        '''
        uploads the given blob, unless it already exists in the target repository. `data` may be
        bytes, a file-like object (streamed), or a (streaming) response, e.g. as returned from
        `blob`.
        '''
        image_reference = om.OciImageReference.to_image_ref(image_reference)
        head_res = self.head_blob(
            image_reference=image_reference,
            digest=digest,
        )
        if head_res.ok:
            logger.info(f'skipping blob upload {digest=} - already exists')
            return

        if isinstance(data, requests.Response) and octets_count >= max_chunk:
            with data:
                return self._put_blob_chunked(
                    image_reference=image_reference,
                    digest=digest,
                    octets_count=octets_count,
                    data_iterator=data.iter_content(chunk_size=max_chunk),
                    chunk_size=max_chunk,
                )

        if isinstance(data, requests.Response):
            data = data.content

        # if filelike, http.client will handle streaming for us
        return self._put_blob_single_post(
            image_reference=image_reference,
            digest=digest,
            octets_count=octets_count,
            data=data,
        )

    def _upload_url(self, res: requests.Response) -> str:
        upload_url = res.headers['Location']

        # returned url _may_ be relative
        if upload_url.startswith('/'):
            parsed_url = urllib.parse.urlparse(res.url)
            upload_url = f'{parsed_url.scheme}://{parsed_url.netloc}{upload_url}'

        return upload_url

    def _put_blob_chunked(
        self,
        image_reference: om.OciImageReference,
        digest: str,
        octets_count: int,
        data_iterator: typing.Iterator[bytes],
        chunk_size: int,
    ):
        scope = _scope(image_reference=image_reference, action='push,pull')
        logger.debug(f'chunked-put {chunk_size=}')

        # start uploading session
        res = self._request(
            url=self.routes.uploads_url(image_reference=image_reference),
            image_reference=image_reference,
            scope=scope,
            method='POST',
            headers={
                'content-length': '0',
            }
        )
        upload_url = self._upload_url(res)

        octets_sent = 0
        sha256 = hashlib.sha256()

        for data in data_iterator:
            if not data:
                continue
            sha256.update(data)

            crange_from = octets_sent
            crange_to = crange_from + len(data) - 1

            res = self._request(
                url=upload_url,
                image_reference=image_reference,
                scope=scope,
                method='PATCH',
                data=data,
                headers={
                 'Content-Length': str(len(data)),
                 'Content-Type': 'application/octet-stream',
                 'Content-Range': f'{crange_from}-{crange_to}',
                 'Range': f'{crange_from}-{crange_to}',
                }
            )
            upload_url = self._upload_url(res)

            octets_sent += len(data)

        if octets_sent != octets_count:
            raise ValueError(f'{octets_sent=} vs {octets_count=}')

        if (sha256_digest := f'sha256:{sha256.hexdigest()}') != digest:
            raise ValueError(f'{sha256_digest=} vs {digest=}')

        # close uploading session
        prefix = '&' if '?' in upload_url else '?'
        return self._request(
            url=upload_url + prefix + urllib.parse.urlencode({'digest': digest}),
            image_reference=image_reference,
            scope=scope,
            method='PUT',
            headers={
                 'Content-Length': '0',
            },
        )

    def _put_blob_single_post(
        self,
        image_reference: om.OciImageReference,
        digest: str,
        octets_count: int,
        data: bytes | typing.BinaryIO,
    ):
        logger.debug(f'single-post {image_reference=} {octets_count=}')
        scope = _scope(image_reference=image_reference, action='push,pull')

        # single-POST does not work for all registries (e.g. registry-1.docker.io); hence,
        # always do a two-step upload
        res = self._request(
            url=self.routes.uploads_url(
                image_reference=image_reference,
            ),
            image_reference=image_reference,
            scope=scope,
            method='POST',
        )

        upload_url = self._upload_url(res)
        prefix = '&' if '?' in upload_url else '?'
        upload_url += prefix + urllib.parse.urlencode({'digest': digest})

        res = self._request(
            url=upload_url,
            image_reference=image_reference,
            scope=scope,
            method='PUT',
            headers={
                'content-type': 'application/octet-stream',
                'content-length': str(octets_count),
            },
            data=data,
            raise_for_status=False,
        )

        if not res.status_code == 201: # distribution-spec: MUST be 201
            logger.warning(f'{image_reference=} {res.status_code=} {digest=} - PUT may have failed')

        res.raise_for_status()

        return res
