'''
credentials-lookups ("keychains") used by apko_oci.client.Client.

A credentials-lookup is a callable accepting an image-reference, requested privileges, and an
`absent_ok` flag, returning matching credentials (or None if absent_ok is truthy, and no
credentials were found). Lookups are constructed once and passed to the client; they must not
alter any state shared between concurrent callers.
'''

import base64
import collections.abc
import dataclasses
import enum
import json
import logging
import operator
import os

import apko_oci.util

logger = logging.getLogger(__name__)

GHCR_HOST = 'ghcr.io'


class Privileges(enum.Enum):
    READONLY = 'readonly'
    READWRITE = 'readwrite'
    ADMIN = 'admin'

    def _asint(self, privileges):
        if privileges is self.READONLY:
            return 0
        elif privileges is self.READWRITE:
            return 1
        elif privileges is self.ADMIN:
            return 2
        elif privileges is None:
            return 4
        else:
            raise NotImplementedError(privileges)

    def __hash__(self):
        return self._asint(self).__hash__()

    def __lt__(self, other):
        o = self._asint(other)
        return self._asint(self).__lt__(o)

    def __le__(self, other):
        o = self._asint(other)
        return self._asint(self).__le__(o)

    def __eq__(self, other):
        o = self._asint(other)
        return self._asint(self).__eq__(o)

    def __ne__(self, other):
        o = self._asint(other)
        return self._asint(self).__ne__(o)

    def __gt__(self, other):
        o = self._asint(other)
        return self._asint(self).__gt__(o)

    def __ge__(self, other):
        o = self._asint(other)
        return self._asint(self).__ge__(o)


@dataclasses.dataclass(frozen=True)
class OciCredentials:
    pass


@dataclasses.dataclass(frozen=True)
class OciBasicAuthCredentials(OciCredentials):
    username: str
    password: str


@dataclasses.dataclass(frozen=True)
class OciConfig:
    privileges: Privileges
    credentials: OciCredentials
    url_prefixes: collections.abc.Sequence[str] = dataclasses.field(default_factory=tuple)

    def valid_for(self, image_reference: str, privileges: Privileges=Privileges.READONLY):
        if privileges and privileges > self.privileges:
            return False

        if not self.url_prefixes:
            return True

        unmodified_ref = image_reference.lower()
        image_reference = apko_oci.util.normalise_image_reference(
            image_reference=image_reference,
        ).lower()

        for prefix in self.url_prefixes:
            prefix = prefix.lower()

            if image_reference.startswith(apko_oci.util.normalise_image_reference(prefix)):
                return True
            if image_reference.startswith(prefix.lower()):
                return True
            if unmodified_ref.startswith(prefix):
                return True

        return False


# typehint-alias
image_reference = str
credentials_lookup = collections.abc.Callable[[image_reference, Privileges, bool], OciCredentials]


def _not_found(absent_ok: bool, msg: str):
    if not absent_ok:
        raise ValueError(msg)
    return None


def mk_credentials_lookup(
    cfgs: OciConfig | collections.abc.Sequence[OciConfig],
) -> credentials_lookup:
    '''
    returns a callable that can be queried for matching OciCredentials for requested
    privileges and image-references
    '''
    if isinstance(cfgs, OciConfig):
        cfgs = (cfgs,)

    def lookup_credentials(
        image_reference: str,
        privileges: Privileges=Privileges.READONLY,
        absent_ok: bool=False,
    ):
        valid_cfgs = sorted(
          (
            c for c in cfgs
            if c.valid_for(image_reference=image_reference, privileges=privileges)
          ),
          key=operator.attrgetter('privileges'),
        )

        if not valid_cfgs:
            return _not_found(
                absent_ok=absent_ok,
                msg=f'no valid cfg found: {image_reference=}, {privileges=}',
            )

        # first element contains cfg with least required privileges
        return valid_cfgs[0].credentials

    return lookup_credentials


def docker_cfg_path(environ: collections.abc.Mapping[str, str]=None) -> str:
    if environ is None:
        environ = os.environ

    if docker_cfg_dir := environ.get('DOCKER_CONFIG'):
        return os.path.join(docker_cfg_dir, 'config.json')

    return os.path.join(environ.get('HOME', ''), '.docker/config.json')


def docker_credentials_lookup(
    docker_cfg: str | None=None,
    absent_ok: bool=False,
) -> credentials_lookup:
    '''
    returns a credentials-lookup backed by docker's auth-config. By design, docker's auth-config
    only allows configuring credentials per hostname. By default docker-cfg is expected at
    `$DOCKER_CONFIG/config.json`, falling back to `$HOME/.docker/config.json`. Location of
    docker-cfg can be customised via docker_cfg parameter.

    if no docker-cfg is found, raises RuntimeError, unless absent_ok is truthy, in which case the
    returned lookup will never return any credentials (which might still be useful for readonly
    operations that for many registries allow anonymous access).

    Note that docker does not offer to configure credentials by permissions, too (hence privileges
    parameter will be ignored)
    '''
    if not docker_cfg:
        docker_cfg = docker_cfg_path()

    if not os.path.isfile(docker_cfg):
        if not absent_ok:
            raise RuntimeError(f'not an existing file: {docker_cfg=}')

        def find_nothing_lookup(
            image_reference: str,
            privileges: Privileges=Privileges.READONLY,
            absent_ok: bool=False,
        ):
            return _not_found(
                absent_ok=absent_ok,
                msg=f'no auth-cfg found in {docker_cfg=} for {image_reference=}',
            )

        return find_nothing_lookup

    def docker_auth_lookup(
        image_reference: str,
        privileges: Privileges=Privileges.READONLY,
        absent_ok: bool=False,
    ):
        # re-read docker-cfg to reflect fs-updates
        with open(docker_cfg) as f:
            docker_auth = json.load(f)
            auths = docker_auth.get('auths', None)

        if not auths:
            # docker-cfg might be empty - do not handle as an error; however, we can never serve
            # anything useful
            return _not_found(
                absent_ok=absent_ok,
                msg=f'no auth-cfg found in {docker_cfg=} for {image_reference=}',
            )

        if image_reference.startswith('/'):
            # if it is a relative reference, we have not means to find appropriate cfg.
            return _not_found(
                absent_ok=absent_ok,
                msg=f'no auth-cfg found in {docker_cfg=} for {image_reference=}',
            )

        # ignore ports - match cfg only by hostname
        image_netloc = image_reference.split('/')[0]
        image_host = image_netloc.split(':')[0]

        for netloc, auth_dict in auths.items():
            # docker-cli tends to store credentials for docker-hub as url
            host = netloc.removeprefix('https://').split('/')[0].split(':')[0]
            if host == image_host:
                break
        else:
            return _not_found(
                absent_ok=absent_ok,
                msg=f'no matching auth-cfg found in {docker_cfg=} for {image_reference=}',
            )

        # we found a cfg
        # docker's auth-cfgs only have a single value `auth` (or so we hope / assume)
        auth = auth_dict.get('auth', None)
        if not auth:
            raise ValueError(f'did not find expected attr `auth` in {docker_cfg=} for {image_host=}')

        auth = base64.b64decode(auth).decode('utf-8')
        username, passwd = auth.split(':', 1)

        return OciBasicAuthCredentials(
            username=username,
            password=passwd,
        )

    return docker_auth_lookup


def github_credentials_lookup(
    environ: collections.abc.Mapping[str, str]=None,
) -> credentials_lookup:
    '''
    returns a credentials-lookup serving credentials for ghcr.io from `GITHUB_TOKEN` (and
    `GITHUB_ACTOR`, if set), as available e.g. in GitHub-Actions.
    '''
    if environ is None:
        environ = os.environ

    token = environ.get('GITHUB_TOKEN')
    username = environ.get('GITHUB_ACTOR') or 'unset'

    def github_lookup(
        image_reference: str,
        privileges: Privileges=Privileges.READONLY,
        absent_ok: bool=False,
    ):
        normalised = apko_oci.util.normalise_image_reference(image_reference)
        if not token or normalised.split('/')[0] != GHCR_HOST:
            return _not_found(
                absent_ok=absent_ok,
                msg=f'no github-credentials for {image_reference=}',
            )

        return OciBasicAuthCredentials(
            username=username,
            password=token,
        )

    return github_lookup


def multi_credentials_lookup(
    *lookups: credentials_lookup,
) -> credentials_lookup:
    '''
    returns a credentials-lookup that queries the given lookups in order; the first found
    credentials are returned.
    '''
    def lookup_credentials(
        image_reference: str,
        privileges: Privileges=Privileges.READONLY,
        absent_ok: bool=False,
    ):
        for lookup in lookups:
            if creds := lookup(
                image_reference=image_reference,
                privileges=privileges,
                absent_ok=True,
            ):
                return creds

        return _not_found(
            absent_ok=absent_ok,
            msg=f'no credentials found for {image_reference=}, {privileges=}',
        )

    return lookup_credentials


def default_credentials_lookup() -> credentials_lookup:
    '''
    returns the default credentials-lookup: docker's auth-config, followed by GitHub-token
    (for ghcr.io). Absence of docker's auth-config is tolerated (anonymous access).
    '''
    return multi_credentials_lookup(
        docker_credentials_lookup(absent_ok=True),
        github_credentials_lookup(),
    )
