'''
image-configuration as passed-in by callers, plus settings derived from the environment.

ImageConfiguration is usually read from an apko-style YAML document, e.g.:

    entrypoint:
      command: /usr/bin/nginx -g 'daemon off;'
    cmd: --help
    work-dir: /srv
    environment:
      LANG: C.UTF-8
    accounts:
      run-as: 65532
    annotations:
      org.opencontainers.image.authors: someone
    vcs-url: https://github.com/example/repo@cafebabe

Keys not known to this module (e.g. `contents`) are ignored.
'''

import dataclasses
import datetime
import os
import typing

import dacite
import yaml

import apko_oci.model as om
import apko_oci.platform as op

# environment variables
NATIVE_OS_ENV = 'GOOS'
NATIVE_ARCH_ENV = 'GOARCH'
SBOM_REPOSITORY_ENV = 'COSIGN_REPOSITORY'

DEFAULT_NATIVE_OS = 'linux'
DEFAULT_NATIVE_ARCH = 'amd64'


@dataclasses.dataclass(frozen=True)
class Entrypoint:
    type: str | None = None
    command: str | None = None
    shell_fragment: str | None = None


@dataclasses.dataclass(frozen=True)
class Accounts:
    run_as: str | None = None


@dataclasses.dataclass(frozen=True)
class ImageConfiguration:
    entrypoint: Entrypoint = dataclasses.field(default_factory=Entrypoint)
    cmd: str | None = None
    work_dir: str | None = None
    environment: dict[str, str] = dataclasses.field(default_factory=dict)
    accounts: Accounts = dataclasses.field(default_factory=Accounts)
    annotations: dict[str, str] = dataclasses.field(default_factory=dict)
    vcs_url: str | None = None

    @staticmethod
    def from_dict(raw: dict) -> 'ImageConfiguration':
        return dacite.from_dict(
            data_class=ImageConfiguration,
            data=_normalise_keys(raw),
            config=dacite.Config(
                # run-as is commonly given as uid (int)
                type_hooks={str: _to_str},
            ),
        )


def _to_str(value) -> str:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return value


def _normalise_keys(raw: dict) -> dict:
    '''
    translates yaml-style keys (`work-dir`) into attribute names (`work_dir`). Keys within
    `environment` and `annotations` are passed verbatim.
    '''
    raw = raw or {}

    def normalise(d: dict) -> dict:
        return {k.replace('-', '_'): v for k, v in (d or {}).items()}

    normalised = normalise(raw)

    for nested in ('entrypoint', 'accounts'):
        if isinstance(normalised.get(nested), dict):
            normalised[nested] = normalise(normalised[nested])

    for verbatim in ('environment', 'annotations'):
        if normalised.get(verbatim) is None:
            normalised.pop(verbatim, None)
        elif isinstance(normalised[verbatim], dict):
            normalised[verbatim] = {
                str(k): _to_str(v) for k, v in normalised[verbatim].items()
            }

    return normalised


def load_image_configuration(path: str) -> ImageConfiguration:
    with open(path) as f:
        raw = yaml.safe_load(f)

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise om.ConfigError(f'expected a mapping in {path=}, got {type(raw)=}')

    try:
        return ImageConfiguration.from_dict(raw)
    except dacite.DaciteError as de:
        raise om.ConfigError(f'invalid image-configuration in {path=}: {de}') from de


@dataclasses.dataclass(frozen=True)
class BuildOptions:
    '''
    per-build options. `source_date_epoch` is used as creation-timestamp for all built
    artefacts (the wall-clock is never consulted, so rebuilds yield identical digests).
    '''
    source_date_epoch: datetime.datetime = datetime.datetime.fromtimestamp(
        0,
        tz=datetime.timezone.utc,
    )
    arch: op.Architecture = op.Architecture('amd64')
    use_docker_media_types: bool = False
    sbom_path: str | None = None
    sbom_formats: tuple[str, ...] = ()

    @property
    def media_kind(self) -> om.MediaKind:
        if self.use_docker_media_types:
            return om.MediaKind.DOCKER
        return om.MediaKind.OCI


def native_platform(
    environ: typing.Mapping[str, str]=None,
) -> tuple[str, str]:
    '''
    returns the (os, architecture)-pair considered to be "native" for local index-promotion.
    Defaults to linux/amd64, unless overwritten via GOOS / GOARCH environment variables.
    '''
    if environ is None:
        environ = os.environ

    return op.native_platform(
        os_name=environ.get(NATIVE_OS_ENV) or DEFAULT_NATIVE_OS,
        architecture=environ.get(NATIVE_ARCH_ENV) or DEFAULT_NATIVE_ARCH,
    )


def sbom_target_repository(
    environ: typing.Mapping[str, str]=None,
) -> om.OciImageReference | None:
    '''
    returns the repository SBOMs should be written to (if overwritten via COSIGN_REPOSITORY),
    or None, in which case SBOMs are written into the image's repository.
    '''
    if environ is None:
        environ = os.environ

    if not (repository := environ.get(SBOM_REPOSITORY_ENV)):
        return None

    repository_ref = om.OciImageReference(repository)
    if repository_ref.has_tag:
        raise om.PublishError(
            f'{SBOM_REPOSITORY_ENV} must not contain a tag or digest: {repository=}'
        )

    return repository_ref
