'''
model classes for image cfg-blobs, and synthesis of cfg-blobs from image-configurations

see: https://github.com/opencontainers/image-spec/blob/main/config.md
'''

import dataclasses
import datetime
import logging
import shlex

import apko_oci.config as oconf
import apko_oci.model as om
import apko_oci.platform as op
import apko_oci.util as ou

logger = logging.getLogger(__name__)

dc = dataclasses.dataclass

AUTHOR = 'github.com/chainguard-dev/apko'

DEFAULT_ENV = (
    'PATH=/usr/local/sbin:/usr/local/bin:/usr/sbin:/usr/bin:/sbin:/bin',
    'SSL_CERT_FILE=/etc/ssl/certs/ca-certificates.crt',
)


@dc
class ContainerCfg:
    Env: list[str] | None = None
    Entrypoint: list[str] | None = None
    Cmd: list[str] | None = None
    WorkingDir: str | None = None
    User: str | None = None
    Labels: dict[str, str] = dataclasses.field(default_factory=dict)


@dc
class RootFs:
    diff_ids: list[str] = dataclasses.field(default_factory=list) # [uncompressed-layer-digests]
    type: str = 'layers'


@dc
class HistoryEntry:
    created: str # iso8601-ts
    author: str | None = None
    created_by: str | None = None
    comment: str | None = None
    empty_layer: bool | None = None


@dc
class ImageCfg:
    architecture: str
    os: str
    created: str # iso8601-ts
    config: ContainerCfg
    author: str | None = None
    variant: str | None = None
    rootfs: RootFs = dataclasses.field(default_factory=RootFs)
    history: list[HistoryEntry] = dataclasses.field(default_factory=list)

    def as_dict(self) -> dict:
        def drop_empty(value):
            if isinstance(value, dict):
                return {
                    k: drop_empty(v) for k, v in value.items()
                    if v is not None and v != {}
                }
            if isinstance(value, list):
                return [drop_empty(v) for v in value]
            return value

        return drop_empty(dataclasses.asdict(self))

    def to_bytes(self) -> bytes:
        return ou.canonical_json(self.as_dict())


def format_timestamp(ts: datetime.datetime) -> str:
    '''
    formats the given timestamp as RFC3339 (UTC). Naive timestamps are interpreted as UTC.
    '''
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=datetime.timezone.utc)
    ts = ts.astimezone(datetime.timezone.utc)

    if ts.microsecond:
        return ts.strftime('%Y-%m-%dT%H:%M:%S.%fZ')
    return ts.strftime('%Y-%m-%dT%H:%M:%SZ')


def _split(value: str, field: str) -> list[str]:
    try:
        return shlex.split(value, comments=True)
    except ValueError as ve:
        raise om.ConfigError(f'unable to parse {field}: {ve}', field=field) from ve


def entrypoint(image_configuration: oconf.ImageConfiguration) -> list[str] | None:
    ep = image_configuration.entrypoint

    if ep.shell_fragment:
        return ['/bin/sh', '-c', ep.shell_fragment]
    if ep.command:
        return _split(ep.command, field='entrypoint.command')

    # no entrypoint: the container-runtime will fall back to its default (`/bin/sh -c`)
    return None


def environment(image_configuration: oconf.ImageConfiguration) -> list[str]:
    if not image_configuration.environment:
        return list(DEFAULT_ENV)

    return sorted(
        f'{key}={value}' for key, value in image_configuration.environment.items()
    )


def image_annotations(image_configuration: oconf.ImageConfiguration) -> dict[str, str]:
    '''
    returns annotations for the given image-configuration. If a vcs-url of the form
    `<url>@<revision>` is set, source- and revision-annotations are derived from it. Values
    explicitly set by the caller take precedence over derived ones.
    '''
    annotations = {}

    if (vcs_url := image_configuration.vcs_url) and '@' in vcs_url:
        url, revision = vcs_url.split('@', 1)
        annotations[om.SOURCE_ANNOTATION] = url
        annotations[om.REVISION_ANNOTATION] = revision

    for key, value in (image_configuration.annotations or {}).items():
        if key in annotations and annotations[key] != value:
            logger.warning(
                f'annotation {key=} derived from vcs-url is overwritten by explicit {value=}'
            )
        annotations[key] = value

    return annotations


def synthesise(
    image_configuration: oconf.ImageConfiguration,
    arch: op.Architecture,
    created: datetime.datetime,
) -> ImageCfg:
    '''
    creates a new cfg-blob (w/o rootfs and history) for the given image-configuration and
    target-architecture. `created` must be passed by caller (rather than reading the clock) to
    allow for reproducible builds.

    raises ConfigError if either entrypoint-command or cmd cannot be tokenised.
    '''
    platform = arch.to_oci_platform()

    container_cfg = ContainerCfg(
        Entrypoint=entrypoint(image_configuration),
        Env=environment(image_configuration),
    )

    if image_configuration.cmd:
        container_cfg.Cmd = _split(image_configuration.cmd, field='cmd')

    if image_configuration.work_dir:
        container_cfg.WorkingDir = image_configuration.work_dir

    if image_configuration.accounts.run_as:
        container_cfg.User = image_configuration.accounts.run_as

    return ImageCfg(
        architecture=platform.architecture,
        variant=platform.variant,
        os=op.DEFAULT_OS,
        created=format_timestamp(created),
        author=AUTHOR,
        config=container_cfg,
    )
