import dataclasses
import enum
import logging
import os
import typing

import apko_oci.artefact as oa
import apko_oci.model as om
import apko_oci.platform as op

logger = logging.getLogger(__name__)

# name of the (only) attachment-slot for SBOMs
SBOM_ATTACHMENT_NAME = 'sbom'

SPDX_JSON_MIME = 'spdx+json'
CYCLONEDX_JSON_MIME = 'application/vnd.cyclonedx+json'
INSTALLED_DB_MIME = 'application/vnd.apko.installed-db'


@dataclasses.dataclass(frozen=True)
class _SbomFormatSpec:
    media_type: str
    file_suffix: str


class SbomFormat(enum.Enum):
    SPDX = 'spdx'
    CYCLONEDX = 'cyclonedx'
    IDB = 'idb'

    @property
    def _spec(self) -> _SbomFormatSpec:
        if self is SbomFormat.SPDX:
            return _SbomFormatSpec(media_type=SPDX_JSON_MIME, file_suffix='spdx.json')
        elif self is SbomFormat.CYCLONEDX:
            return _SbomFormatSpec(media_type=CYCLONEDX_JSON_MIME, file_suffix='cdx')
        elif self is SbomFormat.IDB:
            return _SbomFormatSpec(media_type=INSTALLED_DB_MIME, file_suffix='idb')
        raise NotImplementedError(self)

    @property
    def media_type(self) -> str:
        return self._spec.media_type

    def filename(self, arch_name: str) -> str:
        return f'sbom-{arch_name}.{self._spec.file_suffix}'


def sbom_arch_name(arch: op.Architecture | None) -> str:
    '''
    returns the name used for SBOM-filenames: the apk-style architecture name, or `index` if
    no specific architecture applies
    '''
    if not arch or not (arch_name := arch.to_apk()):
        return 'index'
    return arch_name


def attach_sbom(
    artefact: oa.Artefact,
    sbom_path: str,
    sbom_formats: typing.Sequence[str],
    arch: op.Architecture | None,
) -> oa.Artefact:
    '''
    attaches an SBOM to the given artefact (image or index), and returns the resulting artefact.

    Only one SBOM is attached: the one of the first requested format (if more than one format
    is requested, a warning is emitted). If no format is requested, the passed artefact is
    returned unchanged.

    raises SBOMError if the requested format is unsupported, or if the SBOM-file cannot be read.
    '''
    if not sbom_formats:
        logger.debug('not attaching sboms, no formats requested')
        return artefact

    if not isinstance(artefact, oa.Artefact):
        raise om.SBOMError(f'unable to attach SBOM to {type(artefact)=}: not an image or index')

    requested_format, *other_formats = sbom_formats
    try:
        sbom_format = SbomFormat(requested_format)
    except ValueError as ve:
        raise om.SBOMError(f'unsupported SBOM format: {requested_format}') from ve

    if other_formats:
        logger.warning(
            f'multiple SBOM formats requested, uploading SBOM with media type: '
            f'{sbom_format.media_type} (ignoring {other_formats=})'
        )

    path = os.path.join(sbom_path or '', sbom_format.filename(sbom_arch_name(arch)))

    try:
        with open(path, 'rb') as f:
            sbom = f.read()
    except OSError as oe:
        raise om.SBOMError(f'reading sbom {path=}: {oe}') from oe

    static_file = oa.StaticFile(
        payload=sbom,
        layer_media_type=sbom_format.media_type,
    )

    logger.info(f'attaching {sbom_format.value} SBOM {path=} to {artefact.kind.value}')
    return artefact.attach(SBOM_ATTACHMENT_NAME, static_file)
