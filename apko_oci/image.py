import dataclasses
import datetime
import logging
import typing

import apko_oci.artefact as oa
import apko_oci.config as oconf
import apko_oci.image_config as oic
import apko_oci.layer as ol
import apko_oci.model as om
import apko_oci.platform as op
import apko_oci.util as ou

logger = logging.getLogger(__name__)

HISTORY_AUTHOR = 'apko'
HISTORY_COMMENT = 'This is an apko single-layer image'


class Image(oa.Artefact):
    '''
    a single-layer, single-platform image. All media types (manifest, cfg-blob, layer) are
    of the same `media_kind`.

    Manifest and cfg-blob are serialised upon construction; instances are not intended to be
    altered afterwards (use `attach` to obtain copies w/ attachments).
    '''
    kind = oa.ArtefactKind.IMAGE

    def __init__(
        self,
        media_kind: om.MediaKind,
        layer: ol.Layer,
        cfg: oic.ImageCfg,
        annotations: dict[str, str]=None,
        attachments: typing.Mapping[str, oa.StaticFile]=None,
    ):
        super().__init__(attachments=attachments)

        if layer.media_type != media_kind.layer_mimetype:
            raise om.AssemblyError(
                f'{layer.media_type=} does not match {media_kind=}'
            )

        self.media_kind = media_kind
        self.layer = layer
        self.cfg = cfg
        self._cfg_bytes = cfg.to_bytes()

        if media_kind is om.MediaKind.DOCKER:
            # docker-manifests do not support annotations
            annotations = {}

        self.manifest = om.OciImageManifest(
            config=om.OciBlobRef(
                digest=ou.sha256_digest(self._cfg_bytes),
                mediaType=media_kind.config_mimetype,
                size=len(self._cfg_bytes),
            ),
            layers=[layer.blob_ref()],
            mediaType=media_kind.manifest_mimetype,
            annotations=dict(annotations or {}),
        )
        self._raw_manifest = ou.canonical_json(self.manifest.as_dict())

    @property
    def media_type(self) -> str:
        return self.manifest.mediaType

    def raw_manifest(self) -> bytes:
        return self._raw_manifest

    def raw_cfg(self) -> bytes:
        return self._cfg_bytes

    def blobs(self) -> typing.Iterable[oa.Blob]:
        yield oa.Blob(ref=self.manifest.config, octets=self._cfg_bytes)
        yield oa.Blob(ref=self.layer.blob_ref(), path=self.layer.path)

    def platform(self) -> om.OciPlatform:
        return om.OciPlatform(
            architecture=self.cfg.architecture,
            os=self.cfg.os,
            variant=self.cfg.variant,
        )


def build_image(
    media_kind: om.MediaKind,
    layer_path: str,
    image_configuration: oconf.ImageConfiguration,
    created: datetime.datetime,
    arch: op.Architecture,
) -> Image:
    '''
    builds a single-layer image from the given (gzip-compressed) layer-archive.

    raises LayerError if the layer-archive cannot be read, ConfigError if the image-configuration
    is malformed.
    '''
    if not isinstance(media_kind, om.MediaKind):
        raise ValueError(f'unsupported {media_kind=}')

    image_type = media_kind.human_readable
    logger.info(f'building {image_type} image from layer {layer_path!r}')

    # synthesise cfg first (before reading layer) so malformed cfgs fail early
    cfg = oic.synthesise(
        image_configuration=image_configuration,
        arch=arch,
        created=created,
    )

    layer = ol.Layer.from_file(
        path=layer_path,
        media_type=media_kind.layer_mimetype,
    )
    logger.info(f'{image_type} layer digest: {layer.digest}')
    logger.info(f'{image_type} layer diffID: {layer.diff_id}')

    cfg = dataclasses.replace(
        cfg,
        rootfs=oic.RootFs(diff_ids=[layer.diff_id]),
        history=[
            oic.HistoryEntry(
                author=HISTORY_AUTHOR,
                comment=HISTORY_COMMENT,
                created_by=HISTORY_AUTHOR,
                created=oic.format_timestamp(created),
            ),
        ],
    )

    return Image(
        media_kind=media_kind,
        layer=layer,
        cfg=cfg,
        annotations=oic.image_annotations(image_configuration),
    )
