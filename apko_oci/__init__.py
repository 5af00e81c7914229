'''
assembly of single-layer OCI (or docker) images from layer-archives, and publishing of images
and multi-platform image-indexes (incl. SBOMs) to local stores or OCI-registries.
'''

import collections.abc
import datetime
import logging
import typing

import apko_oci.artefact as oa
import apko_oci.client as oc
import apko_oci.config as oconf
import apko_oci.image as oimg
import apko_oci.index as oidx
import apko_oci.model as om
import apko_oci.platform as op
import apko_oci.publish as opub
import apko_oci.replicate
import apko_oci.sbom as osbom
import apko_oci.tarball as ot

logger = logging.getLogger(__name__)


def build_image(
    media_kind: om.MediaKind,
    layer_path: str,
    image_configuration: oconf.ImageConfiguration,
    created: datetime.datetime,
    arch: op.Architecture,
    sbom_path: str | None=None,
    sbom_formats: typing.Sequence[str]=(),
) -> oimg.Image:
    '''
    builds a single-layer image from the given layer-archive, optionally attaching an SBOM
    (see `apko_oci.sbom.attach_sbom`).
    '''
    image = oimg.build_image(
        media_kind=media_kind,
        layer_path=layer_path,
        image_configuration=image_configuration,
        created=created,
        arch=arch,
    )

    return osbom.attach_sbom(
        artefact=image,
        sbom_path=sbom_path,
        sbom_formats=sbom_formats,
        arch=arch,
    )


def build_image_tarball(
    image_ref: str,
    layer_path: str,
    output_path: str,
    image_configuration: oconf.ImageConfiguration,
    options: oconf.BuildOptions=oconf.BuildOptions(),
) -> oimg.Image:
    '''
    builds a single-layer image and writes it as docker-archive (as understood by `docker load`)
    to output_path, tagged w/ image_ref.
    '''
    image = build_image(
        media_kind=options.media_kind,
        layer_path=layer_path,
        image_configuration=image_configuration,
        created=options.source_date_epoch,
        arch=options.arch,
        sbom_path=options.sbom_path,
        sbom_formats=options.sbom_formats,
    )

    try:
        ot.write_image_tarball_to_file(
            path=output_path,
            image=image,
            tags=(image_ref,),
        )
    except ValueError as ve:
        raise om.PublishError(f'unable to validate image reference tag {image_ref!r}: {ve}') from ve
    except OSError as oe:
        raise om.PublishError(f'unable to write image to {output_path!r}: {oe}') from oe

    return image


def _publish_image(
    media_kind: om.MediaKind,
    layer_path: str,
    image_configuration: oconf.ImageConfiguration,
    created: datetime.datetime,
    arch: op.Architecture,
    tags: collections.abc.Sequence[str],
    sbom_path: str | None,
    sbom_formats: typing.Sequence[str],
    local: bool,
    publisher: opub.Publisher | None,
) -> tuple[om.OciImageReference, oimg.Image]:
    image = build_image(
        media_kind=media_kind,
        layer_path=layer_path,
        image_configuration=image_configuration,
        created=created,
        arch=arch,
        sbom_path=sbom_path,
        sbom_formats=sbom_formats,
    )

    publisher = publisher or opub.Publisher.from_env()
    reference = publisher.publish_image(
        image=image,
        tags=tags,
        local=local,
    )

    return reference, image


def publish_image(
    layer_path: str,
    image_configuration: oconf.ImageConfiguration,
    created: datetime.datetime,
    arch: op.Architecture,
    tags: collections.abc.Sequence[str],
    sbom_path: str | None=None,
    sbom_formats: typing.Sequence[str]=(),
    local: bool=False,
    publisher: opub.Publisher | None=None,
) -> tuple[om.OciImageReference, oimg.Image]:
    '''
    builds an OCI-image from the given layer-archive, and publishes it under all given tags.
    Returns a digest-reference to the published image, and the image.
    '''
    return _publish_image(
        media_kind=om.MediaKind.OCI,
        layer_path=layer_path,
        image_configuration=image_configuration,
        created=created,
        arch=arch,
        tags=tags,
        sbom_path=sbom_path,
        sbom_formats=sbom_formats,
        local=local,
        publisher=publisher,
    )


def publish_docker_image(
    layer_path: str,
    image_configuration: oconf.ImageConfiguration,
    created: datetime.datetime,
    arch: op.Architecture,
    tags: collections.abc.Sequence[str],
    sbom_path: str | None=None,
    sbom_formats: typing.Sequence[str]=(),
    local: bool=False,
    publisher: opub.Publisher | None=None,
) -> tuple[om.OciImageReference, oimg.Image]:
    '''
    like `publish_image`, but using docker's media types
    '''
    return _publish_image(
        media_kind=om.MediaKind.DOCKER,
        layer_path=layer_path,
        image_configuration=image_configuration,
        created=created,
        arch=arch,
        tags=tags,
        sbom_path=sbom_path,
        sbom_formats=sbom_formats,
        local=local,
        publisher=publisher,
    )


def _publish_index(
    media_kind: om.MediaKind,
    images: typing.Mapping[op.Architecture, oimg.Image],
    tags: collections.abc.Sequence[str],
    local: bool,
    sbom_path: str | None,
    sbom_formats: typing.Sequence[str],
    publisher: opub.Publisher | None,
) -> tuple[om.OciImageReference, oidx.Index]:
    index = oidx.build_index(
        images=images,
        media_kind=media_kind,
    )
    index = osbom.attach_sbom(
        artefact=index,
        sbom_path=sbom_path,
        sbom_formats=sbom_formats,
        arch=None,
    )

    publisher = publisher or opub.Publisher.from_env()
    reference = publisher.publish_index(
        index=index,
        tags=tags,
        local=local,
    )

    return reference, index


def publish_index(
    images: typing.Mapping[op.Architecture, oimg.Image],
    tags: collections.abc.Sequence[str],
    local: bool=False,
    sbom_path: str | None=None,
    sbom_formats: typing.Sequence[str]=(),
    publisher: opub.Publisher | None=None,
) -> tuple[om.OciImageReference, oidx.Index]:
    '''
    creates an OCI image-index from the given images (one per architecture), and publishes it
    (incl. all images) under all given tags.

    if local is truthy, no index is published; instead, the image for the native platform
    (which must have been published locally before) is tagged w/ the given tags.
    '''
    return _publish_index(
        media_kind=om.MediaKind.OCI,
        images=images,
        tags=tags,
        local=local,
        sbom_path=sbom_path,
        sbom_formats=sbom_formats,
        publisher=publisher,
    )


def publish_docker_index(
    images: typing.Mapping[op.Architecture, oimg.Image],
    tags: collections.abc.Sequence[str],
    local: bool=False,
    sbom_path: str | None=None,
    sbom_formats: typing.Sequence[str]=(),
    publisher: opub.Publisher | None=None,
) -> tuple[om.OciImageReference, oidx.Index]:
    '''
    like `publish_index`, but creates a docker manifest-list
    '''
    return _publish_index(
        media_kind=om.MediaKind.DOCKER,
        images=images,
        tags=tags,
        local=local,
        sbom_path=sbom_path,
        sbom_formats=sbom_formats,
        publisher=publisher,
    )


def post_attach_sbom(
    artefact: oa.Artefact,
    sbom_path: str,
    sbom_formats: typing.Sequence[str],
    arch: op.Architecture | None,
    tags: collections.abc.Sequence[str],
    publisher: opub.Publisher | None=None,
) -> oa.Artefact:
    '''
    attaches an SBOM to an already published artefact, and writes it for all given tags (the
    artefact itself is not re-published).
    '''
    artefact = osbom.attach_sbom(
        artefact=artefact,
        sbom_path=sbom_path,
        sbom_formats=sbom_formats,
        arch=arch,
    )

    publisher = publisher or opub.Publisher.from_env()
    return publisher.post_attach_sbom(
        artefact=artefact,
        tags=tags,
    )


def copy(
    src: str | om.OciImageReference,
    dst: str | om.OciImageReference,
    oci_client: oc.Client | None=None,
):
    '''
    copies the artefact (image or index) from src to dst (registry to registry)
    '''
    logger.info(f'copying {src} to {dst}')

    if not oci_client:
        oci_client = opub.Publisher.from_env().oci_client

    try:
        apko_oci.replicate.replicate_artefact(
            src_image_reference=opub.parse_reference(src),
            tgt_image_reference=opub.parse_reference(dst),
            oci_client=oci_client,
        )
    except om.PublishError:
        raise
    except Exception as e:
        raise om.PublishError(f'tagging {src} with tag {dst}: {e}') from e
