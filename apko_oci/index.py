import collections.abc
import logging
import typing

import apko_oci.artefact as oa
import apko_oci.image as oimg
import apko_oci.model as om
import apko_oci.platform as op
import apko_oci.util as ou

logger = logging.getLogger(__name__)


class Index(oa.Artefact):
    '''
    a multi-platform artefact (OCI Image Index, or Docker Manifest List), referencing one
    image per architecture. Entries are kept in the order they were passed (see `build_index`
    for canonical ordering).
    '''
    kind = oa.ArtefactKind.INDEX

    def __init__(
        self,
        media_kind: om.MediaKind,
        entries: typing.Sequence[tuple[oimg.Image, om.OciImageManifestListEntry]],
        attachments: typing.Mapping[str, oa.StaticFile]=None,
    ):
        super().__init__(attachments=attachments)

        self.media_kind = media_kind
        self.entries = tuple(entries)

        self.manifest = om.OciImageManifestList(
            manifests=[entry for _, entry in self.entries],
            mediaType=media_kind.index_mimetype,
        )
        self._raw_manifest = ou.canonical_json(self.manifest.as_dict())

    @property
    def media_type(self) -> str:
        return self.manifest.mediaType

    def raw_manifest(self) -> bytes:
        return self._raw_manifest

    def blobs(self) -> typing.Iterable[oa.Blob]:
        return ()

    def children(self) -> typing.Sequence[oimg.Image]:
        return tuple(image for image, _ in self.entries)


def sorted_architectures(
    archs: collections.abc.Iterable[op.Architecture],
) -> list[op.Architecture]:
    '''
    returns the given architectures ordered by their string-form. Index-entries must always be
    iterated in this order, so identical inputs always yield identical index-manifests.
    '''
    return sorted(archs, key=str)


def build_index(
    images: typing.Mapping[op.Architecture, oimg.Image],
    media_kind: om.MediaKind=om.MediaKind.OCI,
) -> Index:
    '''
    creates an index from the given images (one per architecture).

    raises PublishError if media type, digest or size cannot be determined for any image.
    '''
    if not isinstance(media_kind, om.MediaKind):
        raise ValueError(f'unsupported {media_kind=}')

    entries = []

    for arch in sorted_architectures(images.keys()):
        image = images[arch]
        if image is None:
            raise om.AssemblyError(f'no image passed for {arch=}')

        try:
            media_type = image.media_type
        except Exception as e:
            raise om.PublishError(f'failed to get mediatype for {arch=}: {e}') from e

        try:
            digest = image.digest()
        except Exception as e:
            raise om.PublishError(f'failed to compute digest for {arch=}: {e}') from e

        try:
            size = image.size()
        except Exception as e:
            raise om.PublishError(f'failed to compute size for {arch=}: {e}') from e

        entries.append((
            image,
            om.OciImageManifestListEntry(
                digest=digest,
                mediaType=media_type,
                size=size,
                platform=arch.to_oci_platform(),
            ),
        ))

    # XXX: annotations are not (yet) propagated to index-manifest

    return Index(
        media_kind=media_kind,
        entries=entries,
    )


def native_manifest(
    index: Index,
    os_name: str,
    architecture: str,
) -> om.OciImageManifestListEntry | None:
    '''
    returns the index-entry matching the given os and architecture, or None if there is no
    such entry.
    '''
    for entry in index.manifest.manifests:
        if not entry.platform:
            continue
        if entry.platform.matches(os=os_name, architecture=architecture):
            return entry

    return None
