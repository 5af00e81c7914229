'''
common interface for artefacts that can be published (single images and image-indexes), and
for "static files" that can be attached to them (such as SBOMs).

Attachments are peripherals: they are not part of an artefact's manifest (and hence do not
influence its digest), but are published alongside it.
'''

import abc
import copy
import dataclasses
import enum
import io
import typing

import apko_oci.model as om
import apko_oci.util as ou


class ArtefactKind(enum.Enum):
    IMAGE = 'image'
    INDEX = 'index'


@dataclasses.dataclass(frozen=True)
class Blob:
    '''
    a blob to be uploaded, either backed by octets held in memory, or by a file
    '''
    ref: om.OciBlobRef
    octets: bytes | None = None
    path: str | None = None

    def open(self) -> typing.BinaryIO:
        if self.octets is not None:
            return io.BytesIO(self.octets)
        if self.path:
            return open(self.path, 'rb')
        raise om.AssemblyError(f'blob has neither octets nor path: {self.ref=}')


class Artefact(abc.ABC):
    kind: ArtefactKind

    def __init__(
        self,
        attachments: typing.Mapping[str, 'StaticFile']=None,
    ):
        self._attachments = dict(attachments or {})

    @property
    @abc.abstractmethod
    def media_type(self) -> str:
        pass

    @abc.abstractmethod
    def raw_manifest(self) -> bytes:
        pass

    @abc.abstractmethod
    def blobs(self) -> typing.Iterable[Blob]:
        '''
        blobs referenced by this artefact's manifest (not including child-manifests)
        '''
        pass

    def children(self) -> typing.Sequence['Artefact']:
        '''
        child-artefacts whose manifests are referenced by this artefact's manifest
        '''
        return ()

    def digest(self) -> str:
        return ou.sha256_digest(self.raw_manifest())

    def size(self) -> int:
        return len(self.raw_manifest())

    def descriptor(self) -> om.OciBlobRef:
        return om.OciBlobRef(
            digest=self.digest(),
            mediaType=self.media_type,
            size=self.size(),
        )

    def attach(self, name: str, static_file: 'StaticFile') -> 'Artefact':
        '''
        returns a copy of this artefact with the given file attached under the given name.
        An existing attachment with the same name is replaced.
        '''
        attached = copy.copy(self)
        attached._attachments = self._attachments | {name: static_file}
        return attached

    def attachment(self, name: str) -> typing.Optional['StaticFile']:
        return self._attachments.get(name)

    def attachments(self) -> dict[str, 'StaticFile']:
        return dict(self._attachments)


class StaticFile(Artefact):
    '''
    a single-layer OCI-Artefact wrapping a file (e.g. an SBOM-document). The file's contents are
    stored as the only layer, using the given media type.
    '''
    kind = ArtefactKind.IMAGE

    def __init__(
        self,
        payload: bytes,
        layer_media_type: str,
    ):
        super().__init__()
        self.payload = payload
        self.layer_media_type = layer_media_type

        layer_digest = ou.sha256_digest(payload)
        self._cfg_bytes = ou.canonical_json({
            'architecture': '',
            'os': '',
            'config': {},
            'rootfs': {
                'type': 'layers',
                'diff_ids': [layer_digest],
            },
        })

        self.manifest = om.OciImageManifest(
            config=om.OciBlobRef(
                digest=ou.sha256_digest(self._cfg_bytes),
                mediaType=om.OCI_CONFIG_MIME,
                size=len(self._cfg_bytes),
            ),
            layers=[
                om.OciBlobRef(
                    digest=layer_digest,
                    mediaType=layer_media_type,
                    size=len(payload),
                ),
            ],
            mediaType=om.OCI_MANIFEST_SCHEMA_V2_MIME,
        )
        self._raw_manifest = ou.canonical_json(self.manifest.as_dict())

    @property
    def media_type(self) -> str:
        return self.manifest.mediaType

    def raw_manifest(self) -> bytes:
        return self._raw_manifest

    def blobs(self) -> typing.Iterable[Blob]:
        yield Blob(ref=self.manifest.config, octets=self._cfg_bytes)
        layer_ref, = self.manifest.layers
        yield Blob(ref=layer_ref, octets=self.payload)
