import collections.abc
import dataclasses
import enum
import functools
import json
import typing
import urllib.parse

import dacite

import apko_oci.util

OCI_MANIFEST_SCHEMA_V2_MIME = 'application/vnd.oci.image.manifest.v1+json'
OCI_IMAGE_INDEX_MIME = 'application/vnd.oci.image.index.v1+json'
OCI_CONFIG_MIME = 'application/vnd.oci.image.config.v1+json'
OCI_LAYER_MIME = 'application/vnd.oci.image.layer.v1.tar+gzip'

DOCKER_MANIFEST_LIST_MIME = 'application/vnd.docker.distribution.manifest.list.v2+json'
DOCKER_MANIFEST_SCHEMA_V2_MIME = 'application/vnd.docker.distribution.manifest.v2+json'
DOCKER_CONFIG_MIME = 'application/vnd.docker.container.image.v1+json'
DOCKER_LAYER_MIME = 'application/vnd.docker.image.rootfs.diff.tar.gzip'

# well-known annotation keys
SOURCE_ANNOTATION = 'org.opencontainers.image.source'
REVISION_ANNOTATION = 'org.opencontainers.image.revision'


class ApkoOciError(Exception):
    pass


class LayerError(ApkoOciError):
    '''
    raised if a layer-archive is unreadable or not a valid compressed archive
    '''
    pass


class ConfigError(ApkoOciError):
    '''
    raised if an image-configuration cannot be turned into a runtime-config (e.g. because of
    malformed quoting in entrypoint or cmd)
    '''
    def __init__(self, *args, field: str=None):
        super().__init__(*args)
        self.field = field


class SBOMError(ApkoOciError):
    pass


class AssemblyError(ApkoOciError):
    pass


class PublishError(ApkoOciError):
    '''
    raised if publishing fails. `published` holds the digest-references of destinations that
    were successfully written within the same call before the failure occurred.
    '''
    def __init__(self, *args, published: collections.abc.Sequence['OciImageReference']=()):
        super().__init__(*args)
        self.published = tuple(published)


class MediaKind(enum.Enum):
    '''
    the image-ecosystem an artefact is built for. Chosen once per build; all media types of
    an artefact must be of the same kind.
    '''
    OCI = 'oci'
    DOCKER = 'docker'

    @property
    def layer_mimetype(self) -> str:
        if self is MediaKind.OCI:
            return OCI_LAYER_MIME
        elif self is MediaKind.DOCKER:
            return DOCKER_LAYER_MIME
        raise NotImplementedError(self)

    @property
    def config_mimetype(self) -> str:
        if self is MediaKind.OCI:
            return OCI_CONFIG_MIME
        elif self is MediaKind.DOCKER:
            return DOCKER_CONFIG_MIME
        raise NotImplementedError(self)

    @property
    def manifest_mimetype(self) -> str:
        if self is MediaKind.OCI:
            return OCI_MANIFEST_SCHEMA_V2_MIME
        elif self is MediaKind.DOCKER:
            return DOCKER_MANIFEST_SCHEMA_V2_MIME
        raise NotImplementedError(self)

    @property
    def index_mimetype(self) -> str:
        if self is MediaKind.OCI:
            return OCI_IMAGE_INDEX_MIME
        elif self is MediaKind.DOCKER:
            return DOCKER_MANIFEST_LIST_MIME
        raise NotImplementedError(self)

    @property
    def human_readable(self) -> str:
        if self is MediaKind.OCI:
            return 'OCI'
        elif self is MediaKind.DOCKER:
            return 'Docker'
        return 'unknown'


class MimeTypes:
    '''
    predefined, well-known mimetypes, handy to be used in apko_oci.client.Client.manifest as
    `accept` arg

    note: not all registries honour `access` header
    '''
    single_image = ', '.join((OCI_MANIFEST_SCHEMA_V2_MIME, DOCKER_MANIFEST_SCHEMA_V2_MIME))
    multiarch = ', '.join((OCI_IMAGE_INDEX_MIME, DOCKER_MANIFEST_LIST_MIME))
    prefer_multiarch = ', '.join((multiarch, single_image))


class OciTagType(enum.Enum):
    SYMBOLIC = 'symbolic'
    DIGEST = 'digest'
    NO_TAG = 'no_tag'


class OciImageReference:
    @staticmethod
    def to_image_ref(
        image_reference: typing.Union[str, 'OciImageReference'],
        normalise: bool=True,
    ):
        if isinstance(image_reference, OciImageReference):
            return image_reference
        else:
            return OciImageReference(
                image_reference=image_reference,
                normalise=normalise,
            )

    def __init__(
        self,
        image_reference: typing.Union[str, 'OciImageReference'],
        normalise: bool=True,
    ):
        if isinstance(image_reference, OciImageReference):
            self._orig_image_reference = image_reference._orig_image_reference
        elif isinstance(image_reference, str):
            self._orig_image_reference = image_reference
        else:
            raise ValueError(image_reference)
        self._normalise = normalise

    @property
    def original_image_reference(self) -> str:
        return self._orig_image_reference

    @functools.cached_property
    def normalised_image_reference(self) -> str:
        return apko_oci.util.normalise_image_reference(self._orig_image_reference)

    @functools.cached_property
    def netloc(self) -> str:
        return self.urlparsed.netloc

    @functools.cached_property
    def ref_without_tag(self) -> str:
        '''
        returns the (normalised) image reference w/o the tag or digest tag.
        '''
        p = self.urlparsed
        name = p.netloc + p.path.rsplit('@', 1)[0].rsplit(':', 1)[0]

        return name

    @functools.cached_property
    def name(self) -> str:
        '''
        returns the (normalised) image name (omitting api-prefix and tag)
        '''
        p = self.urlparsed
        name = p.path[1:].rsplit('@', 1)[0].rsplit(':', 1)[0]

        return name

    @functools.cached_property
    def has_digest_tag(self) -> bool:
        return self.tag_type is OciTagType.DIGEST

    @functools.cached_property
    def has_symbolical_tag(self) -> bool:
        return self.tag_type is OciTagType.SYMBOLIC

    @functools.cached_property
    def has_mixed_tag(self) -> bool:
        if not self.has_digest_tag:
            return False

        p = self.urlparsed
        ref_without_digest_tag = p.path.rsplit('@', 1)[0]

        return ':' in ref_without_digest_tag

    @functools.cached_property
    def has_tag(self):
        return not self.tag_type is OciTagType.NO_TAG

    @functools.cached_property
    def tag(self) -> str:
        p = self.urlparsed

        if '@' in p.path:
            return p.path.rsplit('@', 1)[-1]
        elif ':' in p.path:
            return p.path.rsplit(':', 1)[-1]
        else:
            raise ValueError(f'no tag found for {str(self)}')

    @functools.cached_property
    def tag_type(self) -> OciTagType:
        p = self.urlparsed

        if '@' in p.path:
            return OciTagType.DIGEST
        elif ':' in p.path:
            return OciTagType.SYMBOLIC
        else:
            return OciTagType.NO_TAG

    @property
    def parsed_digest_tag(self) -> tuple[str, str]:
        if not self.tag_type is OciTagType.DIGEST:
            raise ValueError(f'not a digest-tag: {str(self)=}')

        algorithm, digest = self.tag.split(':')
        return algorithm, digest

    @functools.cached_property
    def urlparsed(self) -> urllib.parse.ParseResult:
        if not '://' in (img_ref := str(self)) and not img_ref.startswith('/'):
            return urllib.parse.urlparse(f'https://{img_ref}')
        return urllib.parse.urlparse(img_ref)

    def with_tag(self, tag: str) -> 'OciImageReference':
        if 'sha256' in tag and not '@' in tag:
            image_ref = f'{self.ref_without_tag}@{tag}'
        else:
            image_ref = f'{self.ref_without_tag}:{tag}'

        return OciImageReference(
            image_reference=image_ref,
            normalise=self._normalise,
        )

    def __str__(self) -> str:
        if self._normalise:
            return self.normalised_image_reference
        return self._orig_image_reference

    def __repr__(self) -> str:
        return f'OciImageReference({str(self)})'

    def __eq__(self, other) -> bool:
        if not isinstance(other, OciImageReference):
            return False

        if self._orig_image_reference == other._orig_image_reference:
            return True

        return apko_oci.util.normalise_image_reference(self._orig_image_reference) == \
               apko_oci.util.normalise_image_reference(other._orig_image_reference)

    def __hash__(self):
        return hash((self._orig_image_reference,))


class OciImageNotFoundException(Exception):
    pass


@dataclasses.dataclass(kw_only=True)
class OciBlobRef:
    digest: str
    mediaType: str
    size: int
    annotations: dict | None = None

    def as_dict(self) -> dict:
        raw = dataclasses.asdict(self)
        # fields that are None should not be included in the output
        raw = {k:v for k,v in raw.items() if v is not None}
        return raw

    def __hash__(self):
        annotations = tuple(sorted(self.annotations.items())) if self.annotations else ()
        return hash((self.digest, self.size, self.mediaType, annotations))

    def __eq__(self, other) -> bool:
        if not isinstance(other, OciBlobRef):
            return False

        other: OciBlobRef

        if not self.digest == other.digest:
            return False

        if not self.mediaType == other.mediaType:
            return False

        if not self.size == other.size:
            return False

        if not self.annotations == other.annotations:
            return False

        return True


@dataclasses.dataclass
class OciImageManifest:
    config: OciBlobRef
    layers: collections.abc.Sequence[OciBlobRef]
    mediaType: str = OCI_MANIFEST_SCHEMA_V2_MIME
    schemaVersion: int = 2
    annotations: dict = dataclasses.field(default_factory=dict)

    def as_dict(self) -> dict:
        def layer_to_dict(layer):
            if isinstance(layer, dict):
                return layer
            else:
                return layer.as_dict()

        raw = {
            'config': self.config.as_dict(),
            'layers': [layer_to_dict(layer) for layer in self.layers],
            'mediaType': self.mediaType,
            'schemaVersion': self.schemaVersion,
        }

        # docker-manifests do not know about annotations
        if self.annotations and self.mediaType != DOCKER_MANIFEST_SCHEMA_V2_MIME:
            raw['annotations'] = self.annotations

        return raw

    def blobs(self) -> collections.abc.Generator[OciBlobRef, None, None]:
        yield self.config
        yield from self.layers


@dataclasses.dataclass(frozen=True)
class OciPlatform:
    '''
    https://github.com/distribution/distribution/blob/main/docs/spec/manifest-v2-2.md#manifest-list
    '''
    architecture: str
    os: str
    variant: str | None = None
    features: tuple[str, ...] | None = None

    def as_dict(self) -> dict:
        # need custom serialisation, because some OCI registries do not like null-values
        # (must be absent instead)
        raw = dataclasses.asdict(self)

        if not self.variant:
            del raw['variant']

        if not self.features:
            del raw['features']
        else:
            raw['features'] = list(self.features)

        return raw

    def matches(self, os: str, architecture: str) -> bool:
        return self.os == os and self.architecture == architecture

    def __str__(self):
        if self.variant:
            return f'{self.os}/{self.architecture}/{self.variant}'
        return f'{self.os}/{self.architecture}'


@dataclasses.dataclass
class OciImageManifestListEntry(OciBlobRef):
    artifactType: str | None = None
    data: str | None = None
    platform: OciPlatform | None = None
    urls: list[str] | None = None

    def as_dict(self) -> dict:
        raw = OciBlobRef.as_dict(self)
        # platform is an optional attribute according to oci spec
        # => only include in the output if set
        if self.platform:
            raw['platform'] = self.platform.as_dict()
        # fields that are None should not be included in the output
        raw = {k:v for k,v in raw.items() if v is not None}
        return raw


@dataclasses.dataclass
class OciImageManifestList:
    '''Covers both Docker Manifest List
        (https://github.com/distribution/distribution/blob/main/docs/spec/manifest-v2-2.md#manifest-list)
        and OCI Image Index
        (https://github.com/opencontainers/image-spec/blob/main/image-index.md)
    '''
    manifests: list[OciImageManifestListEntry]
    mediaType: str = OCI_IMAGE_INDEX_MIME
    schemaVersion: int = 2
    annotations: dict = dataclasses.field(default_factory=dict)

    def as_dict(self):
        raw = {
            'manifests': [le.as_dict() for le in self.manifests],
            'mediaType': self.mediaType,
            'schemaVersion': self.schemaVersion,
        }

        if self.mediaType == OCI_IMAGE_INDEX_MIME and self.annotations:
            raw['annotations'] = self.annotations

        return raw


def as_manifest(
    manifest: str | bytes | dict | OciImageManifest | OciImageManifestList,
) -> OciImageManifest | OciImageManifestList:
    '''
    returns a deserialised equivalent of the passed-in manifest. For convenience, if passed-in
    manifest is already an instance of either OciImageManifest or OciImageManifestList, the
    passed value is returned unchanged.
    '''
    if isinstance(manifest, (OciImageManifest, OciImageManifestList)):
        return manifest

    if isinstance(manifest, (str, bytes)):
        manifest = json.loads(manifest)

    if (media_type := manifest.get('mediaType')) in (
        DOCKER_MANIFEST_LIST_MIME,
        OCI_IMAGE_INDEX_MIME,
    ):
        return dacite.from_dict(
            data_class=OciImageManifestList,
            data=manifest,
            config=dacite.Config(cast=[tuple]),
        )

    if media_type in (
        DOCKER_MANIFEST_SCHEMA_V2_MIME,
        OCI_MANIFEST_SCHEMA_V2_MIME,
    ):
        return dacite.from_dict(
            data_class=OciImageManifest,
            data=manifest,
        )

    raise ValueError(manifest, 'unknown schema-version')
