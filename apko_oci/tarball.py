'''
utils for writing image-tarballs in the format created by `docker save` (and understood by
`docker load`)

see:
    https://github.com/moby/moby/blob/master/image/spec/v1.2.md
'''

import dataclasses
import io
import json
import logging
import tarfile
import typing

import apko_oci.image as oimg
import apko_oci.model as om
import apko_oci.util as ou

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class TarballManifest:
    Config: str # <algorithm>:<digest>
    RepoTags: typing.List[str]
    Layers: typing.List[str]


def _tarinfo(name: str, size: int) -> tarfile.TarInfo:
    # fixed metadata, so identical images result in identical tarballs
    tarinfo = tarfile.TarInfo(name=name)
    tarinfo.size = size
    tarinfo.mode = 0o644
    tarinfo.mtime = 0
    return tarinfo


def _add_octets(tf: tarfile.TarFile, name: str, octets: bytes):
    tf.addfile(
        tarinfo=_tarinfo(name=name, size=len(octets)),
        fileobj=io.BytesIO(octets),
    )


def write_image_tarball(
    fileobj: typing.BinaryIO,
    image: oimg.Image,
    tags: typing.Iterable[str | om.OciImageReference],
):
    '''
    writes the given image as tar-archive into the given fileobj. The passed tags are recorded
    as `RepoTags` (they will be set by `docker load`).
    '''
    config_name = image.manifest.config.digest
    layer_name = f'{ou.digest_hex(image.layer.digest)}.tar.gz'

    repo_tags = []
    for tag in tags:
        tag = om.OciImageReference.to_image_ref(tag)
        if not tag.has_symbolical_tag:
            raise ValueError(f'only symbolical tags can be set in image-tarballs: {tag=}')
        repo_tags.append(tag.original_image_reference)

    manifest = TarballManifest(
        Config=config_name,
        RepoTags=repo_tags,
        Layers=[layer_name],
    )

    with tarfile.open(fileobj=fileobj, mode='w|', format=tarfile.PAX_FORMAT) as tf:
        _add_octets(tf, name=config_name, octets=image.raw_cfg())

        with image.layer.open() as layer_fh:
            tf.addfile(
                tarinfo=_tarinfo(name=layer_name, size=image.layer.size),
                fileobj=layer_fh,
            )

        _add_octets(
            tf,
            name='manifest.json',
            octets=json.dumps([dataclasses.asdict(manifest)]).encode('utf-8'),
        )


def write_image_tarball_to_file(
    path: str,
    image: oimg.Image,
    tags: typing.Iterable[str | om.OciImageReference],
):
    with open(path, 'wb') as f:
        write_image_tarball(
            fileobj=f,
            image=image,
            tags=tags,
        )
    logger.info(f'wrote {image.media_kind.human_readable} image-tarball to {path}')
