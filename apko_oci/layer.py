import dataclasses
import hashlib
import logging
import typing
import zlib

import apko_oci.model as om

logger = logging.getLogger(__name__)

_GZIP_MAGIC = b'\x1f\x8b'
_chunk_size = 1024 * 1024


def _gzip_decompressobj():
    return zlib.decompressobj(wbits=zlib.MAX_WBITS | 16)


@dataclasses.dataclass(frozen=True)
class Layer:
    '''
    a gzip-compressed filesystem-archive on disk.

    digest: sha256-digest of the compressed octets (used in manifests)
    diff_id: sha256-digest of the uncompressed octets (used in cfg-blob's rootfs)
    '''
    path: str
    media_type: str
    digest: str
    diff_id: str
    size: int

    @staticmethod
    def from_file(
        path: str,
        media_type: str=om.OCI_LAYER_MIME,
    ) -> 'Layer':
        digest, diff_id, size = _digests(path=path)
        logger.debug(f'{path=} {digest=} {diff_id=} {size=}')

        return Layer(
            path=path,
            media_type=media_type,
            digest=digest,
            diff_id=diff_id,
            size=size,
        )

    def blob_ref(self) -> om.OciBlobRef:
        return om.OciBlobRef(
            digest=self.digest,
            mediaType=self.media_type,
            size=self.size,
        )

    def open(self) -> typing.BinaryIO:
        return open(self.path, 'rb')


def _digests(path: str) -> tuple[str, str, int]:
    compressed_hash = hashlib.sha256()
    uncompressed_hash = hashlib.sha256()
    decompressor = _gzip_decompressobj()
    size = 0

    try:
        with open(path, 'rb') as f:
            is_first_chunk = True
            while (chunk := f.read(_chunk_size)):
                if is_first_chunk:
                    is_first_chunk = False
                    if not chunk.startswith(_GZIP_MAGIC):
                        raise om.LayerError(f'not a gzip-compressed archive: {path=}')

                size += len(chunk)
                compressed_hash.update(chunk)

                while chunk:
                    # bounded output, layers may be highly compressed
                    uncompressed_hash.update(decompressor.decompress(chunk, _chunk_size))
                    if (chunk := decompressor.unconsumed_tail):
                        continue
                    # gzip-streams may consist of multiple members
                    if decompressor.eof and (chunk := decompressor.unused_data):
                        decompressor = _gzip_decompressobj()

            if is_first_chunk:
                raise om.LayerError(f'empty layer archive: {path=}')

            uncompressed_hash.update(decompressor.flush())
            if not decompressor.eof:
                raise om.LayerError(f'truncated gzip-stream: {path=}')
    except OSError as oe:
        raise om.LayerError(f'failed to read layer archive {path=}: {oe}') from oe
    except zlib.error as ze:
        raise om.LayerError(f'invalid gzip-stream in layer archive {path=}: {ze}') from ze

    return (
        f'sha256:{compressed_hash.hexdigest()}',
        f'sha256:{uncompressed_hash.hexdigest()}',
        size,
    )
