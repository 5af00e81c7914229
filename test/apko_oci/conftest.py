import gzip
import io
import tarfile

import pytest

import apko_oci.config as oconf


def mk_layer(path, files: dict[str, bytes]) -> str:
    '''
    writes a gzip-compressed tar-archive w/ the given files (w/ fixed metadata) to path
    '''
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode='w', format=tarfile.PAX_FORMAT) as tf:
        for name, octets in sorted(files.items()):
            tarinfo = tarfile.TarInfo(name=name)
            tarinfo.size = len(octets)
            tarinfo.mtime = 0
            tf.addfile(tarinfo, io.BytesIO(octets))

    with open(path, 'wb') as f:
        f.write(gzip.compress(buf.getvalue(), mtime=0))

    return str(path)


@pytest.fixture
def layer_path(tmp_path):
    return mk_layer(
        tmp_path / 'layer.tar.gz',
        files={
            'etc/os-release': b'ID=test\n',
            'usr/bin/hello': b'#!/bin/sh\necho hello\n',
        },
    )


@pytest.fixture
def image_configuration():
    return oconf.ImageConfiguration(
        entrypoint=oconf.Entrypoint(command='/usr/bin/hello --loud'),
        cmd='--name "some one"',
        work_dir='/srv',
        environment={'B': '2', 'A': '1'},
        accounts=oconf.Accounts(run_as='65532'),
    )


@pytest.fixture
def layer_factory(tmp_path):
    def factory(name: str, files: dict[str, bytes]) -> str:
        return mk_layer(tmp_path / name, files=files)

    return factory
