import datetime
import json
import tarfile

import pytest

import apko_oci
import apko_oci.config as oconf
import apko_oci.model as om
import apko_oci.platform as op
import apko_oci.publish as opub
import apko_oci.retry as oretry
import apko_oci.sbom as osbom

created = datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc)


class RecordingClient:
    def __init__(self):
        self.manifest_writes = []

    def put_blob(self, image_reference, digest, octets_count, data):
        data.read()

    def put_manifest(self, image_reference, manifest):
        self.manifest_writes.append((str(image_reference), manifest))


@pytest.fixture
def sbom_path(tmp_path):
    sbom_dir = tmp_path / 'sboms'
    sbom_dir.mkdir()
    for name in ('x86_64', 'aarch64', 'index'):
        (sbom_dir / f'sbom-{name}.spdx.json').write_bytes(f'{{"name": "{name}"}}'.encode())
    return str(sbom_dir)


@pytest.fixture
def publisher():
    return opub.Publisher(
        oci_client=RecordingClient(),
        retry_policy=oretry.no_retry,
    )


def test_build_image_w_sbom(layer_path, image_configuration, sbom_path):
    image = apko_oci.build_image(
        media_kind=om.MediaKind.OCI,
        layer_path=layer_path,
        image_configuration=image_configuration,
        created=created,
        arch=op.Architecture('arm64'),
        sbom_path=sbom_path,
        sbom_formats=['spdx'],
    )

    assert image.attachment(osbom.SBOM_ATTACHMENT_NAME).payload == b'{"name": "aarch64"}'


def test_build_image_tarball(tmp_path, layer_path, image_configuration):
    output_path = tmp_path / 'image.tar'

    image = apko_oci.build_image_tarball(
        image_ref='example.org/foo:1',
        layer_path=layer_path,
        output_path=str(output_path),
        image_configuration=image_configuration,
        options=oconf.BuildOptions(use_docker_media_types=True),
    )

    assert image.media_type == om.DOCKER_MANIFEST_SCHEMA_V2_MIME
    with tarfile.open(output_path) as tf:
        manifest, = json.load(tf.extractfile('manifest.json'))
    assert manifest['RepoTags'] == ['example.org/foo:1']


def test_build_image_tarball_w_invalid_tag(tmp_path, layer_path, image_configuration):
    with pytest.raises(om.PublishError):
        apko_oci.build_image_tarball(
            image_ref='example.org/foo@sha256:' + 'a' * 64,
            layer_path=layer_path,
            output_path=str(tmp_path / 'image.tar'),
            image_configuration=image_configuration,
        )


def test_publish_image(layer_path, image_configuration, publisher):
    ref, image = apko_oci.publish_image(
        layer_path=layer_path,
        image_configuration=image_configuration,
        created=created,
        arch=op.Architecture('amd64'),
        tags=['example.org/foo:1'],
        publisher=publisher,
    )

    assert str(ref) == f'example.org/foo@{image.digest()}'
    assert image.media_type == om.OCI_MANIFEST_SCHEMA_V2_MIME


def test_publish_docker_image(layer_path, image_configuration, publisher):
    _, image = apko_oci.publish_docker_image(
        layer_path=layer_path,
        image_configuration=image_configuration,
        created=created,
        arch=op.Architecture('amd64'),
        tags=['example.org/foo:1'],
        publisher=publisher,
    )

    assert image.media_type == om.DOCKER_MANIFEST_SCHEMA_V2_MIME


def test_publish_index(layer_path, image_configuration, publisher, sbom_path):
    images = {
        arch: apko_oci.build_image(
            media_kind=om.MediaKind.DOCKER,
            layer_path=layer_path,
            image_configuration=image_configuration,
            created=created,
            arch=arch,
        )
        for arch in (op.Architecture('amd64'), op.Architecture('arm64'))
    }

    ref, index = apko_oci.publish_docker_index(
        images=images,
        tags=['example.org/foo:1'],
        sbom_path=sbom_path,
        sbom_formats=['spdx'],
        publisher=publisher,
    )

    assert str(ref) == f'example.org/foo@{index.digest()}'
    assert index.media_type == om.DOCKER_MANIFEST_LIST_MIME
    assert index.attachment(osbom.SBOM_ATTACHMENT_NAME).payload == b'{"name": "index"}'

    written = [reference for reference, _ in publisher.oci_client.manifest_writes]
    assert written[0].startswith('example.org/foo:sha256-')
    assert written[-1] == 'example.org/foo:1'


def test_post_attach_sbom(layer_path, image_configuration, publisher, sbom_path):
    image = apko_oci.build_image(
        media_kind=om.MediaKind.OCI,
        layer_path=layer_path,
        image_configuration=image_configuration,
        created=created,
        arch=op.Architecture('amd64'),
    )

    attached = apko_oci.post_attach_sbom(
        artefact=image,
        sbom_path=sbom_path,
        sbom_formats=['spdx'],
        arch=op.Architecture('amd64'),
        tags=['example.org/foo:1'],
        publisher=publisher,
    )

    assert attached.attachment(osbom.SBOM_ATTACHMENT_NAME) is not None
    (reference, _), = publisher.oci_client.manifest_writes
    assert reference == f'example.org/foo:sha256-{image.digest().split(":")[1]}.sbom'


def test_copy_wraps_errors():
    class FailingClient:
        def manifest_raw(self, image_reference, accept=None):
            raise om.OciImageNotFoundException(f'{image_reference} not found')

    with pytest.raises(om.PublishError) as ei:
        apko_oci.copy(
            src='example.org/src:1',
            dst='example.org/tgt:1',
            oci_client=FailingClient(),
        )

    assert isinstance(ei.value.__cause__, om.OciImageNotFoundException)
