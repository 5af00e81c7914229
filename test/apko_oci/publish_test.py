import datetime
import json

import pytest
import requests

import apko_oci.artefact as oa
import apko_oci.config as oconf
import apko_oci.image as oimg
import apko_oci.index as oidx
import apko_oci.model as om
import apko_oci.platform as op
import apko_oci.publish as opub
import apko_oci.retry as oretry
import apko_oci.sbom as osbom
import apko_oci.store as ostore


class FakeClient:
    '''
    records uploaded blobs and manifests; fails for references listed in `failing`
    '''
    def __init__(self, failing: tuple[str, ...]=()):
        self.blobs = {} # {(repository, digest): octets}
        self.manifests = {} # {reference: octets}
        self.manifest_writes = []
        self.failing = failing

    def put_blob(self, image_reference, digest, octets_count, data):
        octets = data.read()
        assert len(octets) == octets_count
        self.blobs[(image_reference.ref_without_tag, digest)] = octets

    def put_manifest(self, image_reference, manifest):
        if str(image_reference) in self.failing:
            raise requests.exceptions.ConnectionError(f'cannot reach {image_reference}')
        self.manifests[str(image_reference)] = manifest
        self.manifest_writes.append(str(image_reference))


class FakeStore(ostore.LocalStore):
    def __init__(self):
        self.written = []
        self.tagged = []

    def write(self, tag, image):
        self.written.append((str(tag), image.digest()))
        return 'Loaded image\n'

    def tag(self, src, tgt):
        self.tagged.append((str(src), str(tgt)))


class FailingStore(FakeStore):
    def write(self, tag, image):
        raise ostore.LocalStoreError('docker load failed', response='line1\nline2')


no_sleep_retry = oretry.RetryPolicy(max_attempts=3, sleep=lambda seconds: None)

created = datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc)


def _image(layer_path, arch='amd64'):
    return oimg.build_image(
        media_kind=om.MediaKind.OCI,
        layer_path=layer_path,
        image_configuration=oconf.ImageConfiguration(),
        created=created,
        arch=op.Architecture(arch),
    )


def _with_sbom(artefact, tmp_path, arch_name='x86_64'):
    (tmp_path / f'sbom-{arch_name}.spdx.json').write_bytes(f'{{"sbom": "{arch_name}"}}'.encode())
    return osbom.attach_sbom(
        artefact,
        sbom_path=str(tmp_path),
        sbom_formats=['spdx'],
        arch=op.Architecture('amd64') if arch_name == 'x86_64' else None,
    )


def _publisher(oci_client=None, local_store=None, **kwargs):
    return opub.Publisher(
        oci_client=oci_client,
        local_store=local_store,
        retry_policy=no_sleep_retry,
        **kwargs,
    )


def test_parse_reference():
    assert str(opub.parse_reference('example.org/foo')) == 'example.org/foo:latest'
    assert str(opub.parse_reference('example.org/foo:1')) == 'example.org/foo:1'

    with pytest.raises(om.PublishError):
        opub.parse_reference('example.org/foo:not a tag')


def test_sbom_reference():
    digest = 'sha256:' + 'a' * 64
    ref = om.OciImageReference('example.org/foo:1')

    assert str(opub.sbom_reference(ref, digest)) == f'example.org/foo:sha256-{"a" * 64}.sbom'
    assert str(opub.sbom_reference(
        ref,
        digest,
        sbom_repository=om.OciImageReference('example.org/sboms'),
    )) == f'example.org/sboms:sha256-{"a" * 64}.sbom'


def test_publish_image_remote(layer_path):
    client = FakeClient()
    image = _image(layer_path)

    ref = _publisher(oci_client=client).publish_image(
        image=image,
        tags=['example.org/foo:1', 'example.org/bar:2'],
    )

    assert str(ref) == f'example.org/bar@{image.digest()}'
    assert client.manifest_writes == ['example.org/foo:1', 'example.org/bar:2']
    assert client.manifests['example.org/foo:1'] == image.raw_manifest()

    with open(layer_path, 'rb') as f:
        assert client.blobs[('example.org/foo', image.layer.digest)] == f.read()
    assert client.blobs[('example.org/bar', image.manifest.config.digest)] == image.raw_cfg()


def test_publish_image_writes_sbom_first(layer_path, tmp_path):
    client = FakeClient()
    image = _with_sbom(_image(layer_path), tmp_path)
    sbom = image.attachment(osbom.SBOM_ATTACHMENT_NAME)

    _publisher(oci_client=client).publish_image(image=image, tags=['example.org/foo:1'])

    sbom_ref = str(opub.sbom_reference(om.OciImageReference('example.org/foo:1'), image.digest()))
    assert client.manifest_writes == [sbom_ref, 'example.org/foo:1']
    assert client.manifests[sbom_ref] == sbom.raw_manifest()
    assert client.blobs[('example.org/foo', sbom.manifest.layers[0].digest)] == sbom.payload


def test_publish_image_sbom_repository_override(layer_path, tmp_path):
    client = FakeClient()
    image = _with_sbom(_image(layer_path), tmp_path)

    _publisher(
        oci_client=client,
        sbom_repository=om.OciImageReference('example.org/sboms'),
    ).publish_image(image=image, tags=['example.org/foo:1'])

    sbom_ref, image_ref = client.manifest_writes
    assert sbom_ref.startswith('example.org/sboms:sha256-')
    assert image_ref == 'example.org/foo:1'


def test_publish_image_retry_exhaustion(layer_path):
    client = FakeClient(failing=('example.org/foo:1',))
    attempts = []

    def counting_retryable(error):
        attempts.append(error)
        return oretry.is_transient(error)

    publisher = opub.Publisher(
        oci_client=client,
        retry_policy=oretry.RetryPolicy(
            max_attempts=3,
            retryable=counting_retryable,
            sleep=lambda seconds: None,
        ),
    )

    with pytest.raises(om.PublishError) as ei:
        publisher.publish_image(image=_image(layer_path), tags=['example.org/foo:1'])

    assert len(attempts) == 3
    assert isinstance(ei.value.__cause__, requests.exceptions.ConnectionError)
    assert ei.value.published == ()


def test_publish_image_fails_fast(layer_path):
    client = FakeClient(failing=('example.org/bar:2',))
    image = _image(layer_path)

    with pytest.raises(om.PublishError) as ei:
        _publisher(oci_client=client).publish_image(
            image=image,
            tags=['example.org/foo:1', 'example.org/bar:2', 'example.org/baz:3'],
        )

    assert [str(r) for r in ei.value.published] == [f'example.org/foo@{image.digest()}']
    assert 'example.org/baz:3' not in client.manifest_writes


def test_publish_image_local_is_idempotent(layer_path):
    store = FakeStore()
    publisher = _publisher(local_store=store)
    image = _image(layer_path)

    one = publisher.publish_image(image=image, tags=['example.org/foo:1'], local=True)
    other = publisher.publish_image(image=image, tags=['example.org/foo:1'], local=True)

    assert one == other
    assert str(one) == f'example.org/foo@{image.digest()}'

    local_tag = f'apko.local/cache:{image.digest().split(":")[1]}'
    assert store.written == [(local_tag, image.digest()), (local_tag, image.digest())]


def test_publish_image_local_failure(layer_path, caplog):
    with pytest.raises(om.PublishError):
        _publisher(local_store=FailingStore()).publish_image(
            image=_image(layer_path),
            tags=['example.org/foo:1'],
            local=True,
        )

    assert 'line1\\nline2' in caplog.text


def test_publish_index_remote(layer_path, tmp_path):
    client = FakeClient()
    images = {
        op.Architecture(arch): _image(layer_path, arch=arch)
        for arch in ('arm64', 'amd64')
    }
    index = _with_sbom(oidx.build_index(images), tmp_path, arch_name='index')

    ref = _publisher(oci_client=client).publish_index(index=index, tags=['example.org/foo:1'])

    assert str(ref) == f'example.org/foo@{index.digest()}'

    amd64_digest = images[op.Architecture('amd64')].digest()
    arm64_digest = images[op.Architecture('arm64')].digest()
    sbom_ref = str(opub.sbom_reference(om.OciImageReference('example.org/foo:1'), index.digest()))

    # peripherals first, then child-images, then index
    assert client.manifest_writes == [
        sbom_ref,
        f'example.org/foo@{amd64_digest}',
        f'example.org/foo@{arm64_digest}',
        'example.org/foo:1',
    ]
    assert json.loads(client.manifests['example.org/foo:1'])['mediaType'] == \
        om.OCI_IMAGE_INDEX_MIME


def test_publish_index_local_promotes_native_image(layer_path):
    store = FakeStore()
    images = {
        op.Architecture(arch): _image(layer_path, arch=arch)
        for arch in ('arm64', 'amd64')
    }
    index = oidx.build_index(images)
    arm64_digest = images[op.Architecture('arm64')].digest()
    local_tag = f'apko.local/cache:{arm64_digest.split(":")[1]}'

    ref = _publisher(local_store=store, native_platform=('linux', 'arm64')).publish_index(
        index=index,
        tags=['example.org/foo:1', 'example.org/foo:latest'],
        local=True,
    )

    assert str(ref) == f'{local_tag}@{arm64_digest}'
    assert store.tagged == [
        (local_tag, 'example.org/foo:1'),
        (local_tag, 'example.org/foo:latest'),
    ]
    assert store.written == []


def test_publish_index_local_without_native_image(layer_path, caplog):
    store = FakeStore()
    client = FakeClient()
    index = oidx.build_index({op.Architecture('arm64'): _image(layer_path, arch='arm64')})

    ref = _publisher(
        oci_client=client,
        local_store=store,
        native_platform=('linux', 'amd64'),
    ).publish_index(
        index=index,
        tags=['example.org/foo:1', 'example.org/bar:2'],
        local=True,
    )

    assert str(ref) == f'example.org/bar@{index.digest()}'
    assert store.tagged == []
    assert client.manifest_writes == []
    assert 'no image for native platform' in caplog.text


def test_post_attach_sbom(layer_path, tmp_path):
    client = FakeClient()
    image = _with_sbom(_image(layer_path), tmp_path)

    attached = _publisher(oci_client=client).post_attach_sbom(
        artefact=image,
        tags=['example.org/foo:1'],
    )

    assert attached is image
    sbom_ref, = client.manifest_writes
    assert sbom_ref.startswith('example.org/foo:sha256-')


def test_write_peripherals_without_sbom(layer_path):
    client = FakeClient()

    _publisher(oci_client=client).write_peripherals(
        image_reference=om.OciImageReference('example.org/foo:1'),
        artefact=_image(layer_path),
    )

    assert client.manifest_writes == []


def test_publisher_from_env():
    publisher = opub.Publisher.from_env(
        environ={'GOARCH': 'arm64', 'COSIGN_REPOSITORY': 'example.org/sboms'},
        oci_client=FakeClient(),
        local_store=FakeStore(),
    )

    assert publisher.native_platform == ('linux', 'arm64')
    assert publisher.sbom_repository.ref_without_tag == 'example.org/sboms'


def test_static_file_is_artefact():
    static_file = oa.StaticFile(payload=b'{}', layer_media_type=osbom.SPDX_JSON_MIME)

    assert static_file.kind is oa.ArtefactKind.IMAGE
    assert static_file.attachments() == {}
