import datetime
import textwrap

import pytest

import apko_oci.config as oconf
import apko_oci.model as om
import apko_oci.platform as op


def test_load_image_configuration(tmp_path):
    path = tmp_path / 'image.yaml'
    path.write_text(textwrap.dedent('''\
        contents:
          packages: [busybox]
        entrypoint:
          command: /usr/bin/nginx -g 'daemon off;'
          shell-fragment: echo hi
        cmd: --help
        work-dir: /srv
        environment:
          LANG: C.UTF-8
          some-var: 1
        accounts:
          run-as: 65532
        annotations:
          org.opencontainers.image.authors: someone
        vcs-url: https://example.org/repo@cafebabe
    '''))

    cfg = oconf.load_image_configuration(str(path))

    assert cfg.entrypoint.command == "/usr/bin/nginx -g 'daemon off;'"
    assert cfg.entrypoint.shell_fragment == 'echo hi'
    assert cfg.cmd == '--help'
    assert cfg.work_dir == '/srv'
    # keys within environment are passed verbatim
    assert cfg.environment == {'LANG': 'C.UTF-8', 'some-var': '1'}
    assert cfg.accounts.run_as == '65532'
    assert cfg.annotations == {'org.opencontainers.image.authors': 'someone'}
    assert cfg.vcs_url == 'https://example.org/repo@cafebabe'


def test_load_empty_image_configuration(tmp_path):
    path = tmp_path / 'image.yaml'
    path.write_text('')

    assert oconf.load_image_configuration(str(path)) == oconf.ImageConfiguration()


def test_load_invalid_image_configuration(tmp_path):
    path = tmp_path / 'image.yaml'

    path.write_text('- not\n- a\n- mapping\n')
    with pytest.raises(om.ConfigError):
        oconf.load_image_configuration(str(path))

    path.write_text('work-dir: [not, a, string]\n')
    with pytest.raises(om.ConfigError):
        oconf.load_image_configuration(str(path))


def test_build_options_defaults():
    options = oconf.BuildOptions()

    assert options.source_date_epoch == datetime.datetime(1970, 1, 1, tzinfo=datetime.timezone.utc)
    assert options.arch == op.Architecture('amd64')
    assert options.media_kind is om.MediaKind.OCI

    assert oconf.BuildOptions(use_docker_media_types=True).media_kind is om.MediaKind.DOCKER


def test_native_platform():
    assert oconf.native_platform(environ={}) == ('linux', 'amd64')
    assert oconf.native_platform(environ={'GOARCH': 'arm64'}) == ('linux', 'arm64')
    assert oconf.native_platform(environ={'GOOS': 'darwin', 'GOARCH': ''}) == ('darwin', 'amd64')


def test_sbom_target_repository():
    assert oconf.sbom_target_repository(environ={}) is None

    repository = oconf.sbom_target_repository(environ={'COSIGN_REPOSITORY': 'example.org/sboms'})
    assert repository.ref_without_tag == 'example.org/sboms'

    with pytest.raises(om.PublishError):
        oconf.sbom_target_repository(environ={'COSIGN_REPOSITORY': 'example.org/sboms:tag'})
