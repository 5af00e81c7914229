import apko_oci.platform as op


def test_parse_aliases():
    assert op.Architecture.parse('x86_64') == op.Architecture('amd64')
    assert op.Architecture.parse('aarch64') == op.Architecture('arm64')
    assert op.Architecture.parse('armv7') == op.Architecture('arm/v7')
    assert op.Architecture.parse('riscv64') == op.Architecture('riscv64')


def test_to_apk():
    assert op.Architecture('amd64').to_apk() == 'x86_64'
    assert op.Architecture('arm/v6').to_apk() == 'armhf'
    assert op.Architecture('386').to_apk() == 'x86'


def test_to_oci_platform():
    platform = op.Architecture('arm/v7').to_oci_platform()

    assert platform.os == 'linux'
    assert platform.architecture == 'arm'
    assert platform.variant == 'v7'

    platform = op.Architecture('amd64').to_oci_platform()
    assert platform.variant is None
    assert str(platform) == 'linux/amd64'


def test_ordering():
    archs = [op.Architecture('arm64'), op.Architecture('amd64'), op.Architecture('386')]

    assert [str(a) for a in sorted(archs)] == ['386', 'amd64', 'arm64']


def test_native_platform_warns_on_unknown(caplog):
    assert op.native_platform(os_name='linux', architecture='amd64') == ('linux', 'amd64')
    assert not caplog.records

    assert op.native_platform(os_name='templeos', architecture='amd64') == ('templeos', 'amd64')
    assert 'unknown operating system' in caplog.text
