import dataclasses
import enum
import logging

import apko_oci.model as om

logger = logging.getLogger(__name__)

# the only operating system images are built for
DEFAULT_OS = 'linux'


class OperatingSystem(enum.Enum):
    '''
    OperatingSystem contains the values for the 'os' property in an oci multiarch image.
    See https://go.dev/doc/install/source#environment.
    '''
    AIX = 'aix'
    ANDROID = 'android'
    DARWIN = 'darwin'
    DRAGONFLY = 'dragonfly'
    FREEBSD = 'freebsd'
    ILLUMOS = 'illumos'
    IOS = 'ios'
    JS = 'js'
    LINUX = 'linux'
    NETBSD = 'netbsd'
    OPENBSD = 'openbsd'
    PLAN9 = 'plan9'
    SOLARIS = 'solaris'
    WINDOWS = 'windows'

    @classmethod
    def contains_value(cls, value: str):
        return value in [v.value for v in OperatingSystem]


class OciArchitecture(enum.Enum):
    '''
    contains the values for the 'architecture' property in an oci multiarch image.
    See https://go.dev/doc/install/source#environment.
    '''
    PPC64 = 'ppc64'
    _386 = '386'
    AMD64 = 'amd64'
    ARM = 'arm'
    ARM64 = 'arm64'
    WASM = 'wasm'
    LOONG64 = 'loong64'
    MIPS = 'mips'
    MIPSLE = 'mipsle'
    MIPS64 = 'mips64'
    MIPS64LE = 'mips64le'
    PPC64le = 'ppc64le'
    RISCV64 = 'riscv64'
    S390X = 's390x'

    @classmethod
    def contains_value(cls, value: str):
        return value in [v.value for v in OciArchitecture]


# alias -> canonical (oci-style) architecture name
_aliases = {
    'x86_64': 'amd64',
    'x86': '386',
    'aarch64': 'arm64',
    'armhf': 'arm/v6',
    'armv7': 'arm/v7',
}

# canonical architecture name -> apk-style architecture name
_apk_names = {
    '386': 'x86',
    'amd64': 'x86_64',
    'arm64': 'aarch64',
    'arm/v6': 'armhf',
    'arm/v7': 'armv7',
}


@dataclasses.dataclass(frozen=True, order=True)
class Architecture:
    '''
    a target platform, identified by its (canonical) string form, e.g. `amd64` or `arm/v7`.

    instances are ordered by their string form. Use `Architecture.parse` to create instances
    from user-supplied names (which may be apk-style aliases, such as `x86_64`).
    '''
    name: str

    @staticmethod
    def parse(name: str) -> 'Architecture':
        if isinstance(name, Architecture):
            return name
        return Architecture(name=_aliases.get(name, name))

    def to_apk(self) -> str:
        return _apk_names.get(self.name, self.name)

    def to_oci_platform(self) -> om.OciPlatform:
        architecture, _, variant = self.name.partition('/')

        return om.OciPlatform(
            architecture=architecture,
            os=DEFAULT_OS,
            variant=variant or None,
        )

    def __str__(self):
        return self.name


def native_platform(
    os_name: str,
    architecture: str,
) -> tuple[str, str]:
    if not OperatingSystem.contains_value(os_name):
        logger.warning(f'unknown operating system {os_name=}')
    if not OciArchitecture.contains_value(architecture):
        logger.warning(f'unknown architecture {architecture=}')

    return os_name, architecture
