"""Architectures found in dyld shared caches and their pointer layouts."""

import enum
from dataclasses import dataclass

from dscextract.loadcommands import Layout

CPU_ARCH_ABI64 = 0x01000000

CPU_TYPE_X86 = 7
CPU_TYPE_X86_64 = CPU_TYPE_X86 | CPU_ARCH_ABI64
CPU_TYPE_ARM = 12
CPU_TYPE_ARM64 = CPU_TYPE_ARM | CPU_ARCH_ABI64

CPU_SUBTYPE_ARM_V5TEJ = 7
CPU_SUBTYPE_ARM_XSCALE = 8
CPU_SUBTYPE_ARM_V7 = 9
CPU_SUBTYPE_ARM_V7F = 10
CPU_SUBTYPE_ARM_V7S = 11
CPU_SUBTYPE_ARM_V7K = 12
CPU_SUBTYPE_ARM64_ALL = 0
CPU_SUBTYPE_ARM64_E = 2
CPU_SUBTYPE_X86_64_H = 8


class Arch(enum.Enum):
    """A processor family a shared cache can be built for."""

    X86 = "x86"
    X86_64 = "x86_64"
    ARM = "arm"
    ARM64 = "arm64"

    def pointer_size(self) -> int:
        """Size of a pointer in bytes."""
        return 8 if self in (Arch.X86_64, Arch.ARM64) else 4

    def layout(self) -> Layout:
        """The Mach-O record layout used by images of this architecture."""
        return Layout(is_64=self.pointer_size() == 8, little_endian=True)


@dataclass(frozen=True, order=True)
class ArchPair:
    """A cpu type paired with a cpu subtype, ordered by type then subtype."""

    arch: int
    subtype: int


_MAGICS = {
    b"dyld_v1    i386": Arch.X86,
    b"dyld_v1  x86_64": Arch.X86_64,
    b"dyld_v1 x86_64h": Arch.X86_64,
    b"dyld_v1   armv5": Arch.ARM,
    b"dyld_v1   armv6": Arch.ARM,
    b"dyld_v1   armv7": Arch.ARM,
    b"dyld_v1   arm64": Arch.ARM64,
    b"dyld_v1  arm64e": Arch.ARM64,
}

_ARMV7_PREFIX = b"dyld_v1  armv7"


def arch_for_magic(magic) -> Arch:
    """Return the architecture named by a cache's magic field.

    ``magic`` may be the 16-byte field, the whole cache, or a string.
    Raises ValueError when the magic is not recognized.
    """
    if isinstance(magic, str):
        magic = magic.encode("latin-1")
    name = bytes(magic[:16]).split(b"\0", 1)[0]
    arch = _MAGICS.get(name)
    if arch is None and name.startswith(_ARMV7_PREFIX):
        arch = Arch.ARM
    if arch is None:
        raise ValueError(f"unrecognized dyld shared cache magic {name!r}")
    return arch