import pytest

from dscextract.arch import Arch, ArchPair, arch_for_magic


@pytest.mark.parametrize(
    "magic, expected",
    [
        ("dyld_v1    i386", Arch.X86),
        ("dyld_v1  x86_64", Arch.X86_64),
        ("dyld_v1 x86_64h", Arch.X86_64),
        ("dyld_v1   armv5", Arch.ARM),
        ("dyld_v1   armv6", Arch.ARM),
        ("dyld_v1   armv7", Arch.ARM),
        ("dyld_v1  armv7s", Arch.ARM),
        ("dyld_v1  armv7k", Arch.ARM),
        ("dyld_v1   arm64", Arch.ARM64),
        ("dyld_v1  arm64e", Arch.ARM64),
    ],
)
def test_known_magics(magic, expected):
    assert arch_for_magic(magic) is expected


def test_magic_from_cache_bytes_with_trailing_data():
    cache = b"dyld_v1   arm64\0" + b"\xff" * 64
    assert arch_for_magic(cache) is Arch.ARM64


def test_magic_must_end_at_nul():
    with pytest.raises(ValueError):
        arch_for_magic(b"dyld_v1   arm64X")


def test_unknown_magic_raises():
    with pytest.raises(ValueError, match="unrecognized"):
        arch_for_magic(b"not a cache\0\0\0\0\0")


@pytest.mark.parametrize(
    "magic, pointer_size",
    [
        ("dyld_v1    i386", 4),
        ("dyld_v1  x86_64", 8),
        ("dyld_v1   armv7", 4),
        ("dyld_v1   arm64", 8),
    ],
)
def test_pointer_sizes_match_layouts(magic, pointer_size):
    arch = arch_for_magic(magic)
    layout = arch.layout()
    assert arch.pointer_size() == pointer_size
    assert layout.pointer_size() == pointer_size
    assert layout.little_endian


def test_sixty_four_bit_architectures():
    assert Arch.X86_64.layout().is_64
    assert Arch.ARM64.layout().is_64
    assert not Arch.X86.layout().is_64
    assert not Arch.ARM.layout().is_64


def test_arch_pair_ordering():
    assert ArchPair(7, 3) < ArchPair(12, 0)
    assert ArchPair(12, 9) < ArchPair(12, 11)
    assert not ArchPair(12, 11) < ArchPair(12, 11)
    assert ArchPair(12, 11) == ArchPair(12, 11)
    assert sorted([ArchPair(12, 11), ArchPair(7, 3), ArchPair(12, 9)]) == [
        ArchPair(7, 3),
        ArchPair(12, 9),
        ArchPair(12, 11),
    ]