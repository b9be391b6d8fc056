"""Symbol table, relocation and linkedit-related Mach-O records."""

from dataclasses import dataclass
from typing import ClassVar

from dscextract.loadcommands import Layout, LoadCommand, _Record, _compiled, _unpack

N_STAB = 0xE0
N_PEXT = 0x10
N_TYPE = 0x0E
N_EXT = 0x01

N_UNDF = 0x0
N_ABS = 0x2
N_SECT = 0xE
N_PBUD = 0xC
N_INDR = 0xA

EXPORT_SYMBOL_FLAGS_KIND_MASK = 0x03
EXPORT_SYMBOL_FLAGS_KIND_REGULAR = 0x00
EXPORT_SYMBOL_FLAGS_KIND_THREAD_LOCAL = 0x01
EXPORT_SYMBOL_FLAGS_WEAK_DEFINITION = 0x04
EXPORT_SYMBOL_FLAGS_REEXPORT = 0x08
EXPORT_SYMBOL_FLAGS_STUB_AND_RESOLVER = 0x10

ARM64_RELOC_UNSIGNED = 0

DYLD_CACHE_ADJ_V2_FORMAT = 0x7F
DYLD_CACHE_ADJ_V2_POINTER_32 = 0x01
DYLD_CACHE_ADJ_V2_POINTER_64 = 0x02
DYLD_CACHE_ADJ_V2_DELTA_32 = 0x03
DYLD_CACHE_ADJ_V2_DELTA_64 = 0x04
DYLD_CACHE_ADJ_V2_ARM64_ADRP = 0x05
DYLD_CACHE_ADJ_V2_ARM64_OFF12 = 0x06
DYLD_CACHE_ADJ_V2_ARM64_BR26 = 0x07
DYLD_CACHE_ADJ_V2_ARM_MOVW_MOVT = 0x08
DYLD_CACHE_ADJ_V2_ARM_BR24 = 0x09
DYLD_CACHE_ADJ_V2_THUMB_MOVW_MOVT = 0x0A
DYLD_CACHE_ADJ_V2_THUMB_BR22 = 0x0B
DYLD_CACHE_ADJ_V2_IMAGE_OFF_32 = 0x0C


def _pack_words(buffer, offset: int, layout: Layout, *words: int) -> None:
    compiled = _compiled(layout, "I" * len(words))
    if offset < 0 or offset + compiled.size > len(buffer):
        raise ValueError(f"record at offset {offset:#x} does not fit in buffer")
    compiled.pack_into(buffer, offset, *words)


def _get_bits(word: int, shift: int, count: int) -> int:
    return (word >> shift) & ((1 << count) - 1)


def _set_bits(word: int, value: int, shift: int, count: int) -> int:
    mask = (1 << count) - 1
    return (word & ~(mask << shift)) | ((int(value) & mask) << shift)


@dataclass
class Nlist(_Record):
    """A symbol table entry."""

    n_strx: int
    n_type: int
    n_sect: int
    n_desc: int
    n_value: int

    _SPEC: ClassVar[str] = "IBBHP"
    _FIELDS: ClassVar[tuple[str, ...]] = ("n_strx", "n_type", "n_sect", "n_desc", "n_value")

    @classmethod
    def unpack_from(cls, data, offset, layout):
        return cls(**cls._read(data, offset, layout))

    def pack_into(self, buffer, offset, layout):
        self._write(buffer, offset, layout)

    @classmethod
    def byte_size(cls, layout):
        """Size of one entry in the given layout."""
        return cls._size(layout)


@dataclass
class RelocationInfo:
    """A plain relocation entry; its bit fields follow the image's byte order."""

    r_address: int
    r_symbolnum: int
    r_pcrel: bool
    r_length: int
    r_extern: bool
    r_type: int

    _BITS: ClassVar[tuple[tuple[str, int, int], ...]] = (
        ("r_symbolnum", 0, 24),
        ("r_pcrel", 24, 1),
        ("r_length", 25, 2),
        ("r_extern", 27, 1),
        ("r_type", 28, 4),
    )
    _FLAGS: ClassVar[frozenset[str]] = frozenset({"r_pcrel", "r_extern"})

    @staticmethod
    def _shift(layout: Layout, first: int, count: int) -> int:
        return first if layout.little_endian else 32 - first - count

    @classmethod
    def unpack_from(cls, data, offset, layout):
        address, other = _unpack(layout, "II", data, offset)
        fields = {}
        for name, first, count in cls._BITS:
            value = _get_bits(other, cls._shift(layout, first, count), count)
            fields[name] = bool(value) if name in cls._FLAGS else value
        return cls(r_address=address, **fields)

    def pack_into(self, buffer, offset, layout):
        other = 0
        for name, first, count in self._BITS:
            other = _set_bits(other, getattr(self, name), self._shift(layout, first, count), count)
        _pack_words(buffer, offset, layout, self.r_address, other)


@dataclass
class ScatteredRelocationInfo:
    """A scattered relocation entry; its bit fields are always numbered from the top bit."""

    r_scattered: bool
    r_pcrel: bool
    r_length: int
    r_type: int
    r_address: int
    r_value: int

    _BITS: ClassVar[tuple[tuple[str, int, int], ...]] = (
        ("r_scattered", 0, 1),
        ("r_pcrel", 1, 1),
        ("r_length", 2, 2),
        ("r_type", 4, 4),
        ("r_address", 8, 24),
    )
    _FLAGS: ClassVar[frozenset[str]] = frozenset({"r_scattered", "r_pcrel"})

    @classmethod
    def unpack_from(cls, data, offset, layout):
        other, value = _unpack(layout, "II", data, offset)
        fields = {}
        for name, first, count in cls._BITS:
            bits = _get_bits(other, 32 - first - count, count)
            fields[name] = bool(bits) if name in cls._FLAGS else bits
        return cls(r_value=value, **fields)

    def pack_into(self, buffer, offset, layout):
        other = 0
        for name, first, count in self._BITS:
            other = _set_bits(other, getattr(self, name), 32 - first - count, count)
        _pack_words(buffer, offset, layout, other, self.r_value)


@dataclass
class SymtabCommand(LoadCommand):
    """An LC_SYMTAB command."""

    symoff: int
    nsyms: int
    stroff: int
    strsize: int

    _SPEC: ClassVar[str] = "IIIIII"
    _FIELDS: ClassVar[tuple[str, ...]] = ("cmd", "cmdsize", "symoff", "nsyms", "stroff", "strsize")

    @classmethod
    def unpack_from(cls, data, offset, layout):
        return cls(**cls._read(data, offset, layout))

    def pack_into(self, buffer, offset, layout):
        self._write(buffer, offset, layout)


@dataclass
class DysymtabCommand(LoadCommand):
    """An LC_DYSYMTAB command."""

    ilocalsym: int
    nlocalsym: int
    iextdefsym: int
    nextdefsym: int
    iundefsym: int
    nundefsym: int
    tocoff: int
    ntoc: int
    modtaboff: int
    nmodtab: int
    extrefsymoff: int
    nextrefsyms: int
    indirectsymoff: int
    nindirectsyms: int
    extreloff: int
    nextrel: int
    locreloff: int
    nlocrel: int

    _SPEC: ClassVar[str] = "I" * 20
    _FIELDS: ClassVar[tuple[str, ...]] = (
        "cmd", "cmdsize", "ilocalsym", "nlocalsym", "iextdefsym", "nextdefsym",
        "iundefsym", "nundefsym", "tocoff", "ntoc", "modtaboff", "nmodtab",
        "extrefsymoff", "nextrefsyms", "indirectsymoff", "nindirectsyms",
        "extreloff", "nextrel", "locreloff", "nlocrel",
    )

    @classmethod
    def unpack_from(cls, data, offset, layout):
        return cls(**cls._read(data, offset, layout))

    def pack_into(self, buffer, offset, layout):
        self._write(buffer, offset, layout)


@dataclass
class TwoLevelHintsCommand(LoadCommand):
    """An LC_TWOLEVEL_HINTS command."""

    offset: int
    nhints: int

    _SPEC: ClassVar[str] = "IIII"
    _FIELDS: ClassVar[tuple[str, ...]] = ("cmd", "cmdsize", "offset", "nhints")

    @classmethod
    def unpack_from(cls, data, offset, layout):
        return cls(**cls._read(data, offset, layout))

    def pack_into(self, buffer, offset, layout):
        self._write(buffer, offset, layout)


@dataclass
class LinkeditDataCommand(LoadCommand):
    """A command pointing at a blob in __LINKEDIT, such as LC_FUNCTION_STARTS."""

    dataoff: int
    datasize: int

    _SPEC: ClassVar[str] = "IIII"
    _FIELDS: ClassVar[tuple[str, ...]] = ("cmd", "cmdsize", "dataoff", "datasize")

    @classmethod
    def unpack_from(cls, data, offset, layout):
        return cls(**cls._read(data, offset, layout))

    def pack_into(self, buffer, offset, layout):
        self._write(buffer, offset, layout)


@dataclass
class DyldInfoCommand(LoadCommand):
    """An LC_DYLD_INFO or LC_DYLD_INFO_ONLY command."""

    rebase_off: int
    rebase_size: int
    bind_off: int
    bind_size: int
    weak_bind_off: int
    weak_bind_size: int
    lazy_bind_off: int
    lazy_bind_size: int
    export_off: int
    export_size: int

    _SPEC: ClassVar[str] = "I" * 12
    _FIELDS: ClassVar[tuple[str, ...]] = (
        "cmd", "cmdsize", "rebase_off", "rebase_size", "bind_off", "bind_size",
        "weak_bind_off", "weak_bind_size", "lazy_bind_off", "lazy_bind_size",
        "export_off", "export_size",
    )

    @classmethod
    def unpack_from(cls, data, offset, layout):
        return cls(**cls._read(data, offset, layout))

    def pack_into(self, buffer, offset, layout):
        self._write(buffer, offset, layout)