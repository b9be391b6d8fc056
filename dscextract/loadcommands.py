"""Mach-O load command records and their on-disk layouts."""

import enum
import struct
from dataclasses import dataclass
from functools import lru_cache
from typing import ClassVar, Iterator

LC_REQ_DYLD = 0x80000000
S_16BYTE_LITERALS = 0xE


@dataclass(frozen=True)
class Layout:
    """Word size and byte order of a Mach-O image."""

    is_64: bool
    little_endian: bool = True

    def pointer_size(self) -> int:
        """Size of a pointer in bytes."""
        return 8 if self.is_64 else 4


class LoadCommandType(enum.IntEnum):
    """Load command identifiers."""

    LC_SEGMENT = 0x1
    LC_SYMTAB = 0x2
    LC_THREAD = 0x4
    LC_UNIXTHREAD = 0x5
    LC_DYSYMTAB = 0xB
    LC_LOAD_DYLIB = 0xC
    LC_ID_DYLIB = 0xD
    LC_LOAD_DYLINKER = 0xE
    LC_ID_DYLINKER = 0xF
    LC_PREBOUND_DYLIB = 0x10
    LC_ROUTINES = 0x11
    LC_SUB_FRAMEWORK = 0x12
    LC_SUB_UMBRELLA = 0x13
    LC_SUB_CLIENT = 0x14
    LC_SUB_LIBRARY = 0x15
    LC_TWOLEVEL_HINTS = 0x16
    LC_PREBIND_CKSUM = 0x17
    LC_LOAD_WEAK_DYLIB = 0x18 | LC_REQ_DYLD
    LC_SEGMENT_64 = 0x19
    LC_ROUTINES_64 = 0x1A
    LC_UUID = 0x1B
    LC_RPATH = 0x1C | LC_REQ_DYLD
    LC_CODE_SIGNATURE = 0x1D
    LC_SEGMENT_SPLIT_INFO = 0x1E
    LC_REEXPORT_DYLIB = 0x1F | LC_REQ_DYLD
    LC_LAZY_LOAD_DYLIB = 0x20
    LC_ENCRYPTION_INFO = 0x21
    LC_DYLD_INFO = 0x22
    LC_DYLD_INFO_ONLY = 0x22 | LC_REQ_DYLD
    LC_LOAD_UPWARD_DYLIB = 0x23 | LC_REQ_DYLD
    LC_VERSION_MIN_MACOSX = 0x24
    LC_VERSION_MIN_IPHONEOS = 0x25
    LC_FUNCTION_STARTS = 0x26
    LC_DYLD_ENVIRONMENT = 0x27
    LC_MAIN = 0x28 | LC_REQ_DYLD
    LC_DATA_IN_CODE = 0x29
    LC_SOURCE_VERSION = 0x2A
    LC_DYLIB_CODE_SIGN_DRS = 0x2B


@lru_cache(maxsize=None)
def _compiled(layout: Layout, spec: str) -> struct.Struct:
    order = "<" if layout.little_endian else ">"
    return struct.Struct(order + spec.replace("P", "Q" if layout.is_64 else "I"))


def _unpack(layout: Layout, spec: str, data, offset: int) -> tuple:
    compiled = _compiled(layout, spec)
    if offset < 0 or offset + compiled.size > len(data):
        raise ValueError(f"record at offset {offset:#x} extends beyond data")
    return compiled.unpack_from(data, offset)


def _read_cstring(data, offset: int) -> str:
    if not 0 <= offset < len(data):
        raise ValueError(f"string at offset {offset:#x} lies outside data")
    if not hasattr(data, "find"):
        data = bytes(data)
    end = data.find(b"\0", offset)
    if end < 0:
        end = len(data)
    return bytes(data[offset:end]).decode("utf-8", "surrogateescape")


def _write_cstring(buffer, offset: int, text: str) -> None:
    raw = text.encode("utf-8", "surrogateescape") + b"\0"
    if offset < 0 or offset + len(raw) > len(buffer):
        raise ValueError(f"string at offset {offset:#x} does not fit in buffer")
    buffer[offset : offset + len(raw)] = raw


def _decode_name(raw: bytes) -> str:
    return raw.split(b"\0", 1)[0].decode("utf-8", "surrogateescape")


def _encode_name(name: str) -> bytes:
    return name.encode("utf-8", "surrogateescape")


class _Record:
    _SPEC: ClassVar[str] = ""
    _FIELDS: ClassVar[tuple[str, ...]] = ()
    _NAMES: ClassVar[frozenset[str]] = frozenset()

    @classmethod
    def _size(cls, layout: Layout) -> int:
        return _compiled(layout, cls._SPEC).size

    @classmethod
    def _read(cls, data, offset: int, layout: Layout) -> dict:
        values = _unpack(layout, cls._SPEC, data, offset)
        return {
            name: _decode_name(value) if name in cls._NAMES else value
            for name, value in zip(cls._FIELDS, values)
        }

    def _write(self, buffer, offset: int, layout: Layout) -> None:
        compiled = _compiled(layout, self._SPEC)
        if offset < 0 or offset + compiled.size > len(buffer):
            raise ValueError(f"record at offset {offset:#x} does not fit in buffer")
        values = [
            _encode_name(getattr(self, name)) if name in self._NAMES else getattr(self, name)
            for name in self._FIELDS
        ]
        compiled.pack_into(buffer, offset, *values)


@dataclass
class LoadCommand(_Record):
    """The header shared by every load command."""

    cmd: int
    cmdsize: int

    _SPEC: ClassVar[str] = "II"
    _FIELDS: ClassVar[tuple[str, ...]] = ("cmd", "cmdsize")

    @classmethod
    def unpack_from(cls, data, offset, layout):
        return cls(**cls._read(data, offset, layout))

    def pack_into(self, buffer, offset, layout):
        self._write(buffer, offset, layout)


@dataclass
class SegmentCommand(LoadCommand):
    """An LC_SEGMENT or LC_SEGMENT_64 command."""

    segname: str
    vmaddr: int
    vmsize: int
    fileoff: int
    filesize: int
    maxprot: int
    initprot: int
    nsects: int
    flags: int

    _SPEC: ClassVar[str] = "II16sPPPPIIII"
    _FIELDS: ClassVar[tuple[str, ...]] = (
        "cmd", "cmdsize", "segname", "vmaddr", "vmsize", "fileoff",
        "filesize", "maxprot", "initprot", "nsects", "flags",
    )
    _NAMES: ClassVar[frozenset[str]] = frozenset({"segname"})

    @classmethod
    def unpack_from(cls, data, offset, layout):
        return cls(**cls._read(data, offset, layout))

    def pack_into(self, buffer, offset, layout):
        self._write(buffer, offset, layout)

    @classmethod
    def byte_size(cls, layout):
        """Size of the command without its sections."""
        return cls._size(layout)

    def sections(self, data, offset, layout):
        """Read the sections following this command, which starts at ``offset``."""
        step = Section.byte_size(layout)
        start = offset + self.byte_size(layout)
        return [
            Section.unpack_from(data, position, layout)
            for position in range(start, start + self.nsects * step, step)
        ]


@dataclass
class Section(_Record):
    """A section record inside a segment command."""

    sectname: str
    segname: str
    addr: int
    size: int
    offset: int
    align: int
    reloff: int
    nreloc: int
    flags: int
    reserved1: int
    reserved2: int

    _SPEC: ClassVar[str] = "16s16sPPIIIIIII"
    _FIELDS: ClassVar[tuple[str, ...]] = (
        "sectname", "segname", "addr", "size", "offset", "align",
        "reloff", "nreloc", "flags", "reserved1", "reserved2",
    )
    _NAMES: ClassVar[frozenset[str]] = frozenset({"sectname", "segname"})

    @classmethod
    def unpack_from(cls, data, offset, layout):
        return cls(**cls._read(data, offset, layout))

    def pack_into(self, buffer, offset, layout):
        self._write(buffer, offset, layout)

    @classmethod
    def byte_size(cls, layout):
        """Size of one section record; 64-bit records carry a trailing reserved word."""
        return cls._size(layout) + (4 if layout.is_64 else 0)


@dataclass
class DylibCommand(LoadCommand):
    """A command naming a dynamic library, such as LC_LOAD_DYLIB."""

    timestamp: int
    current_version: int
    compatibility_version: int
    name: str
    name_offset: int = 24

    _SPEC: ClassVar[str] = "IIIIII"
    _FIELDS: ClassVar[tuple[str, ...]] = (
        "cmd", "cmdsize", "name_offset", "timestamp",
        "current_version", "compatibility_version",
    )

    @classmethod
    def unpack_from(cls, data, offset, layout):
        values = cls._read(data, offset, layout)
        return cls(name=_read_cstring(data, offset + values["name_offset"]), **values)

    def pack_into(self, buffer, offset, layout):
        self._write(buffer, offset, layout)
        _write_cstring(buffer, offset + self.name_offset, self.name)


@dataclass
class DylinkerCommand(LoadCommand):
    """An LC_LOAD_DYLINKER or LC_ID_DYLINKER command."""

    name: str
    name_offset: int = 12

    _SPEC: ClassVar[str] = "III"
    _FIELDS: ClassVar[tuple[str, ...]] = ("cmd", "cmdsize", "name_offset")

    @classmethod
    def unpack_from(cls, data, offset, layout):
        values = cls._read(data, offset, layout)
        return cls(name=_read_cstring(data, offset + values["name_offset"]), **values)

    def pack_into(self, buffer, offset, layout):
        self._write(buffer, offset, layout)
        _write_cstring(buffer, offset + self.name_offset, self.name)


@dataclass
class StringCommand(LoadCommand):
    """A sub-framework, sub-client, sub-umbrella or sub-library command."""

    string: str
    string_offset: int = 12

    _SPEC: ClassVar[str] = "III"
    _FIELDS: ClassVar[tuple[str, ...]] = ("cmd", "cmdsize", "string_offset")

    @classmethod
    def unpack_from(cls, data, offset, layout):
        values = cls._read(data, offset, layout)
        return cls(string=_read_cstring(data, offset + values["string_offset"]), **values)

    def pack_into(self, buffer, offset, layout):
        self._write(buffer, offset, layout)
        _write_cstring(buffer, offset + self.string_offset, self.string)


@dataclass
class UuidCommand(LoadCommand):
    """An LC_UUID command."""

    uuid: bytes

    _SPEC: ClassVar[str] = "II16s"
    _FIELDS: ClassVar[tuple[str, ...]] = ("cmd", "cmdsize", "uuid")

    @classmethod
    def unpack_from(cls, data, offset, layout):
        return cls(**cls._read(data, offset, layout))

    def pack_into(self, buffer, offset, layout):
        self._write(buffer, offset, layout)


@dataclass
class RoutinesCommand(LoadCommand):
    """An LC_ROUTINES or LC_ROUTINES_64 command."""

    init_address: int
    init_module: int
    reserved1: int = 0
    reserved2: int = 0
    reserved3: int = 0
    reserved4: int = 0
    reserved5: int = 0
    reserved6: int = 0

    _SPEC: ClassVar[str] = "IIPPPPPPPP"
    _FIELDS: ClassVar[tuple[str, ...]] = (
        "cmd", "cmdsize", "init_address", "init_module", "reserved1",
        "reserved2", "reserved3", "reserved4", "reserved5", "reserved6",
    )

    @classmethod
    def unpack_from(cls, data, offset, layout):
        return cls(**cls._read(data, offset, layout))

    def pack_into(self, buffer, offset, layout):
        self._write(buffer, offset, layout)


@dataclass
class ThreadCommand(LoadCommand):
    """An LC_THREAD or LC_UNIXTHREAD command with its pointer-sized registers."""

    flavor: int
    count: int
    registers: tuple[int, ...] = ()

    _SPEC: ClassVar[str] = "IIII"
    _FIELDS: ClassVar[tuple[str, ...]] = ("cmd", "cmdsize", "flavor", "count")

    @classmethod
    def unpack_from(cls, data, offset, layout):
        values = cls._read(data, offset, layout)
        head = cls._size(layout)
        count = max(0, (values["cmdsize"] - head) // layout.pointer_size())
        registers = _unpack(layout, f"{count}P", data, offset + head)
        return cls(registers=tuple(registers), **values)

    def pack_into(self, buffer, offset, layout):
        self._write(buffer, offset, layout)
        compiled = _compiled(layout, f"{len(self.registers)}P")
        start = offset + self._size(layout)
        if start + compiled.size > len(buffer):
            raise ValueError(f"registers at offset {start:#x} do not fit in buffer")
        compiled.pack_into(buffer, start, *self.registers)


def iter_load_commands(data, offset, ncmds, layout) -> Iterator[tuple[int, LoadCommand]]:
    """Yield ``(offset, command)`` for each of ``ncmds`` commands starting at ``offset``."""
    for _ in range(ncmds):
        command = LoadCommand.unpack_from(data, offset, layout)
        yield offset, command
        offset += command.cmdsize