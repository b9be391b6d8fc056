"""The Mach-O file header and lookups over its load commands."""

from dataclasses import dataclass

from dscextract.loadcommands import (
    Layout,
    LoadCommand,
    LoadCommandType,
    SegmentCommand,
    Section,
    _compiled,
    _unpack,
    iter_load_commands,
)

MH_MAGIC = 0xFEEDFACE
MH_MAGIC_64 = 0xFEEDFACF
MH_HAS_OBJC = 0x40000000


def _spec(layout: Layout) -> str:
    return "I" * (8 if layout.is_64 else 7)


@dataclass
class MachHeader:
    """A mach_header or mach_header_64; 32-bit headers have no reserved word."""

    magic: int
    cputype: int
    cpusubtype: int
    filetype: int
    ncmds: int
    sizeofcmds: int
    flags: int
    reserved: int = 0

    @classmethod
    def unpack_from(cls, data, offset, layout):
        values = _unpack(layout, _spec(layout), data, offset)
        return cls(*values)

    def pack_into(self, buffer, offset, layout):
        compiled = _compiled(layout, _spec(layout))
        if offset < 0 or offset + compiled.size > len(buffer):
            raise ValueError(f"header at offset {offset:#x} does not fit in buffer")
        values = [
            self.magic, self.cputype, self.cpusubtype, self.filetype,
            self.ncmds, self.sizeofcmds, self.flags,
        ]
        if layout.is_64:
            values.append(self.reserved)
        compiled.pack_into(buffer, offset, *values)

    @classmethod
    def byte_size(cls, layout):
        """Size of the header in the given layout."""
        return _compiled(layout, _spec(layout)).size


def _commands(data, offset: int, layout: Layout):
    header = MachHeader.unpack_from(data, offset, layout)
    return iter_load_commands(data, offset + MachHeader.byte_size(layout), header.ncmds, layout)


def _name16(name: str) -> bytes:
    return name.encode("utf-8", "surrogateescape").split(b"\0", 1)[0][:16]


def _segment_cmd(layout: Layout) -> int:
    return LoadCommandType.LC_SEGMENT_64 if layout.is_64 else LoadCommandType.LC_SEGMENT


def find_segment(data, offset, layout, segname):
    """Find the segment named ``segname`` in the image whose header is at ``offset``.

    Returns ``(command_offset, SegmentCommand)`` or None.
    """
    wanted = _name16(segname)
    for position, command in _commands(data, offset, layout):
        if command.cmd != _segment_cmd(layout):
            continue
        segment = SegmentCommand.unpack_from(data, position, layout)
        if _name16(segment.segname) == wanted:
            return position, segment
    return None


def find_section(data, offset, layout, segname, sectname):
    """Find a section by segment and section name.

    A section missing from an existing __DATA segment is looked up in
    __DATA_CONST. Returns ``(section_offset, Section)`` or None.
    """
    found = find_segment(data, offset, layout, segname)
    if found is None:
        return None
    position, segment = found
    step = Section.byte_size(layout)
    start = position + SegmentCommand.byte_size(layout)
    wanted = _name16(sectname)
    for index, section in enumerate(segment.sections(data, position, layout)):
        if _name16(section.sectname) == wanted:
            return start + index * step, section
    if segname == "__DATA":
        return find_section(data, offset, layout, "__DATA_CONST", sectname)
    return None


def find_load_command(data, offset, layout, cmd):
    """Find the first load command of type ``cmd``.

    Returns ``(command_offset, LoadCommand)`` or None.
    """
    for position, command in _commands(data, offset, layout):
        if command.cmd == cmd:
            return position, command
    return None


__all__ = [
    "MH_HAS_OBJC",
    "MH_MAGIC",
    "MH_MAGIC_64",
    "LoadCommand",
    "MachHeader",
    "find_load_command",
    "find_section",
    "find_segment",
]