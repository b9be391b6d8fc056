import struct

import pytest

from dscextract.cache_format import CacheHeader, LocalSymbolEntry, LocalSymbolsInfo
from dscextract.linkedit import (
    ExportEntry,
    LinkeditError,
    individual_reexports,
    optimize_linkedit,
    parse_export_trie,
)
from dscextract.loadcommands import (
    DylibCommand,
    Layout,
    LoadCommandType,
    Section,
    SegmentCommand,
    iter_load_commands,
)
from dscextract.machheader import MachHeader, find_load_command, find_segment
from dscextract.symbols import (
    N_EXT,
    N_INDR,
    DyldInfoCommand,
    DysymtabCommand,
    LinkeditDataCommand,
    Nlist,
    SymtabCommand,
)

LAYOUT = Layout(is_64=True)
TEXT_OFFSET = 0x5000
SYMOFF = 0x7000
STROFF = 0x7100
INDIRECT = 0x7200
FSTARTS = 0x7300
TRIE = 0x7400
LOCALS = 0x7800
STRINGS = b"\0_local\0_ext\0_undef\0"
FUNCTION_STARTS = bytes(range(1, 9))
INDIRECT_TABLE = struct.pack("<II", 5, 6)
HEADER_FLAGS = 0x80000085

ROOT = b"\x00\x02" + b"_foo\x00" + bytes([14]) + b"_bar\x00" + bytes([18])
FOO_NODE = b"\x02\x00\x10\x00"
BAR_NODE = b"\x07\x08\x01_baz\x00\x00"
TRIE_BYTES = ROOT + FOO_NODE + BAR_NODE


def _dysymtab(**values):
    names = [
        "ilocalsym", "nlocalsym", "iextdefsym", "nextdefsym", "iundefsym",
        "nundefsym", "tocoff", "ntoc", "modtaboff", "nmodtab", "extrefsymoff",
        "nextrefsyms", "indirectsymoff", "nindirectsyms", "extreloff",
        "nextrel", "locreloff", "nlocrel",
    ]
    fields = {name: 0 for name in names}
    fields.update(values)
    return DysymtabCommand(cmd=LoadCommandType.LC_DYSYMTAB, cmdsize=80, **fields)


def _packed(record, size, extras=()):
    raw = bytearray(size)
    record.pack_into(raw, 0, LAYOUT)
    for obj, offset in extras:
        obj.pack_into(raw, offset, LAYOUT)
    return bytes(raw)


def _make_image(with_symtab=True, with_linkedit=True):
    commands = []
    text = SegmentCommand(
        LoadCommandType.LC_SEGMENT_64, 152, "__TEXT", 0x1000, 0x1000,
        TEXT_OFFSET, 0x1000, 5, 5, 1, 0,
    )
    section = Section("__text", "__TEXT", 0x1100, 0x10, TEXT_OFFSET + 0x100, 2, 0, 0, 0, 0, 0)
    commands.append(_packed(text, 152, [(section, 72)]))
    if with_linkedit:
        linkedit = SegmentCommand(
            LoadCommandType.LC_SEGMENT_64, 72, "__LINKEDIT", 0x2000, 0x1000,
            0x6000, 0x1000, 1, 1, 0, 0,
        )
        commands.append(_packed(linkedit, 72))
    info = DyldInfoCommand(
        LoadCommandType.LC_DYLD_INFO_ONLY, 48, 0x10, 0x20, 0x30, 0x40,
        0x50, 0x60, 0x70, 0x80, TRIE, len(TRIE_BYTES),
    )
    commands.append(_packed(info, 48))
    if with_symtab:
        symtab = SymtabCommand(LoadCommandType.LC_SYMTAB, 24, SYMOFF, 3, STROFF, len(STRINGS))
        commands.append(_packed(symtab, 24))
    commands.append(_packed(_dysymtab(indirectsymoff=INDIRECT, nindirectsyms=2, nextrel=4), 80))
    commands.append(_packed(DylibCommand(LoadCommandType.LC_LOAD_DYLIB, 32, 0, 0, 0, "a"), 32))
    commands.append(_packed(DylibCommand(LoadCommandType.LC_REEXPORT_DYLIB, 32, 0, 0, 0, "b"), 32))
    commands.append(_packed(LinkeditDataCommand(LoadCommandType.LC_SEGMENT_SPLIT_INFO, 16, 0, 0), 16))
    commands.append(
        _packed(
            LinkeditDataCommand(LoadCommandType.LC_FUNCTION_STARTS, 16, FSTARTS, len(FUNCTION_STARTS)),
            16,
        )
    )
    blob = b"".join(commands)
    image = bytearray(0x2000)
    MachHeader(0xFEEDFACF, 0x01000007, 3, 6, len(commands), len(blob), HEADER_FLAGS).pack_into(
        image, 0, LAYOUT
    )
    image[32 : 32 + len(blob)] = blob
    return image, len(commands), len(blob)


def _make_cache(with_locals):
    cache = bytearray(0x8000)
    header = CacheHeader(
        magic="dyld_v1  x86_64",
        mapping_offset=CacheHeader.byte_size(),
        local_symbols_offset=LOCALS,
    )
    packed = header.pack()
    cache[: len(packed)] = packed
    symbols = [
        Nlist(1, 0x0E, 1, 0, 0x1100),
        Nlist(8, 0x0F, 1, 0, 0x1104),
        Nlist(13, 0x01, 0, 0, 0),
    ]
    for index, symbol in enumerate(symbols):
        symbol.pack_into(cache, SYMOFF + index * 16, LAYOUT)
    cache[STROFF : STROFF + len(STRINGS)] = STRINGS
    cache[INDIRECT : INDIRECT + len(INDIRECT_TABLE)] = INDIRECT_TABLE
    cache[FSTARTS : FSTARTS + len(FUNCTION_STARTS)] = FUNCTION_STARTS
    cache[TRIE : TRIE + len(TRIE_BYTES)] = TRIE_BYTES
    info = LocalSymbolsInfo(
        nlist_offset=0x30, nlist_count=1, strings_offset=0x40, strings_size=0x10,
        entries_offset=0x18, entries_count=1,
    ).pack()
    cache[LOCALS : LOCALS + len(info)] = info
    entry = LocalSymbolEntry(
        dylib_offset=TEXT_OFFSET if with_locals else TEXT_OFFSET + 1,
        nlist_start_index=0,
        nlist_count=1,
    ).pack()
    cache[LOCALS + 0x18 : LOCALS + 0x18 + len(entry)] = entry
    Nlist(1, 0x0E, 1, 0, 0x1200).pack_into(cache, LOCALS + 0x30, LAYOUT)
    cache[LOCALS + 0x40 : LOCALS + 0x49] = b"\0_hidden\0"
    return cache


def _run(with_locals=False):
    image, ncmds, sizeofcmds = _make_image()
    cache = _make_cache(with_locals)
    new_size = optimize_linkedit(image, 0, TEXT_OFFSET, cache, LAYOUT)
    return image, new_size, ncmds, sizeofcmds


def _command(image, kind, cls):
    position, _ = find_load_command(image, 0, LAYOUT, kind)
    return cls.unpack_from(image, position, LAYOUT)


def _cstring(image, offset):
    end = image.index(b"\0", offset)
    return bytes(image[offset:end]).decode()


def _symbols(image):
    symtab = _command(image, LoadCommandType.LC_SYMTAB, SymtabCommand)
    size = Nlist.byte_size(LAYOUT)
    return symtab, [
        Nlist.unpack_from(image, symtab.symoff + index * size, LAYOUT)
        for index in range(symtab.nsyms)
    ]


def test_parse_export_trie_regular_and_reexport():
    entries = parse_export_trie(TRIE_BYTES, 0, len(TRIE_BYTES))
    assert entries == [
        ExportEntry("_foo", 0, 0x10, 0, ""),
        ExportEntry("_bar", 0x08, 0, 1, "_baz"),
    ]


def test_parse_export_trie_at_nonzero_start():
    data = b"\xff" * 7 + TRIE_BYTES
    entries = parse_export_trie(data, 7, len(data))
    assert [entry.name for entry in entries] == ["_foo", "_bar"]


def test_parse_export_trie_stub_and_resolver():
    trie = b"\x00\x01_r\x00" + bytes([6]) + b"\x03\x10\x20\x30\x00"
    assert parse_export_trie(trie, 0, len(trie)) == [ExportEntry("_r", 0x10, 0x20, 0x30, "")]


def test_parse_export_trie_empty_range():
    assert parse_export_trie(TRIE_BYTES, 4, 4) == []


@pytest.mark.parametrize(
    "trie",
    [
        b"\x00\x01_a\x00\x40",
        b"\x80",
        b"\x00\x01_a\x00\x00",
        b"\x00\x01_a",
    ],
)
def test_parse_export_trie_malformed(trie):
    with pytest.raises(LinkeditError):
        parse_export_trie(trie, 0, len(trie))


def test_individual_reexports_filters():
    entries = [
        ExportEntry("_plain", 0, 0x10),
        ExportEntry("_single", 0x08, 0, 1, "_x"),
        ExportEntry("_whole", 0x08, 0, 2, "_y"),
        ExportEntry("_tls", 0x09, 0, 1, "_z"),
    ]
    assert individual_reexports(entries, {2}) == [entries[1]]
    assert individual_reexports(entries, set()) == [entries[1], entries[2]]


def test_header_flags_and_split_info_removed():
    image, _, ncmds, sizeofcmds = _run()
    header = MachHeader.unpack_from(image, 0, LAYOUT)
    assert header.flags == HEADER_FLAGS & 0x7FFFFFFF
    assert header.ncmds == ncmds - 1
    assert header.sizeofcmds == sizeofcmds - 16
    kinds = [command.cmd for _, command in iter_load_commands(image, 32, header.ncmds, LAYOUT)]
    assert LoadCommandType.LC_SEGMENT_SPLIT_INFO not in kinds
    tail = image[32 + header.sizeofcmds : 32 + sizeofcmds]
    assert bytes(tail) == bytes(16)


def test_segment_offsets_rebased():
    image, *_ = _run()
    _, text = find_segment(image, 0, LAYOUT, "__TEXT")
    position, _ = find_segment(image, 0, LAYOUT, "__TEXT")
    _, linkedit = find_segment(image, 0, LAYOUT, "__LINKEDIT")
    assert text.fileoff == 0
    assert linkedit.fileoff == text.filesize
    [section] = text.sections(image, position, LAYOUT)
    assert section.offset == section.addr - text.vmaddr


def test_dyld_info_zeroed():
    image, *_ = _run()
    info = _command(image, LoadCommandType.LC_DYLD_INFO_ONLY, DyldInfoCommand)
    values = [
        info.rebase_off, info.rebase_size, info.bind_off, info.bind_size,
        info.weak_bind_off, info.weak_bind_size, info.lazy_bind_off,
        info.lazy_bind_size, info.export_off, info.export_size,
    ]
    assert values == [0] * 10


def test_symbols_without_cache_locals():
    image, *_ = _run(with_locals=False)
    symtab, symbols = _symbols(image)
    names = [_cstring(image, symtab.stroff + s.n_strx) for s in symbols]
    assert names == ["_local", "_ext", "_undef", "_bar"]
    reexport = symbols[-1]
    assert reexport.n_type == N_INDR | N_EXT
    assert (reexport.n_sect, reexport.n_desc) == (0, 0)
    assert _cstring(image, symtab.stroff + reexport.n_value) == "_baz"
    assert bytes(image[symtab.stroff : symtab.stroff + 1]) == b"\0"


def test_symbols_with_cache_locals():
    image, *_ = _run(with_locals=True)
    symtab, symbols = _symbols(image)
    names = [_cstring(image, symtab.stroff + s.n_strx) for s in symbols]
    assert names == ["_ext", "_undef", "_bar", "_hidden"]
    dysymtab = _command(image, LoadCommandType.LC_DYSYMTAB, DysymtabCommand)
    assert dysymtab.ilocalsym == 3
    assert dysymtab.nlocalsym == 1
    assert symbols[-1].n_value == 0x1200


def test_linkedit_layout_invariants():
    image, new_size, *_ = _run()
    symtab = _command(image, LoadCommandType.LC_SYMTAB, SymtabCommand)
    dysymtab = _command(image, LoadCommandType.LC_DYSYMTAB, DysymtabCommand)
    starts = _command(image, LoadCommandType.LC_FUNCTION_STARTS, LinkeditDataCommand)
    _, linkedit = find_segment(image, 0, LAYOUT, "__LINKEDIT")

    assert starts.dataoff == linkedit.fileoff
    assert bytes(image[starts.dataoff : starts.dataoff + starts.datasize]) == FUNCTION_STARTS
    assert symtab.symoff % 8 == 0
    assert symtab.symoff >= starts.dataoff + starts.datasize
    assert symtab.strsize % 8 == 0
    assert dysymtab.indirectsymoff == symtab.symoff + symtab.nsyms * Nlist.byte_size(LAYOUT)
    assert bytes(image[dysymtab.indirectsymoff : dysymtab.indirectsymoff + 8]) == INDIRECT_TABLE
    assert symtab.stroff == dysymtab.indirectsymoff + 8
    assert (dysymtab.extreloff, dysymtab.nextrel, dysymtab.locreloff, dysymtab.nlocrel) == (0, 0, 0, 0)
    assert linkedit.filesize == symtab.stroff + symtab.strsize - linkedit.fileoff
    assert linkedit.vmsize % 4096 == 0
    assert linkedit.vmsize >= linkedit.filesize
    assert new_size % 4096 == 0
    assert symtab.stroff + symtab.strsize <= new_size < symtab.stroff + symtab.strsize + 4096


def test_missing_symtab_raises():
    image, *_ = _make_image(with_symtab=False)
    with pytest.raises(LinkeditError, match="LC_SYMTAB"):
        optimize_linkedit(image, 0, TEXT_OFFSET, _make_cache(False), LAYOUT)


def test_missing_linkedit_raises():
    image, *_ = _make_image(with_linkedit=False)
    with pytest.raises(LinkeditError, match="__LINKEDIT"):
        optimize_linkedit(image, 0, TEXT_OFFSET, _make_cache(False), LAYOUT)