"""Rebuild the __LINKEDIT of an image copied out of a shared cache."""

import dataclasses
from dataclasses import dataclass

from dscextract.cache_format import CacheHeader, LocalSymbolEntry, LocalSymbolsInfo
from dscextract.leb128 import Leb128Error, read_uleb128
from dscextract.loadcommands import (
    Layout,
    LoadCommandType,
    Section,
    SegmentCommand,
    iter_load_commands,
)
from dscextract.machheader import MachHeader
from dscextract.symbols import (
    EXPORT_SYMBOL_FLAGS_KIND_MASK,
    EXPORT_SYMBOL_FLAGS_KIND_REGULAR,
    EXPORT_SYMBOL_FLAGS_REEXPORT,
    EXPORT_SYMBOL_FLAGS_STUB_AND_RESOLVER,
    N_EXT,
    N_INDR,
    N_SECT,
    N_TYPE,
    DyldInfoCommand,
    DysymtabCommand,
    LinkeditDataCommand,
    Nlist,
    SymtabCommand,
)

_IN_CACHE_FLAG = 0x80000000
_PAGE_SIZE = 4096
_MASK32 = 0xFFFFFFFF

_DEPENDENCY_COMMANDS = frozenset(
    {
        LoadCommandType.LC_LOAD_DYLIB,
        LoadCommandType.LC_LOAD_WEAK_DYLIB,
        LoadCommandType.LC_REEXPORT_DYLIB,
        LoadCommandType.LC_LOAD_UPWARD_DYLIB,
    }
)


class LinkeditError(ValueError):
    """Raised when an image's linkedit information cannot be rebuilt."""


@dataclass(frozen=True)
class ExportEntry:
    """A symbol exported through an export trie."""

    name: str
    flags: int
    address: int = 0
    other: int = 0
    import_name: str = ""


def _decode(raw: bytes) -> str:
    return raw.decode("utf-8", "surrogateescape")


def _encode(text: str) -> bytes:
    return text.encode("utf-8", "surrogateescape")


def _bounded_cstring(data, position: int, end: int) -> tuple[bytes, int]:
    raw = bytes(data[position:end])
    nul = raw.find(b"\0")
    if nul < 0:
        raise LinkeditError("malformed trie, string extends beyond trie")
    return raw[:nul], position + nul + 1


def parse_export_trie(data, start, end):
    """Return the entries of the export trie stored in ``data[start:end]``.

    Entries come in depth-first order, each node before its children.
    """
    if start >= end:
        return []
    entries = []
    visited = set()
    stack = [(start, b"")]
    try:
        while stack:
            node, prefix = stack.pop()
            if not start <= node < end:
                raise LinkeditError("malformed trie, node past end")
            if node in visited:
                raise LinkeditError("malformed trie, node visited twice")
            visited.add(node)

            terminal_size, position = read_uleb128(data, node, end)
            children = position + terminal_size
            if terminal_size:
                flags, position = read_uleb128(data, position, end)
                address = other = 0
                import_name = b""
                if flags & EXPORT_SYMBOL_FLAGS_REEXPORT:
                    other, position = read_uleb128(data, position, end)
                    import_name, position = _bounded_cstring(data, position, end)
                else:
                    address, position = read_uleb128(data, position, end)
                    if flags & EXPORT_SYMBOL_FLAGS_STUB_AND_RESOLVER:
                        other, position = read_uleb128(data, position, end)
                entries.append(
                    ExportEntry(
                        name=_decode(prefix),
                        flags=flags,
                        address=address,
                        other=other,
                        import_name=_decode(import_name),
                    )
                )

            if children >= end:
                raise LinkeditError("malformed trie, children past end")
            position = children + 1
            kids = []
            for _ in range(data[children]):
                edge, position = _bounded_cstring(data, position, end)
                child_offset, position = read_uleb128(data, position, end)
                kids.append((start + child_offset, prefix + edge))
            stack.extend(reversed(kids))
    except Leb128Error as exc:
        raise LinkeditError(str(exc)) from exc
    return entries


def individual_reexports(entries, reexport_deps):
    """Keep the regular re-exports whose source library is not re-exported whole."""
    deps = set(reexport_deps)
    return [
        entry
        for entry in entries
        if (entry.flags & EXPORT_SYMBOL_FLAGS_KIND_MASK) == EXPORT_SYMBOL_FLAGS_KIND_REGULAR
        and entry.flags & EXPORT_SYMBOL_FLAGS_REEXPORT
        and entry.other not in deps
    ]


def _align(value: int, alignment: int) -> int:
    return (value + alignment - 1) & -alignment


def _put(image, position: int, raw) -> None:
    end = position + len(raw)
    if end > len(image):
        image.extend(bytes(end - len(image)))
    image[position:end] = raw


def _slice(cache, offset: int, size: int) -> bytes:
    if offset < 0 or offset + size > len(cache):
        raise LinkeditError(f"{size:#x} bytes at cache offset {offset:#x} lie outside the cache")
    return bytes(cache[offset : offset + size])


def _cache_header(cache) -> CacheHeader:
    size = CacheHeader.byte_size()
    raw = bytes(cache[:size]).ljust(size, b"\0")
    return CacheHeader.unpack_from(raw, 0)


def _symbol_name(cache, position: int, pool_end: int, fallback: bytes) -> bytes:
    if position > pool_end or not 0 <= position < len(cache):
        return fallback
    raw = bytes(cache[position:])
    nul = raw.find(b"\0")
    return raw if nul < 0 else raw[:nul]


def _is_cache_local(symbol: Nlist) -> bool:
    return (symbol.n_type & (N_TYPE | N_EXT)) == N_SECT


def _local_symbols(cache, text_offset_in_cache: int, layout: Layout):
    """Return (nlists, strings_start, strings_end) for the image, or None."""
    header = _cache_header(cache)
    if header.mapping_offset <= CacheHeader.field_offset("local_symbols_size"):
        return None
    if header.local_symbols_offset == 0:
        return None
    info_offset = header.local_symbols_offset
    info = LocalSymbolsInfo.unpack_from(cache, info_offset)
    entries_base = info_offset + info.entries_offset
    step = LocalSymbolEntry.byte_size()
    nlist_size = Nlist.byte_size(layout)
    for index in range(info.entries_count):
        entry = LocalSymbolEntry.unpack_from(cache, entries_base + index * step)
        if entry.dylib_offset != text_offset_in_cache:
            continue
        nlist_base = info_offset + info.nlist_offset + entry.nlist_start_index * nlist_size
        nlists = [
            Nlist.unpack_from(cache, nlist_base + k * nlist_size, layout)
            for k in range(entry.nlist_count)
        ]
        strings = info_offset + info.strings_offset
        return nlists, strings, strings + info.strings_size
    return None


def optimize_linkedit(image, header_offset, text_offset_in_cache, cache, layout):
    """Rewrite the load commands and linkedit of the image at ``header_offset``.

    ``image`` is a bytearray holding the image's segments copied from ``cache``;
    it is changed in place and grown if needed. Returns the new page-aligned
    size of the image.
    """
    header = MachHeader.unpack_from(image, header_offset, layout)
    header.flags &= ~_IN_CACHE_FLAG & _MASK32
    commands_start = header_offset + MachHeader.byte_size(layout)
    pointer_size = layout.pointer_size()
    pointer_mask = (1 << (8 * pointer_size)) - 1
    segment_cmd = LoadCommandType.LC_SEGMENT_64 if layout.is_64 else LoadCommandType.LC_SEGMENT

    kept = bytearray()
    positions = {}
    cumulative = 0
    export_off = export_size = 0
    reexport_deps = set()
    dep_index = 0
    removed = 0

    for position, command in list(iter_load_commands(image, commands_start, header.ncmds, layout)):
        raw = bytearray(image[position : position + command.cmdsize])
        here = len(kept)
        kind = command.cmd
        if kind == segment_cmd:
            segment = SegmentCommand.unpack_from(raw, 0, layout)
            segment.fileoff = cumulative & pointer_mask
            segment.pack_into(raw, 0, layout)
            base = SegmentCommand.byte_size(layout)
            step = Section.byte_size(layout)
            for index, section in enumerate(segment.sections(raw, 0, layout)):
                if section.offset:
                    section.offset = (cumulative + section.addr - segment.vmaddr) & _MASK32
                    section.pack_into(raw, base + index * step, layout)
            if segment.segname == "__LINKEDIT":
                positions["linkedit"] = here
            cumulative += segment.filesize
        elif kind == LoadCommandType.LC_DYLD_INFO_ONLY:
            info = DyldInfoCommand.unpack_from(raw, 0, layout)
            export_off, export_size = info.export_off, info.export_size
            dataclasses.replace(
                info,
                rebase_off=0, rebase_size=0, bind_off=0, bind_size=0,
                weak_bind_off=0, weak_bind_size=0, lazy_bind_off=0,
                lazy_bind_size=0, export_off=0, export_size=0,
            ).pack_into(raw, 0, layout)
        elif kind == LoadCommandType.LC_SYMTAB:
            positions["symtab"] = here
        elif kind == LoadCommandType.LC_DYSYMTAB:
            positions["dysymtab"] = here
        elif kind == LoadCommandType.LC_FUNCTION_STARTS:
            positions["function_starts"] = here
        elif kind == LoadCommandType.LC_DATA_IN_CODE:
            positions["data_in_code"] = here
        elif kind in _DEPENDENCY_COMMANDS:
            dep_index += 1
            if kind == LoadCommandType.LC_REEXPORT_DYLIB:
                reexport_deps.add(dep_index)
        elif kind == LoadCommandType.LC_SEGMENT_SPLIT_INFO:
            removed += 1
            continue
        kept += raw

    remaining = max(0, header.sizeofcmds - len(kept))
    _put(image, commands_start, bytes(kept) + bytes(remaining))
    header.ncmds -= removed
    header.sizeofcmds = len(kept)
    header.pack_into(image, header_offset, layout)

    for role, message in (
        ("linkedit", "__LINKEDIT not found"),
        ("symtab", "LC_SYMTAB not found"),
        ("dysymtab", "LC_DYSYMTAB not found"),
    ):
        if role not in positions:
            raise LinkeditError(message)

    def where(role):
        return commands_start + positions[role]

    linkedit = SegmentCommand.unpack_from(image, where("linkedit"), layout)
    symtab = SymtabCommand.unpack_from(image, where("symtab"), layout)
    dysymtab = DysymtabCommand.unpack_from(image, where("dysymtab"), layout)
    function_starts = (
        LinkeditDataCommand.unpack_from(image, where("function_starts"), layout)
        if "function_starts" in positions
        else None
    )
    data_in_code = (
        LinkeditDataCommand.unpack_from(image, where("data_in_code"), layout)
        if "data_in_code" in positions
        else None
    )

    new_function_starts = linkedit.fileoff
    function_starts_size = 0
    if function_starts is not None:
        function_starts_size = function_starts.datasize
        _put(
            image,
            header_offset + new_function_starts,
            _slice(cache, function_starts.dataoff, function_starts_size),
        )
    new_data_in_code = _align(new_function_starts + function_starts_size, pointer_size)
    data_in_code_size = 0
    if data_in_code is not None:
        data_in_code_size = data_in_code.datasize
        _put(
            image,
            header_offset + new_data_in_code,
            _slice(cache, data_in_code.dataoff, data_in_code_size),
        )

    exports = []
    if export_size:
        _slice(cache, export_off, export_size)
        exports = individual_reexports(
            parse_export_trie(cache, export_off, export_off + export_size), reexport_deps
        )

    locals_found = _local_symbols(cache, text_offset_in_cache, layout)
    nlist_size = Nlist.byte_size(layout)
    merged = [
        Nlist.unpack_from(cache, symtab.symoff + index * nlist_size, layout)
        for index in range(symtab.nsyms)
    ]
    new_count = symtab.nsyms
    if locals_found is not None:
        new_count = len(locals_found[0]) + sum(not _is_cache_local(s) for s in merged)
    new_count += len(exports)

    new_symtab = _align(new_data_in_code + data_in_code_size, pointer_size)
    new_indirect = new_symtab + new_count * nlist_size
    new_pool = new_indirect + dysymtab.nindirectsyms * 4

    pool = bytearray(b"\0")

    def add_name(raw: bytes) -> int:
        offset = len(pool)
        pool.extend(raw + b"\0")
        return offset

    symbols = []
    pool_start = symtab.stroff
    pool_end = pool_start + symtab.strsize
    for symbol in merged:
        if locals_found is not None and _is_cache_local(symbol):
            continue
        name = _symbol_name(cache, pool_start + symbol.n_strx, pool_end, b"<corrupt symbol name>")
        symbols.append(dataclasses.replace(symbol, n_strx=add_name(name)))
    for entry in exports:
        name_offset = add_name(_encode(entry.name))
        import_offset = add_name(_encode(entry.import_name or entry.name))
        symbols.append(Nlist(name_offset, N_INDR | N_EXT, 0, 0, import_offset))
    if locals_found is not None:
        local_nlists, local_strings, local_strings_end = locals_found
        dysymtab.ilocalsym = len(symbols)
        dysymtab.nlocalsym = len(local_nlists)
        for symbol in local_nlists:
            name = _symbol_name(
                cache, local_strings + symbol.n_strx, local_strings_end,
                b"<corrupt local symbol name>",
            )
            symbols.append(dataclasses.replace(symbol, n_strx=add_name(name)))

    if new_count != len(symbols):
        raise LinkeditError("symbol count miscalculation")

    pool.extend(bytes(_align(len(pool), pointer_size) - len(pool)))

    table = bytearray(new_count * nlist_size)
    for index, symbol in enumerate(symbols):
        symbol.pack_into(table, index * nlist_size, layout)
    _put(image, header_offset + new_symtab, table)
    _put(
        image,
        header_offset + new_indirect,
        _slice(cache, dysymtab.indirectsymoff, dysymtab.nindirectsyms * 4),
    )
    _put(image, header_offset + new_pool, pool)

    if function_starts is not None:
        function_starts.dataoff = new_function_starts & _MASK32
        function_starts.datasize = function_starts_size
        function_starts.pack_into(image, where("function_starts"), layout)
    if data_in_code is not None:
        data_in_code.dataoff = new_data_in_code & _MASK32
        data_in_code.datasize = data_in_code_size
        data_in_code.pack_into(image, where("data_in_code"), layout)

    symtab.nsyms = len(symbols)
    symtab.symoff = new_symtab & _MASK32
    symtab.stroff = new_pool & _MASK32
    symtab.strsize = len(pool) & _MASK32
    symtab.pack_into(image, where("symtab"), layout)

    dysymtab.extreloff = 0
    dysymtab.nextrel = 0
    dysymtab.locreloff = 0
    dysymtab.nlocrel = 0
    dysymtab.indirectsymoff = new_indirect & _MASK32
    dysymtab.pack_into(image, where("dysymtab"), layout)

    linkedit_end = symtab.stroff + symtab.strsize
    linkedit.filesize = (linkedit_end - linkedit.fileoff) & pointer_mask
    linkedit.vmsize = _align(linkedit.filesize, _PAGE_SIZE) & pointer_mask
    linkedit.pack_into(image, where("linkedit"), layout)

    return _align(linkedit_end, _PAGE_SIZE)