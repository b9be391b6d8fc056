"""Records found in a dyld shared cache file.

Every record is stored little-endian, in the field order given here.
"""

import struct
from dataclasses import dataclass, fields
from typing import ClassVar

_ORDER = "<"


def _decode_text(raw: bytes) -> str:
    return raw.split(b"\0", 1)[0].decode("utf-8", "surrogateescape")


def _encode_text(text: str) -> bytes:
    return text.encode("utf-8", "surrogateescape")


def _read_u16(data, offset: int) -> int:
    if offset < 0 or offset + 2 > len(data):
        raise ValueError(f"16-bit entry at offset {offset:#x} lies outside data")
    return struct.unpack_from("<H", data, offset)[0]


class CacheRecord:
    """Base for fixed-size cache records.

    Subclasses are dataclasses and list each field with its struct format in
    ``_LAYOUT``. Fields whose format is ``16s`` hold raw bytes, unless they are
    named in ``_TEXT``, in which case they hold NUL-terminated text.
    """

    _LAYOUT: ClassVar[tuple[tuple[str, str], ...]] = ()
    _TEXT: ClassVar[frozenset[str]] = frozenset()

    @classmethod
    def _struct(cls) -> struct.Struct:
        return struct.Struct(_ORDER + "".join(fmt for _, fmt in cls._LAYOUT))

    @classmethod
    def byte_size(cls):
        """Size of the record in the file."""
        return cls._struct().size

    @classmethod
    def field_offset(cls, name):
        """Offset of the field ``name`` from the start of the record."""
        prefix = []
        for field_name, fmt in cls._LAYOUT:
            if field_name == name:
                return struct.calcsize(_ORDER + "".join(prefix))
            prefix.append(fmt)
        raise KeyError(name)

    @classmethod
    def unpack_from(cls, data, offset=0):
        """Read a record starting at ``offset`` in ``data``."""
        compiled = cls._struct()
        if offset < 0 or offset + compiled.size > len(data):
            raise ValueError(
                f"{cls.__name__} at offset {offset:#x} extends beyond data"
            )
        values = compiled.unpack_from(data, offset)
        kwargs = {}
        for (name, _), value in zip(cls._LAYOUT, values):
            kwargs[name] = _decode_text(value) if name in cls._TEXT else value
        return cls(**kwargs)

    def pack(self):
        """Return the record's bytes."""
        values = []
        for name, _ in self._LAYOUT:
            value = getattr(self, name)
            values.append(_encode_text(value) if name in self._TEXT else value)
        return self._struct().pack(*values)

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)

    def _check_layout(self) -> None:
        declared = {f.name for f in fields(self)}
        missing = [name for name, _ in self._LAYOUT if name not in declared]
        if missing:
            raise TypeError(f"{type(self).__name__} lacks fields {missing}")


@dataclass
class CacheHeader(CacheRecord):
    """The header at the start of a shared cache file."""

    magic: str = ""
    mapping_offset: int = 0
    mapping_count: int = 0
    images_offset: int = 0
    images_count: int = 0
    dyld_base_address: int = 0
    code_signature_offset: int = 0
    code_signature_size: int = 0
    slide_info_offset: int = 0
    slide_info_size: int = 0
    local_symbols_offset: int = 0
    local_symbols_size: int = 0
    uuid: bytes = bytes(16)
    cache_type: int = 0
    branch_pools_offset: int = 0
    branch_pools_count: int = 0
    accelerate_info_addr: int = 0
    accelerate_info_size: int = 0
    images_text_offset: int = 0
    images_text_count: int = 0

    _LAYOUT: ClassVar[tuple[tuple[str, str], ...]] = (
        ("magic", "16s"),
        ("mapping_offset", "I"),
        ("mapping_count", "I"),
        ("images_offset", "I"),
        ("images_count", "I"),
        ("dyld_base_address", "Q"),
        ("code_signature_offset", "Q"),
        ("code_signature_size", "Q"),
        ("slide_info_offset", "Q"),
        ("slide_info_size", "Q"),
        ("local_symbols_offset", "Q"),
        ("local_symbols_size", "Q"),
        ("uuid", "16s"),
        ("cache_type", "Q"),
        ("branch_pools_offset", "I"),
        ("branch_pools_count", "I"),
        ("accelerate_info_addr", "Q"),
        ("accelerate_info_size", "Q"),
        ("images_text_offset", "Q"),
        ("images_text_count", "Q"),
    )
    _TEXT: ClassVar[frozenset[str]] = frozenset({"magic"})


@dataclass
class MappingInfo(CacheRecord):
    """One region of the cache file and the address it maps to."""

    address: int = 0
    size: int = 0
    file_offset: int = 0
    max_prot: int = 0
    init_prot: int = 0

    _LAYOUT: ClassVar[tuple[tuple[str, str], ...]] = (
        ("address", "Q"),
        ("size", "Q"),
        ("file_offset", "Q"),
        ("max_prot", "I"),
        ("init_prot", "I"),
    )


@dataclass
class ImageInfo(CacheRecord):
    """An image in the cache: its load address and the offset of its path."""

    address: int = 0
    mod_time: int = 0
    inode: int = 0
    path_file_offset: int = 0
    pad: int = 0

    _LAYOUT: ClassVar[tuple[tuple[str, str], ...]] = (
        ("address", "Q"),
        ("mod_time", "Q"),
        ("inode", "Q"),
        ("path_file_offset", "I"),
        ("pad", "I"),
    )


@dataclass
class ImageTextInfo(CacheRecord):
    """The uuid and text segment of an image."""

    uuid: bytes = bytes(16)
    load_address: int = 0
    text_segment_size: int = 0
    path_offset: int = 0

    _LAYOUT: ClassVar[tuple[tuple[str, str], ...]] = (
        ("uuid", "16s"),
        ("load_address", "Q"),
        ("text_segment_size", "I"),
        ("path_offset", "I"),
    )


@dataclass
class ImageInfoExtra(CacheRecord):
    """Accelerator data kept for each image."""

    exports_trie_addr: int = 0
    weak_bindings_addr: int = 0
    exports_trie_size: int = 0
    weak_bindings_size: int = 0
    dependents_start_array_index: int = 0
    re_exports_start_array_index: int = 0

    _LAYOUT: ClassVar[tuple[tuple[str, str], ...]] = (
        ("exports_trie_addr", "Q"),
        ("weak_bindings_addr", "Q"),
        ("exports_trie_size", "I"),
        ("weak_bindings_size", "I"),
        ("dependents_start_array_index", "I"),
        ("re_exports_start_array_index", "I"),
    )


@dataclass
class AcceleratorInfo(CacheRecord):
    """The table of contents of the cache's accelerator tables."""

    version: int = 0
    image_extras_count: int = 0
    images_extras_offset: int = 0
    bottom_up_list_offset: int = 0
    dylib_trie_offset: int = 0
    dylib_trie_size: int = 0
    initializers_offset: int = 0
    initializers_count: int = 0
    dof_sections_offset: int = 0
    dof_sections_count: int = 0
    re_export_list_offset: int = 0
    re_export_count: int = 0
    dep_list_offset: int = 0
    dep_list_count: int = 0
    range_table_offset: int = 0
    range_table_count: int = 0
    dyld_section_addr: int = 0

    _LAYOUT: ClassVar[tuple[tuple[str, str], ...]] = (
        ("version", "I"),
        ("image_extras_count", "I"),
        ("images_extras_offset", "I"),
        ("bottom_up_list_offset", "I"),
        ("dylib_trie_offset", "I"),
        ("dylib_trie_size", "I"),
        ("initializers_offset", "I"),
        ("initializers_count", "I"),
        ("dof_sections_offset", "I"),
        ("dof_sections_count", "I"),
        ("re_export_list_offset", "I"),
        ("re_export_count", "I"),
        ("dep_list_offset", "I"),
        ("dep_list_count", "I"),
        ("range_table_offset", "I"),
        ("range_table_count", "I"),
        ("dyld_section_addr", "Q"),
    )


@dataclass
class AcceleratorInitializer(CacheRecord):
    """An initializer function and the image it belongs to."""

    function_offset: int = 0
    image_index: int = 0

    _LAYOUT: ClassVar[tuple[tuple[str, str], ...]] = (
        ("function_offset", "I"),
        ("image_index", "I"),
    )


@dataclass
class AcceleratorRangeEntry(CacheRecord):
    """An address range and the image that owns it."""

    start_address: int = 0
    size: int = 0
    image_index: int = 0

    _LAYOUT: ClassVar[tuple[tuple[str, str], ...]] = (
        ("start_address", "Q"),
        ("size", "I"),
        ("image_index", "I"),
    )


@dataclass
class AcceleratorDofEntry(CacheRecord):
    """A DOF section and the image that owns it."""

    section_address: int = 0
    section_size: int = 0
    image_index: int = 0

    _LAYOUT: ClassVar[tuple[tuple[str, str], ...]] = (
        ("section_address", "Q"),
        ("section_size", "I"),
        ("image_index", "I"),
    )


@dataclass
class SlideInfo(CacheRecord):
    """Version 1 slide info: a table of contents over page bitmaps."""

    version: int = 0
    toc_offset: int = 0
    toc_count: int = 0
    entries_offset: int = 0
    entries_count: int = 0
    entries_size: int = 0

    _LAYOUT: ClassVar[tuple[tuple[str, str], ...]] = (
        ("version", "I"),
        ("toc_offset", "I"),
        ("toc_count", "I"),
        ("entries_offset", "I"),
        ("entries_count", "I"),
        ("entries_size", "I"),
    )

    ENTRY_SIZE: ClassVar[int] = 4096 // (8 * 4)

    def toc(self, data, base, index):
        """Return table-of-contents entry ``index``; the record starts at ``base``.

        Only the low 16 bits of ``toc_offset`` locate the table.
        """
        return _read_u16(data, base + (self.toc_offset & 0xFFFF) + 2 * index)


@dataclass
class SlideInfo2(CacheRecord):
    """Version 2 slide info: page starts and extras with a delta mask."""

    version: int = 0
    page_starts_offset: int = 0
    page_starts_count: int = 0
    page_extras_offset: int = 0
    page_extras_count: int = 0
    page_size: int = 0
    delta_mask: int = 0
    value_add: int = 0

    _LAYOUT: ClassVar[tuple[tuple[str, str], ...]] = (
        ("version", "I"),
        ("page_starts_offset", "I"),
        ("page_starts_count", "I"),
        ("page_extras_offset", "I"),
        ("page_extras_count", "I"),
        ("page_size", "I"),
        ("delta_mask", "Q"),
        ("value_add", "Q"),
    )

    def page_starts(self, data, base, index):
        """Return page-start entry ``index``; the record starts at ``base``.

        Only the low 16 bits of ``page_starts_offset`` locate the array.
        """
        return _read_u16(data, base + (self.page_starts_offset & 0xFFFF) + 2 * index)

    def page_extras(self, data, base, index):
        """Return page-extra entry ``index``; the record starts at ``base``.

        Only the low 16 bits of ``page_extras_offset`` locate the array.
        """
        return _read_u16(data, base + (self.page_extras_offset & 0xFFFF) + 2 * index)


@dataclass
class LocalSymbolsInfo(CacheRecord):
    """Where the cache keeps the local symbols stripped from its images."""

    nlist_offset: int = 0
    nlist_count: int = 0
    strings_offset: int = 0
    strings_size: int = 0
    entries_offset: int = 0
    entries_count: int = 0

    _LAYOUT: ClassVar[tuple[tuple[str, str], ...]] = (
        ("nlist_offset", "I"),
        ("nlist_count", "I"),
        ("strings_offset", "I"),
        ("strings_size", "I"),
        ("entries_offset", "I"),
        ("entries_count", "I"),
    )


@dataclass
class LocalSymbolEntry(CacheRecord):
    """The local symbols belonging to one image."""

    dylib_offset: int = 0
    nlist_start_index: int = 0
    nlist_count: int = 0

    _LAYOUT: ClassVar[tuple[tuple[str, str], ...]] = (
        ("dylib_offset", "I"),
        ("nlist_start_index", "I"),
        ("nlist_count", "I"),
    )