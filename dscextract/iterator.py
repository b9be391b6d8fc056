"""Walk the images and segments stored in a dyld shared cache."""

from dataclasses import dataclass
from typing import Iterator, Optional

from dscextract.arch import arch_for_magic
from dscextract.cache_format import CacheHeader, ImageInfo, MappingInfo
from dscextract.loadcommands import (
    Layout,
    LoadCommandType,
    SegmentCommand,
    UuidCommand,
    iter_load_commands,
)
from dscextract.machheader import MachHeader

_MIN_CACHE_SIZE = 0x7000


class CacheFormatError(ValueError):
    """Raised when a shared cache is malformed or of an unknown kind."""


@dataclass(frozen=True)
class DylibInfo:
    """An image in the cache, as seen while walking its segments."""

    version: int
    is_alias: bool
    mach_header: int
    path: str
    uuid: Optional[bytes]
    inode: int
    mod_time: int


@dataclass(frozen=True)
class SegmentInfo:
    """A segment of an image, located in the cache file."""

    version: int
    name: str
    file_offset: int
    file_size: int
    address: int
    address_offset: int


def _mappings(cache, header: CacheHeader) -> list[MappingInfo]:
    step = MappingInfo.byte_size()
    return [
        MappingInfo.unpack_from(cache, header.mapping_offset + index * step)
        for index in range(header.mapping_count)
    ]


def _read_path(cache, offset: int) -> str:
    if not 0 <= offset < len(cache):
        raise CacheFormatError(f"path at offset {offset:#x} lies outside the cache")
    source = cache if hasattr(cache, "find") else bytes(cache)
    end = source.find(b"\0", offset)
    if end < 0:
        end = len(source)
    return bytes(source[offset:end]).decode("utf-8", "surrogateescape")


def mapped_offset(cache, end, address):
    """Convert an unslid cache address into an offset in the cache file.

    Returns None when no mapping holds the address or the offset is not below ``end``.
    """
    header = CacheHeader.unpack_from(cache, 0)
    for mapping in _mappings(cache, header):
        if mapping.address <= address < mapping.address + mapping.size:
            offset = mapping.file_offset + address - mapping.address
            return offset if offset < end else None
    return None


def _walk_segments(
    cache,
    cache_end: int,
    first_seg: int,
    path_offset: int,
    inode: int,
    mod_time: int,
    mach_header: int,
    unslid_base: int,
    layout: Layout,
) -> Iterator[tuple[DylibInfo, SegmentInfo]]:
    header = MachHeader.unpack_from(cache, mach_header, layout)
    if mach_header + header.sizeofcmds > cache_end:
        raise CacheFormatError(f"load commands of image at {mach_header:#x} extend beyond cache")
    commands_start = mach_header + MachHeader.byte_size(layout)
    commands = list(iter_load_commands(cache, commands_start, header.ncmds, layout))

    uuid = next(
        (
            UuidCommand.unpack_from(cache, position, layout).uuid
            for position, command in commands
            if command.cmd == LoadCommandType.LC_UUID
        ),
        None,
    )
    dylib = DylibInfo(
        version=2,
        is_alias=path_offset < first_seg,
        mach_header=mach_header,
        path=_read_path(cache, path_offset),
        uuid=uuid,
        inode=inode,
        mod_time=mod_time,
    )

    segment_cmd = LoadCommandType.LC_SEGMENT_64 if layout.is_64 else LoadCommandType.LC_SEGMENT
    for position, command in commands:
        if command.cmd != segment_cmd:
            continue
        segment = SegmentCommand.unpack_from(cache, position, layout)
        file_offset = segment.fileoff or mach_header
        size = segment.vmsize
        if segment.segname == "__LINKEDIT" and file_offset + size > cache_end:
            size = cache_end - file_offset
        if segment.filesize > segment.vmsize:
            raise CacheFormatError(
                f"segment {segment.segname} of {dylib.path} has filesize above vmsize"
            )
        yield dylib, SegmentInfo(
            version=2,
            name=segment.segname,
            file_offset=file_offset,
            file_size=size,
            address=segment.vmaddr,
            address_offset=segment.vmaddr - unslid_base,
        )


def _walk_images(cache, size: int, layout: Layout) -> Iterator[tuple[DylibInfo, SegmentInfo]]:
    if 0 < size < _MIN_CACHE_SIZE:
        raise CacheFormatError(f"cache size {size:#x} is too small for a header")
    header = CacheHeader.unpack_from(cache, 0)
    unslid_base = MappingInfo.unpack_from(cache, header.mapping_offset).address

    greatest = 0
    for mapping in _mappings(cache, header):
        end_offset = mapping.file_offset + mapping.size
        if size and (mapping.file_offset > size or end_offset > size):
            raise CacheFormatError("cache mapping extends beyond the cache file")
        greatest = max(greatest, end_offset)
    cache_end = size if size else greatest

    image_size = ImageInfo.byte_size()
    if header.images_offset + header.images_count * image_size > cache_end:
        raise CacheFormatError("image table extends beyond the mapped cache")

    first_seg = None
    for index in range(header.images_count):
        image = ImageInfo.unpack_from(cache, header.images_offset + index * image_size)
        if image.path_file_offset > cache_end:
            raise CacheFormatError(f"path of image {index} lies beyond the cache")
        mach_header = mapped_offset(cache, cache_end, image.address)
        if mach_header is None:
            raise CacheFormatError(f"image {index} at {image.address:#x} is not mapped")
        if first_seg is None:
            first_seg = mach_header
        yield from _walk_segments(
            cache,
            cache_end,
            first_seg,
            image.path_file_offset,
            image.inode,
            image.mod_time,
            mach_header,
            unslid_base,
            layout,
        )


def iterate(cache, size=None):
    """Yield ``(DylibInfo, SegmentInfo)`` for each segment of each image in the cache.

    ``size`` defaults to the length of ``cache``; a size of 0 treats the
    cache as extending to the end of its furthest mapping.
    Raises CacheFormatError when the cache is malformed.
    """
    if size is None:
        size = len(cache)
    try:
        arch = arch_for_magic(cache)
    except ValueError as exc:
        raise CacheFormatError(str(exc)) from exc
    try:
        yield from _walk_images(cache, size, arch.layout())
    except CacheFormatError:
        raise
    except ValueError as exc:
        raise CacheFormatError(str(exc)) from exc


def iterate_segments_with_slide(cache):
    """Yield ``(dylib_path, segment_name, offset, size, address, slide)``; slide is always 0."""
    for dylib, segment in iterate(cache, 0):
        yield dylib.path, segment.name, segment.file_offset, segment.file_size, segment.address, 0


def iterate_segments(cache):
    """Yield ``(dylib_path, segment_name, offset, size, address)`` for each segment."""
    for path, name, offset, size, address, _slide in iterate_segments_with_slide(cache):
        yield path, name, offset, size, address