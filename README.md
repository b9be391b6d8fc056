# dscextract

`dscextract` reads dyld shared cache files. It can:

- walk the dylibs a cache holds, together with their segments;
- decode the cache's own records and the Mach-O records of the images inside it;
- rebuild the `__LINKEDIT` of an image after its segments have been copied out of the cache.

The package uses only the standard library and needs Python 3.10 or later.

## Installation

```
pip install dscextract
```

## Walking a cache

```python
from dscextract.iterator import iterate, CacheFormatError

with open("dyld_shared_cache_arm64", "rb") as fh:
    cache = fh.read()

for dylib, segment in iterate(cache, len(cache)):
    print(dylib.path, segment.name, hex(segment.file_offset), segment.file_size)
```

`iterate` yields a `DylibInfo` and a `SegmentInfo` for each segment of each
image. `DylibInfo` carries these fields:

- `path`
- `uuid`
- `inode`
- `mod_time`
- `is_alias`
- `mach_header`, the offset of the image's header in the cache

`SegmentInfo` carries these fields:

- `name`
- `file_offset`
- `file_size`
- `address`
- `address_offset`, the address relative to the first mapping

The `size` argument works as follows:

- If it is left out, the length of the cache is used.
- If it is 0, the cache is taken to reach the end of its furthest mapping.

`iterate` raises `CacheFormatError` in these cases:

- the cache magic is not recognised;
- a mapping, the image table, an image path or an image's load commands lie outside the cache;
- a segment's file size exceeds its VM size.

Two simpler generators give the same walk as plain tuples:

- `iterate_segments(cache)` yields `(path, segment_name, offset, size, address)`.
- `iterate_segments_with_slide(cache)` yields the same tuple with a trailing slide, which is always 0.

`mapped_offset(cache, end, address)` converts an unslid cache address into a
file offset. It returns None if no mapping holds the address.

## Rebuilding an image's linkedit

`dscextract.linkedit.optimize_linkedit` takes a `bytearray` holding an image's
segments laid end to end. The segments must be copied from the cache in the
order the walk reports them. The function then:

- rewrites the image's load commands and clears the in-cache header flag;
- drops `LC_SEGMENT_SPLIT_INFO` and zeroes the dyld info;
- rebuilds the symbol table, using the cache's separate local symbols when present;
- adds `N_INDR` entries for symbols that are re-exported individually;
- copies the function-starts, data-in-code and indirect symbol tables.

It returns the new page-aligned size of the image:

```python
from collections import defaultdict
from dscextract.arch import arch_for_magic
from dscextract.iterator import iterate
from dscextract.linkedit import optimize_linkedit, LinkeditError

layout = arch_for_magic(cache).layout()
segments = defaultdict(list)
for dylib, segment in iterate(cache):
    segments[dylib.path].append(segment)

for path, segs in segments.items():
    image = bytearray()
    for seg in segs:
        image += cache[seg.file_offset : seg.file_offset + seg.file_size]
    text = next(s for s in segs if s.name == "__TEXT")
    try:
        size = optimize_linkedit(image, 0, text.file_offset, cache, layout)
    except LinkeditError as err:
        print(path, err)
        continue
    data = bytes(image[:size]).ljust(size, b"\0")
```

Two more functions in the same module work on export tries:

- `parse_export_trie(data, start, end)` decodes an export trie into `ExportEntry` values.
- `individual_reexports(entries, reexport_deps)` keeps the regular re-exports whose source library is not re-exported whole.

## Modules

| Module | Contents |
| --- | --- |
| `dscextract.arch` | the `Arch` enum, `ArchPair`, and `arch_for_magic` to pick an architecture from a cache magic |
| `dscextract.loadcommands` | `Layout`, `LoadCommandType` and load command records; `iter_load_commands` |
| `dscextract.symbols` | `Nlist`, relocation records, and the symtab, dysymtab, linkedit-data and dyld-info commands |
| `dscextract.machheader` | `MachHeader` with `find_segment`, `find_section` and `find_load_command` |
| `dscextract.cache_format` | the cache header, mappings, image tables, accelerator, slide-info and local-symbol records |
| `dscextract.leb128` | `read_uleb128` and `read_sleb128` |
| `dscextract.iterator` | walking images and segments |
| `dscextract.linkedit` | export-trie parsing and `__LINKEDIT` rebuilding |

## Supported caches

The cache magic must be one of these:

- `dyld_v1    i386`
- `dyld_v1  x86_64`
- `dyld_v1 x86_64h`
- `dyld_v1   armv5`
- `dyld_v1   armv6`
- `dyld_v1   armv7`
- any `dyld_v1  armv7` variant
- `dyld_v1   arm64`
- `dyld_v1  arm64e`

## What the package does not do

There is no command-line program. The package does not itself write extracted
dylibs to disk, and it does not wrap them in fat headers. It provides the
walk and the linkedit rebuild. Assembling each image and writing the file is
left to the caller, as in the example above.

## Running the tests

```
pip install -e ".[test]"
pytest
```