"""Readers for LEB128 variable-length integers."""

_MASK64 = (1 << 64) - 1


class Leb128Error(ValueError):
    """Raised when a LEB128 value is truncated or too large."""


def read_uleb128(data, offset: int, end: int) -> tuple[int, int]:
    """Decode an unsigned LEB128 value at ``offset``, not reading at or past ``end``.

    Returns the value and the offset just after it.
    """
    result = 0
    bit = 0
    while True:
        if offset == end:
            raise Leb128Error("malformed uleb128 extends beyond trie")
        byte = data[offset]
        slice_ = byte & 0x7F
        if bit >= 64 or ((slice_ << bit) & _MASK64) >> bit != slice_:
            raise Leb128Error("uleb128 too big for 64-bits")
        result |= slice_ << bit
        bit += 7
        offset += 1
        if not byte & 0x80:
            return result, offset


def read_sleb128(data, offset: int, end: int) -> tuple[int, int]:
    """Decode a signed LEB128 value at ``offset``, not reading at or past ``end``.

    Returns the value and the offset just after it.
    """
    result = 0
    bit = 0
    while True:
        if offset == end:
            raise Leb128Error("malformed sleb128")
        byte = data[offset]
        offset += 1
        result |= (byte & 0x7F) << bit
        bit += 7
        if not byte & 0x80:
            break
    if byte & 0x40:
        result |= -1 << bit
    result &= _MASK64
    if result >= 1 << 63:
        result -= 1 << 64
    return result, offset