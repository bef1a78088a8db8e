"""Parser for clang header map (*.hmap) files."""

from __future__ import annotations

import struct

_MAGIC = b"pamh"


class HeaderMapError(ValueError):
    """Raised when a header map cannot be parsed."""


class _Cursor:
    def __init__(self, buf: bytes) -> None:
        self.buf = buf
        self.strs = b""

    def take(self, fmt: str, kind: str, field_name: str) -> int:
        size = struct.calcsize(fmt)
        if len(self.buf) < size:
            self.buf = b""
            raise HeaderMapError(f"not enough for {kind} {field_name}")
        (value,) = struct.unpack_from(fmt, self.buf)
        self.buf = self.buf[size:]
        return value

    def uint16(self, field_name: str) -> int:
        return self.take("<H", "uint16", field_name)

    def uint32(self, field_name: str) -> int:
        return self.take("<I", "uint32", field_name)

    def string(self, field_name: str) -> str:
        index = self.uint32(field_name)
        if index == 0:
            return ""
        if index >= len(self.strs):
            raise HeaderMapError(f"out of index {field_name}={index}")
        end = self.strs.find(b"\0", index)
        if end < 0:
            raise HeaderMapError(f"unterminated {field_name}={index}")
        return self.strs[index:end].decode("utf-8", errors="surrogateescape")


def parse_header_map(buf: bytes) -> dict[str, str]:
    """Parse a header map, returning include name -> file path."""
    buf = bytes(buf)
    cur = _Cursor(buf)
    try:
        if not cur.buf.startswith(_MAGIC):
            raise HeaderMapError("wrong hmap magic")
        cur.buf = cur.buf[len(_MAGIC):]
        version = cur.uint16("version")
        if version != 1:
            raise HeaderMapError(f"unknown hmap version {version}")
        cur.uint16("reserved")
        string_offset = cur.uint32("string_offset")
        cur.uint32("string_count")
        hash_capacity = cur.uint32("hash_capacity")
        cur.uint32("max_value_length")
    except HeaderMapError as err:
        raise HeaderMapError(f"failed to parse hmap header: {err}") from err
    if len(buf) < string_offset:
        raise HeaderMapError(f"invalid string_offset={string_offset} hmap size={len(buf)}")
    cur.strs = buf[string_offset:]
    result: dict[str, str] = {}
    for i in range(hash_capacity):
        try:
            key = cur.string("key")
            prefix = cur.string("prefix")
            suffix = cur.string("suffix")
        except HeaderMapError as err:
            raise HeaderMapError(f"failed to get hmap bucket:{i}: {err}") from err
        if not cur.buf:
            break
        if not key:
            continue
        result[key] = prefix + suffix
    return result