"""Directory tree messages of the remote execution API with their wire encoding."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, Optional

from reapikit.digest import Data, Digest, data_from_bytes

_WIRE_VARINT = 0
_WIRE_FIXED64 = 1
_WIRE_LEN = 2
_WIRE_FIXED32 = 5

_MASK64 = (1 << 64) - 1


@dataclass
class FileNode:
    """A file in a directory."""

    name: str = ""
    digest: Optional[Digest] = None
    is_executable: bool = False


@dataclass
class DirectoryNode:
    """A subdirectory in a directory; digest is that of its Directory message."""

    name: str = ""
    digest: Optional[Digest] = None


@dataclass
class SymlinkNode:
    """A symbolic link in a directory."""

    name: str = ""
    target: str = ""


@dataclass
class Directory:
    """A directory listing: files, subdirectories and symlinks."""

    files: list[FileNode] = field(default_factory=list)
    directories: list[DirectoryNode] = field(default_factory=list)
    symlinks: list[SymlinkNode] = field(default_factory=list)

    def serialize(self) -> bytes:
        """Encode the directory in protocol buffer wire format."""
        parts = [_len_field(1, _encode_file(f)) for f in self.files]
        parts += [_len_field(2, _encode_dir_node(d)) for d in self.directories]
        parts += [_len_field(3, _encode_symlink(s)) for s in self.symlinks]
        return b"".join(parts)


@dataclass
class OutputFile:
    """A file found under an output directory."""

    path: str
    digest: Optional[Digest] = None
    is_executable: bool = False


@dataclass
class OutputSymlink:
    """A symlink found under an output directory."""

    path: str
    target: str = ""


@dataclass
class OutputDirectory:
    """A directory found under an output directory."""

    path: str
    tree_digest: Optional[Digest] = None


def data_from_directory(directory: Directory) -> Data:
    """Return the serialized directory as Data with its digest."""
    return data_from_bytes("Directory", directory.serialize())


def parse_directory(data: bytes) -> Directory:
    """Decode a Directory message; raises ValueError on malformed input."""
    directory = Directory()
    for num, wire, value in _fields(bytes(data)):
        if num == 1:
            directory.files.append(_parse_file(_as_bytes(wire, value)))
        elif num == 2:
            directory.directories.append(_parse_dir_node(_as_bytes(wire, value)))
        elif num == 3:
            directory.symlinks.append(_parse_symlink(_as_bytes(wire, value)))
    return directory


def _varint(value: int) -> bytes:
    value &= _MASK64
    out = bytearray()
    while True:
        byte = value & 0x7F
        value >>= 7
        if value:
            out.append(byte | 0x80)
        else:
            out.append(byte)
            return bytes(out)


def _key(num: int, wire: int) -> bytes:
    return _varint(num << 3 | wire)


def _len_field(num: int, payload: bytes) -> bytes:
    return _key(num, _WIRE_LEN) + _varint(len(payload)) + payload


def _str_field(num: int, value: str) -> bytes:
    if not value:
        return b""
    return _len_field(num, value.encode("utf-8"))


def _int_field(num: int, value: int) -> bytes:
    if not value:
        return b""
    return _key(num, _WIRE_VARINT) + _varint(value)


def _bool_field(num: int, value: bool) -> bytes:
    if not value:
        return b""
    return _key(num, _WIRE_VARINT) + b"\x01"


def _digest_field(num: int, d: Optional[Digest]) -> bytes:
    if d is None:
        return b""
    return _len_field(num, _str_field(1, d.hash) + _int_field(2, d.size_bytes))


def _encode_file(f: FileNode) -> bytes:
    return _str_field(1, f.name) + _digest_field(2, f.digest) + _bool_field(4, f.is_executable)


def _encode_dir_node(d: DirectoryNode) -> bytes:
    return _str_field(1, d.name) + _digest_field(2, d.digest)


def _encode_symlink(s: SymlinkNode) -> bytes:
    return _str_field(1, s.name) + _str_field(2, s.target)


def _read_varint(buf: bytes, pos: int) -> tuple[int, int]:
    result = 0
    shift = 0
    while True:
        if pos >= len(buf):
            raise ValueError("truncated varint")
        byte = buf[pos]
        pos += 1
        result |= (byte & 0x7F) << shift
        if not byte & 0x80:
            return result & _MASK64, pos
        shift += 7
        if shift >= 70:
            raise ValueError("varint too long")


def _fields(buf: bytes) -> Iterator[tuple[int, int, object]]:
    pos = 0
    while pos < len(buf):
        key, pos = _read_varint(buf, pos)
        num, wire = key >> 3, key & 7
        if num == 0:
            raise ValueError("invalid field number 0")
        if wire == _WIRE_VARINT:
            value, pos = _read_varint(buf, pos)
        elif wire in (_WIRE_FIXED64, _WIRE_FIXED32):
            width = 8 if wire == _WIRE_FIXED64 else 4
            if pos + width > len(buf):
                raise ValueError("truncated fixed-width field")
            value = buf[pos:pos + width]
            pos += width
        elif wire == _WIRE_LEN:
            length, pos = _read_varint(buf, pos)
            if pos + length > len(buf):
                raise ValueError("truncated length-delimited field")
            value = buf[pos:pos + length]
            pos += length
        else:
            raise ValueError(f"unsupported wire type {wire}")
        yield num, wire, value


def _as_bytes(wire: int, value: object) -> bytes:
    if wire != _WIRE_LEN:
        raise ValueError(f"wire type {wire} where length-delimited expected")
    return value  # type: ignore[return-value]


def _as_str(wire: int, value: object) -> str:
    return _as_bytes(wire, value).decode("utf-8")


def _as_int(wire: int, value: object) -> int:
    if wire != _WIRE_VARINT:
        raise ValueError(f"wire type {wire} where varint expected")
    return value  # type: ignore[return-value]


def _as_int64(wire: int, value: object) -> int:
    v = _as_int(wire, value)
    return v - (1 << 64) if v >= 1 << 63 else v


def _parse_digest(buf: bytes) -> Digest:
    hash_ = ""
    size = 0
    for num, wire, value in _fields(buf):
        if num == 1:
            hash_ = _as_str(wire, value)
        elif num == 2:
            size = _as_int64(wire, value)
    return Digest(hash_, size)


def _parse_file(buf: bytes) -> FileNode:
    node = FileNode()
    for num, wire, value in _fields(buf):
        if num == 1:
            node.name = _as_str(wire, value)
        elif num == 2:
            node.digest = _parse_digest(_as_bytes(wire, value))
        elif num == 4:
            node.is_executable = _as_int(wire, value) != 0
    return node


def _parse_dir_node(buf: bytes) -> DirectoryNode:
    node = DirectoryNode()
    for num, wire, value in _fields(buf):
        if num == 1:
            node.name = _as_str(wire, value)
        elif num == 2:
            node.digest = _parse_digest(_as_bytes(wire, value))
    return node


def _parse_symlink(buf: bytes) -> SymlinkNode:
    node = SymlinkNode()
    for num, wire, value in _fields(buf):
        if num == 1:
            node.name = _as_str(wire, value)
        elif num == 2:
            node.target = _as_str(wire, value)
    return node