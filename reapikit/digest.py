"""Content digests, data sources and an in-memory content addressable store."""

from __future__ import annotations

import hashlib
import io
from dataclasses import dataclass, field
from typing import BinaryIO, Iterator, Optional, Protocol

_CHUNK_SIZE = 64 * 1024


@dataclass(frozen=True, order=True)
class Digest:
    """A content digest: SHA-256 hex hash and size in bytes."""

    hash: str = ""
    size_bytes: int = 0

    def is_zero(self) -> bool:
        """Return True for the zero digest (equivalent to a missing digest)."""
        return self.hash == ""

    def __str__(self) -> str:
        if self.is_zero():
            return ""
        return f"{self.hash}/{self.size_bytes}"


def digest_of_stream(stream: BinaryIO) -> Digest:
    """Compute the digest of everything readable from a binary stream."""
    hasher = hashlib.sha256()
    size = 0
    while True:
        chunk = stream.read(_CHUNK_SIZE)
        if not chunk:
            break
        hasher.update(chunk)
        size += len(chunk)
    return Digest(hasher.hexdigest(), size)


def digest_of_bytes(data: bytes) -> Digest:
    """Compute the digest of a byte string."""
    return digest_of_stream(io.BytesIO(data))


EMPTY = digest_of_bytes(b"")


class Source(Protocol):
    """A data source that can be opened for reading; str() names it."""

    def open(self) -> BinaryIO: ...


@dataclass(frozen=True)
class BytesSource:
    """In-memory source holding raw bytes."""

    name: str
    data: bytes

    def open(self) -> BinaryIO:
        return io.BytesIO(self.data)

    def __str__(self) -> str:
        return self.name


@dataclass(frozen=True)
class Data:
    """A digest paired with the source of its content."""

    digest: Digest = field(default_factory=Digest)
    source: Optional[Source] = None

    def is_zero(self) -> bool:
        return self.digest.is_zero()

    def open(self) -> BinaryIO:
        if self.source is None:
            raise ValueError("data has no source")
        return self.source.open()

    def __str__(self) -> str:
        return f"{self.digest} {self.source}"


def data_from_bytes(name: str, data: bytes) -> Data:
    """Create Data for raw bytes, named for diagnostics."""
    return Data(digest_of_bytes(data), BytesSource(name, data))


def data_from_source(source: Source) -> Data:
    """Create Data by reading the source once to compute its digest."""
    with source.open() as stream:
        d = digest_of_stream(stream)
    return Data(d, source)


def data_to_bytes(data: Data) -> bytes:
    """Read all content of the data. Not meant for large blobs."""
    with data.open() as stream:
        return stream.read()


class Store:
    """An in-memory content addressable storage keyed by digest."""

    def __init__(self) -> None:
        self._m: dict[Digest, Data] = {}

    def set(self, data: Data) -> None:
        self._m[data.digest] = data

    def get(self, digest: Digest) -> Optional[Data]:
        return self._m.get(digest)

    def get_source(self, digest: Digest) -> Optional[Source]:
        data = self._m.get(digest)
        if data is None:
            return None
        return data.source

    def delete(self, digest: Digest) -> None:
        self._m.pop(digest, None)

    def list(self) -> list[Digest]:
        return list(self._m)

    def __len__(self) -> int:
        return len(self._m)

    def __contains__(self, digest: object) -> bool:
        return digest in self._m

    def __iter__(self) -> Iterator[Digest]:
        return iter(list(self._m))