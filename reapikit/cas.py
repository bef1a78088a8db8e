"""Content addressable storage layout: resource names, compression and batching."""

from __future__ import annotations

import bisect
import enum
import posixpath
import uuid
import zlib
from dataclasses import dataclass
from typing import BinaryIO, Iterable, Optional, Sequence

import zstandard

from reapikit.digest import Digest

# Blobs smaller than this are read with BatchReadBlobs, larger ones with ByteStream.
BYTESTREAM_READ_THRESHOLD = 2 * 1024 * 1024

# Default byte limit of a BatchUpdateBlobs request.
DEFAULT_BATCH_UPDATE_BYTE_LIMIT = 4 * 1024 * 1024

# Maximum number of blobs in one BatchUpdateBlobs request.
BATCH_BLOB_UPLOAD_LIMIT = 1000

BYTESTREAM_SLOW_THROUGHPUT_PER_SEC = 1 * 1024 * 1024

_MIN_BYTESTREAM_TIMEOUT = 10 * 60.0

_CHUNK_SIZE = 64 * 1024
_MASK64 = (1 << 64) - 1


class Compressor(enum.IntEnum):
    """Blob compressors of the remote execution API."""

    IDENTITY = 0
    ZSTD = 1
    DEFLATE = 2
    BROTLI = 3


def bytestream_timeout(d: Digest) -> float:
    """Return the timeout in seconds for streaming the blob d."""
    return max(float(d.size_bytes // BYTESTREAM_SLOW_THROUGHPUT_PER_SEC), _MIN_BYTESTREAM_TIMEOUT)


def _path_join(*elems: str) -> str:
    parts = [e for e in elems if e]
    if not parts:
        return ""
    return posixpath.normpath("/".join(parts))


class _NopCloseReader:
    """Reads from a stream; close leaves the stream open."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream

    def read(self, size: int = -1) -> bytes:
        return self._stream.read(size)

    def readable(self) -> bool:
        return True

    def close(self) -> None:
        pass

    def __enter__(self) -> "_NopCloseReader":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class _NopCloseWriter:
    """Writes to a stream; close leaves the stream open."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream

    def write(self, data: bytes) -> int:
        self._stream.write(data)
        return len(data)

    def writable(self) -> bool:
        return True

    def close(self) -> None:
        pass

    def __enter__(self) -> "_NopCloseWriter":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class _DeflateReader:
    """Decompresses raw DEFLATE data read from a stream."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream
        self._decomp = zlib.decompressobj(-zlib.MAX_WBITS)
        self._buf = b""
        self._eof = False

    def _fill(self, want: int) -> None:
        while not self._eof and (want < 0 or len(self._buf) < want):
            chunk = self._stream.read(_CHUNK_SIZE)
            if not chunk:
                self._buf += self._decomp.flush()
                self._eof = True
            else:
                self._buf += self._decomp.decompress(chunk)

    def read(self, size: int = -1) -> bytes:
        if size is None:
            size = -1
        self._fill(size)
        if size < 0:
            out, self._buf = self._buf, b""
        else:
            out, self._buf = self._buf[:size], self._buf[size:]
        return out

    def readable(self) -> bool:
        return True

    def close(self) -> None:
        self._buf = b""
        self._eof = True

    def __enter__(self) -> "_DeflateReader":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


class _DeflateWriter:
    """Compresses written data as raw DEFLATE into a stream."""

    def __init__(self, stream: BinaryIO) -> None:
        self._stream = stream
        self._comp = zlib.compressobj(6, zlib.DEFLATED, -zlib.MAX_WBITS)
        self._closed = False

    def write(self, data: bytes) -> int:
        if self._closed:
            raise ValueError("write to closed deflate writer")
        out = self._comp.compress(bytes(data))
        if out:
            self._stream.write(out)
        return len(data)

    def writable(self) -> bool:
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._stream.write(self._comp.flush())

    def __enter__(self) -> "_DeflateWriter":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


@dataclass(frozen=True)
class CasLayout:
    """Naming and compression rules for blobs of one CAS instance.

    compressed_blob is the size from which compressed blobs are used;
    0 disables compression.
    """

    instance: str = ""
    address: str = ""
    compressed_blob: int = 0
    supported_compressors: tuple[Compressor, ...] = ()

    def use_compressed_blob(self, d: Digest) -> bool:
        if self.compressed_blob <= 0:
            return False
        return d.size_bytes >= self.compressed_blob

    def compressor(self) -> Compressor:
        """Return the compressor to use: the first one the server supports."""
        if not self.supported_compressors:
            return Compressor.IDENTITY
        return Compressor(self.supported_compressors[0])

    def resource_name(self, d: Digest) -> str:
        """Return the resource name for reading the blob d."""
        if self.use_compressed_blob(d):
            return _path_join(
                self.instance,
                "compressed-blobs",
                self.compressor().name.lower(),
                d.hash,
                str(d.size_bytes),
            )
        return _path_join(self.instance, "blobs", d.hash, str(d.size_bytes))

    def upload_resource_name(self, d: Digest) -> str:
        """Return a fresh resource name for uploading the blob d."""
        upload_id = str(uuid.uuid4())
        if self.use_compressed_blob(d):
            return _path_join(
                self.instance,
                "uploads",
                upload_id,
                "compressed-blobs",
                self.compressor().name.lower(),
                d.hash,
                str(d.size_bytes),
            )
        return _path_join(self.instance, "uploads", upload_id, "blobs", d.hash, str(d.size_bytes))

    def file_uri(self, d: Digest) -> str:
        """Return the bytestream URI of the blob d."""
        return f"bytestream://{self.address}/" + _path_join(
            self.instance, "blobs", d.hash, str(d.size_bytes)
        )

    def decoder(self, stream: BinaryIO, d: Digest):
        """Return a reader yielding the uncompressed content of d read from stream."""
        if self.use_compressed_blob(d):
            comp = self.compressor()
            if comp == Compressor.ZSTD:
                return zstandard.ZstdDecompressor().stream_reader(stream, closefd=False)
            if comp == Compressor.DEFLATE:
                return _DeflateReader(stream)
            raise ValueError(f'unsupported compressor "{comp.name}"')
        return _NopCloseReader(stream)

    def encoder(self, stream: BinaryIO, d: Digest):
        """Return a writer that compresses the content of d into stream as needed."""
        if self.use_compressed_blob(d):
            comp = self.compressor()
            if comp == Compressor.ZSTD:
                return zstandard.ZstdCompressor().stream_writer(stream, closefd=False)
            if comp == Compressor.DEFLATE:
                return _DeflateWriter(stream)
            raise ValueError(f'unsupported compressor "{comp.name}"')
        return _NopCloseWriter(stream)


@dataclass(frozen=True)
class BlobRequest:
    """One blob of a batch update: its digest and content."""

    digest: Digest
    data: bytes = b""


def _varint_size(value: int) -> int:
    value &= _MASK64
    n = 1
    while value >= 0x80:
        value >>= 7
        n += 1
    return n


def _len_field_size(num: int, payload_len: int) -> int:
    return _varint_size(num << 3 | 2) + _varint_size(payload_len) + payload_len


def _digest_msg_size(d: Digest) -> int:
    size = 0
    if d.hash:
        size += _len_field_size(1, len(d.hash.encode("utf-8")))
    if d.size_bytes:
        size += 1 + _varint_size(d.size_bytes)
    return size


def _request_msg_size(d: Optional[Digest], data_len: int) -> int:
    size = 0
    if d is not None and not d.is_zero():
        size += _len_field_size(1, _digest_msg_size(d))
    if data_len:
        size += _len_field_size(2, data_len)
    return size


def _batch_size(instance: str, request_sizes: Iterable[int]) -> int:
    size = _len_field_size(1, len(instance.encode("utf-8"))) if instance else 0
    return size + sum(_len_field_size(2, rs) for rs in request_sizes)


def batch_request_size(instance: str, requests: Sequence[BlobRequest]) -> int:
    """Return the encoded size of a batch update request with these blobs."""
    return _batch_size(instance, (_request_msg_size(r.digest, len(r.data)) for r in requests))


def separate_blobs(
    instance: str, blobs: Iterable[Digest], byte_limit: int
) -> tuple[list[Digest], list[Digest]]:
    """Split blobs, sorted by size, into those fitting a batch request and the rest."""
    ordered = sorted(blobs, key=lambda d: d.size_bytes)
    if not ordered:
        return [], []

    def too_large(d: Digest) -> bool:
        if d.size_bytes >= byte_limit:
            return True
        # a batch request holding only this blob must stay under the limit.
        return _batch_size(instance, [_request_msg_size(d, d.size_bytes)]) >= byte_limit

    i = bisect.bisect_left(ordered, True, key=too_large)
    return ordered[:i], ordered[i:]


def create_batch_requests(
    instance: str, blob_requests: Sequence[BlobRequest], byte_limit: int
) -> list[list[BlobRequest]]:
    """Bundle blob requests into batches within the byte and count limits."""
    base = batch_request_size(instance, [])
    sizes = [_len_field_size(2, _request_msg_size(r.digest, len(r.data))) for r in blob_requests]
    n = len(blob_requests)
    batches: list[list[BlobRequest]] = []
    size = base
    last = 0
    for i in range(n):
        size += sizes[i]
        if (
            i == n - 1
            or i + 1 == last + BATCH_BLOB_UPLOAD_LIMIT
            or (byte_limit > 0 and size + sizes[i + 1] > byte_limit)
        ):
            batches.append(list(blob_requests[last:i + 1]))
            size = base
            last = i + 1
    return batches