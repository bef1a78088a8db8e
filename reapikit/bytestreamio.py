"""File-like reader and writer on top of a ByteStream service."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Iterator, Protocol


@dataclass(frozen=True)
class ReadRequest:
    resource_name: str


@dataclass(frozen=True)
class WriteRequest:
    resource_name: str
    write_offset: int
    data: bytes = b""
    finish_write: bool = False


class WriteStream(Protocol):
    """A client-streaming write call; send raises EOFError when the server is done early."""

    def send(self, request: WriteRequest) -> None: ...

    def close_and_recv(self) -> Any: ...


class ByteStreamClient(Protocol):
    def read(self, request: ReadRequest) -> Iterable[Any]: ...

    def write(self) -> WriteStream: ...


class Reader:
    """Reads a blob from a stream of response chunks (objects with a data attribute)."""

    def __init__(self, responses: Iterable[Any]) -> None:
        self._responses: Iterator[Any] = iter(responses)
        self._buf = b""
        self._eof = False
        self.size = 0

    def _fill(self) -> bool:
        # responses may carry empty data; skip them until data or end.
        while not self._buf:
            if self._eof:
                return False
            try:
                resp = next(self._responses)
            except StopIteration:
                self._eof = True
                return False
            self._buf = bytes(resp.data)
        return True

    def read(self, size: int = -1) -> bytes:
        """Read up to size bytes; all remaining when size is negative. b"" at end."""
        if size is None or size < 0:
            parts = []
            while self._fill():
                parts.append(self._buf)
                self._buf = b""
            out = b"".join(parts)
        else:
            if size == 0 or not self._fill():
                return b""
            out, self._buf = self._buf[:size], self._buf[size:]
        self.size += len(out)
        return out

    def readable(self) -> bool:
        return True

    def close(self) -> None:
        self._buf = b""
        self._eof = True

    def __enter__(self) -> "Reader":
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()


def open_reader(client: ByteStreamClient, resource_name: str) -> Reader:
    """Open a reader on the blob named by resource_name."""
    return Reader(client.read(ReadRequest(resource_name)))


class Writer:
    """Writes a blob to a ByteStream write call."""

    def __init__(self, stream: WriteStream, resource_name: str) -> None:
        self._stream = stream
        self.resource_name = resource_name
        self.offset = 0
        # set when the server reports the blob is already stored.
        self.committed = False

    def write(self, data: bytes) -> int:
        """Send data; do not pass chunks larger than the server accepts."""
        if self.committed:
            return len(data)
        try:
            self._stream.send(WriteRequest(self.resource_name, self.offset, bytes(data)))
        except EOFError:
            self.committed = True
            return len(data)
        self.offset += len(data)
        return len(data)

    def writable(self) -> bool:
        return True

    def close(self) -> None:
        """Finish the write and wait for the server's response."""
        if self.committed:
            try:
                self._stream.close_and_recv()
            except Exception:
                pass
            return
        self._stream.send(WriteRequest(self.resource_name, self.offset, b"", True))
        self._stream.close_and_recv()

    def __enter__(self) -> "Writer":
        return self

    def __exit__(self, exc_type: object, *exc: object) -> None:
        if exc_type is None:
            self.close()


def create_writer(client: ByteStreamClient, resource_name: str) -> Writer:
    """Create a writer for the blob named by resource_name."""
    return Writer(client.write(), resource_name)