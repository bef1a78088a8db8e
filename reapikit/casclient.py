"""Client for a content addressable storage service: reading, finding and uploading blobs."""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Iterable, Optional, Protocol, Sequence

from reapikit.bytestreamio import ReadRequest, WriteStream, create_writer, open_reader
from reapikit.cas import (
    BYTESTREAM_READ_THRESHOLD,
    DEFAULT_BATCH_UPDATE_BYTE_LIMIT,
    BlobRequest,
    CasLayout,
    bytestream_timeout,
    create_batch_requests,
    separate_blobs,
)
from reapikit.digest import EMPTY, Data, Digest, Store, data_to_bytes
from reapikit.status import Code, RpcError, Status

log = logging.getLogger(__name__)

_CHUNK_SIZE = 64 * 1024
_MAX_STREAM_WORKERS = 8


class CasService(Protocol):
    """The remote CAS and ByteStream calls the client needs.

    max_batch_total_size_bytes is the server's batch limit; 0 or less means
    the default limit applies.
    """

    max_batch_total_size_bytes: int

    def batch_read_blobs(self, instance: str, digests: Sequence[Digest]) -> Sequence[bytes]: ...

    def find_missing_blobs(self, instance: str, digests: Sequence[Digest]) -> Sequence[Digest]: ...

    def batch_update_blobs(
        self, instance: str, requests: Sequence[BlobRequest]
    ) -> Sequence[tuple[Digest, Status]]: ...

    def read(self, request: ReadRequest) -> Iterable[Any]: ...

    def write(self) -> WriteStream: ...


class _UploadNotFinished(Exception):
    pass


_NOT_FINISHED = _UploadNotFinished("upload not finished")


class UploadOp:
    """An upload in progress that other callers may wait for."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.err: Optional[BaseException] = _NOT_FINISHED

    def done(self, err: Optional[BaseException]) -> None:
        """Record the outcome and wake all waiters."""
        self.err = err
        self._event.set()

    def wait(self, timeout: Optional[float] = None) -> None:
        """Wait for the upload; raise its error, or TimeoutError if it did not finish in time."""
        if not self._event.wait(timeout):
            raise TimeoutError("upload wait timed out")
        if self.err is not None:
            raise self.err

    @property
    def finished(self) -> bool:
        return self._event.is_set()


class MissingBlobsError(Exception):
    """Some blobs could not be uploaded; blobs holds (digest, error) pairs."""

    def __init__(self, blobs: Sequence[tuple[Digest, BaseException]]) -> None:
        self.blobs = list(blobs)
        super().__init__(f"missing {len(self.blobs)} blobs")


def lookup_blobs_in_store(blobs: Iterable[Digest], store: Store) -> list[BlobRequest]:
    """Read the content of each blob from the store; KeyError if one is absent."""
    requests = []
    for blob in blobs:
        data = store.get(blob)
        if data is None:
            raise KeyError(f"blob not in request: {blob}")
        requests.append(BlobRequest(data.digest, data_to_bytes(data)))
    return requests


def _check_deadline(deadline: float, d: Digest) -> None:
    if time.monotonic() > deadline:
        raise RpcError(Code.DEADLINE_EXCEEDED, f"bytestream deadline exceeded for {d}")


class CasClient:
    """Reads and uploads blobs of one CAS instance."""

    def __init__(self, layout: CasLayout, service: Optional[CasService]) -> None:
        self.layout = layout
        self._service = service
        self._lock = threading.Lock()
        # digest -> True when known present, or the UploadOp uploading it.
        self._known: dict[Digest, Any] = {EMPTY: True}

    def _require_service(self) -> CasService:
        if self._service is None:
            raise RpcError(Code.FAILED_PRECONDITION, "conn is not configured")
        return self._service

    def get(self, d: Digest, name: str = "") -> bytes:
        """Fetch the content of blob d; small blobs by batch read, large by stream."""
        service = self._require_service()
        if d.size_bytes == 0:
            return b""
        if d.size_bytes < BYTESTREAM_READ_THRESHOLD:
            return self._get_with_batch_read(service, d, name)
        return self._get_with_bytestream(service, d)

    def _get_with_batch_read(self, service: CasService, d: Digest, name: str) -> bytes:
        started = time.monotonic()
        try:
            responses = service.batch_read_blobs(self.layout.instance, [d])
        except RpcError as err:
            elapsed = time.monotonic() - started
            raise RpcError(
                err.code, f"failed to read blobs {d} for {name} in {elapsed:.3f}s: {err}"
            ) from err
        elapsed = time.monotonic() - started
        if len(responses) != 1:
            raise ValueError(
                f"failed to read blobs {d} for {name} in {elapsed:.3f}s: responses={len(responses)}"
            )
        data = bytes(responses[0])
        if len(data) != d.size_bytes:
            raise ValueError(
                f"failed to read blobs {d} for {name} in {elapsed:.3f}s: size mismatch got={len(data)}"
            )
        return data

    def _get_with_bytestream(self, service: CasService, d: Digest) -> bytes:
        timeout = bytestream_timeout(d)
        deadline = time.monotonic() + timeout
        reader = open_reader(service, self.layout.resource_name(d))
        parts = []
        remaining = d.size_bytes
        with self.layout.decoder(reader, d) as dec:
            while remaining > 0:
                _check_deadline(deadline, d)
                chunk = dec.read(min(remaining, _CHUNK_SIZE))
                if not chunk:
                    raise EOFError(f"unexpected EOF reading {d}")
                parts.append(chunk)
                remaining -= len(chunk)
        return b"".join(parts)

    def missing(self, blobs: Iterable[Digest]) -> list[Digest]:
        """Return the digests among blobs that the CAS does not have."""
        service = self._require_service()
        return list(service.find_missing_blobs(self.layout.instance, list(blobs)))

    def upload_all(self, store: Store) -> int:
        """Upload every blob of store that is still missing; return the number uploaded."""
        service = self._require_service()
        blobs = store.list()
        new_blobs: dict[Digest, UploadOp] = {}
        pending: dict[Digest, UploadOp] = {}
        skipped = 0
        with self._lock:
            for d in blobs:
                known = self._known.get(d)
                if known is True:
                    skipped += 1
                elif isinstance(known, UploadOp):
                    pending[d] = known
                else:
                    op = UploadOp()
                    self._known[d] = op
                    new_blobs[d] = op

        found: set[Digest] = set()
        num_uploaded = 0
        dur_find = dur_upload = dur_wait = 0.0
        try:
            missing_blobs: list[Digest] = []
            if new_blobs:
                t = time.monotonic()
                try:
                    missing_blobs = self.missing(list(new_blobs))
                except Exception as err:
                    for op in new_blobs.values():
                        op.done(err)
                    raise
                found = set(new_blobs) - set(missing_blobs)
                with self._lock:
                    for d in found:
                        op = new_blobs.pop(d)
                        if self._known.get(d) is op:
                            self._known[d] = True
                        op.done(None)
                dur_find = time.monotonic() - t

            if missing_blobs:
                t = time.monotonic()
                num_uploaded = self._upload(service, store, missing_blobs, new_blobs)
                dur_upload = time.monotonic() - t

            if pending:
                t = time.monotonic()
                for d, op in pending.items():
                    try:
                        op.wait()
                    except RpcError as err:
                        raise RpcError(err.code, f"wait for digest={d}: {err}") from err
                dur_wait = time.monotonic() - t
        finally:
            self._finish(new_blobs)

        log.info(
            "upload all: blobs=%d -> {uploaded=%d, found=%d, pending=%d, skipped=%d}, "
            "timing: {find_missing=%.6fs, upload=%.6fs, wait_pending=%.6fs}",
            len(blobs), len(new_blobs), len(found), len(pending), skipped,
            dur_find, dur_upload, dur_wait,
        )
        return num_uploaded

    def _finish(self, new_blobs: dict[Digest, UploadOp]) -> None:
        with self._lock:
            for d, op in new_blobs.items():
                mine = self._known.get(d) is op
                if op.err is None:
                    if mine:
                        self._known[d] = True
                elif op.err is _NOT_FINISHED:
                    op.done(_NOT_FINISHED)
                    if mine:
                        del self._known[d]
                else:
                    log.info("upload %s failed: %s", d, op.err)
                    if mine:
                        del self._known[d]

    def _upload(
        self,
        service: CasService,
        store: Store,
        blobs: list[Digest],
        uploads: dict[Digest, UploadOp],
    ) -> int:
        byte_limit = DEFAULT_BATCH_UPDATE_BYTE_LIMIT
        if service.max_batch_total_size_bytes > 0:
            byte_limit = service.max_batch_total_size_bytes
        smalls, larges = separate_blobs(self.layout.instance, blobs, byte_limit)
        log.info("upload by batch %d out of %d", len(smalls), len(blobs))
        if smalls:
            self._upload_with_batch(service, smalls, uploads, store, byte_limit)
        if larges:
            self._upload_all_with_bytestream(service, larges, uploads, store)
        return len(blobs)

    def _upload_with_batch(
        self,
        service: CasService,
        digests: list[Digest],
        uploads: dict[Digest, UploadOp],
        store: Store,
        byte_limit: int,
    ) -> None:
        requests = lookup_blobs_in_store(digests, store)
        for batch in create_batch_requests(self.layout.instance, requests, byte_limit):
            try:
                responses = service.batch_update_blobs(self.layout.instance, batch)
            except RpcError as err:
                raise RpcError(err.code, f"batch update blobs: {err}") from err
            first_err: Optional[Exception] = None
            for blob, status in responses:
                data = store.get(blob)
                if data is None:
                    first_err = first_err or KeyError(f"blob {blob} not found in store")
                    continue
                if status.code != Code.OK:
                    err = RpcError(status.code, f"batch update blobs: {status.message}")
                    uploads[blob].done(err)
                    first_err = first_err or err
                    continue
                log.info("uploaded in batch: %s", data)
                uploads[blob].done(None)
            if first_err is not None:
                raise first_err
            log.info("upload %d blobs by batch", len(batch))

    def _upload_all_with_bytestream(
        self,
        service: CasService,
        digests: list[Digest],
        uploads: dict[Digest, UploadOp],
        store: Store,
    ) -> None:
        log.info("uploading %d blobs by streaming", len(digests))

        def upload_one(d: Digest) -> tuple[Digest, Optional[Exception]]:
            err: Optional[Exception] = None
            try:
                data = store.get(d)
                if data is None:
                    raise KeyError(f"blob {d} not found in store")
                self._upload_with_bytestream(service, data)
            except Exception as exc:
                err = exc
            uploads[d].done(err)
            return d, err

        workers = min(_MAX_STREAM_WORKERS, len(digests))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(upload_one, digests))
        failures = [(d, err) for d, err in results if err is not None]
        for d, err in failures:
            log.warning("failed to upload blob %s: %s", d, err)
        if failures:
            raise MissingBlobsError(failures)

    def _upload_with_bytestream(self, service: CasService, data: Data) -> None:
        d = data.digest
        deadline = time.monotonic() + bytestream_timeout(d)
        writer = create_writer(service, self.layout.upload_resource_name(d))
        with data.open() as src:
            enc = self.layout.encoder(writer, d)
            while True:
                _check_deadline(deadline, d)
                chunk = src.read(_CHUNK_SIZE)
                if not chunk:
                    break
                enc.write(chunk)
            enc.close()
        writer.close()