"""RPC status codes and errors."""

from __future__ import annotations

import asyncio
import concurrent.futures
import enum
from dataclasses import dataclass
from typing import Any, Optional


class Code(enum.IntEnum):
    """RPC status codes."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16


class RpcError(Exception):
    """An error carrying an RPC status code."""

    def __init__(self, code: Code, message: str = "", details: tuple[Any, ...] = ()) -> None:
        super().__init__(code, message)
        self.code = Code(code)
        self.message = message
        self.details = tuple(details)

    @property
    def status(self) -> "Status":
        return Status(self.code, self.message, self.details)

    def __str__(self) -> str:
        return f"rpc error: code = {self.code.name} desc = {self.message}"


@dataclass(frozen=True)
class Status:
    """An RPC status: code, message and optional details."""

    code: Code = Code.OK
    message: str = ""
    details: tuple[Any, ...] = ()

    def error(self) -> Optional[RpcError]:
        """Return the matching error, or None when the status is OK."""
        if self.code == Code.OK:
            return None
        return RpcError(self.code, self.message, self.details)


def status_code(err: Optional[BaseException]) -> Code:
    """Return the status code for an error; None maps to OK."""
    if err is None:
        return Code.OK
    if isinstance(err, RpcError):
        return err.code
    if isinstance(err, (asyncio.CancelledError, concurrent.futures.CancelledError)):
        return Code.CANCELLED
    if isinstance(err, TimeoutError):
        return Code.DEADLINE_EXCEEDED
    return Code.UNKNOWN