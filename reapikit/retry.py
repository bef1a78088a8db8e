"""Retrying with exponential backoff for errors known to be retriable."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

from reapikit.status import Code, RpcError, status_code

log = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class ExponentialBackoff:
    """Delays that grow by a multiplier, capped, for a limited number of retries."""

    delay: float = 0.2
    retries: int = 10
    multiplier: float = 2.0
    max_delay: float = 10.0
    _attempt: int = field(default=0, init=False, repr=False)

    def next(self) -> Optional[float]:
        """Return the next delay in seconds, or None when retries are exhausted."""
        if self.retries >= 0 and self._attempt >= self.retries:
            return None
        delay = self.delay * (self.multiplier**self._attempt)
        self._attempt += 1
        if self.max_delay > 0:
            delay = min(delay, self.max_delay)
        return delay


@dataclass
class AuthRetryCounter:
    """Counts authentication failures so they are retried at most once."""

    count: int = 0


def retriable_error(err: Optional[BaseException], counter: AuthRetryCounter) -> bool:
    """Return whether err should be retried."""
    is_rpc = err is None or isinstance(err, RpcError)
    code = status_code(err)
    if code in (Code.RESOURCE_EXHAUSTED, Code.INTERNAL, Code.UNAVAILABLE, Code.ABORTED):
        return True
    if code == Code.UNKNOWN:
        # unknown rpc errors are retried, other errors are not.
        return is_rpc
    if code in (Code.UNAUTHENTICATED, Code.PERMISSION_DENIED):
        # an expired token is fixed by one retry; more would not help.
        counter.count += 1
        return counter.count < 2
    return False


def do(
    func: Callable[[], T],
    backoff: Optional[ExponentialBackoff] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Call func, retrying with backoff while it raises retriable errors."""
    if backoff is None:
        backoff = ExponentialBackoff()
    counter = AuthRetryCounter()
    while True:
        try:
            return func()
        except Exception as err:
            if not retriable_error(err, counter):
                raise
            delay = backoff.next()
            if delay is None:
                raise
            log.warning("retry backoff:%.3fs: %s", delay, err)
            sleep(delay)