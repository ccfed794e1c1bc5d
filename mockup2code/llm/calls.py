"""Timeout, retry and cancellation policy for external model calls.

Every service call in the pipeline goes through ``bounded_call`` so failures
come back as a typed ``CallResult`` instead of an exception. Calls run on a
worker thread; when the deadline passes or the cancel event is set the call is
abandoned (its thread is not joined).
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Generic, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

_POLL_SECONDS = 0.05


class CallStatus(str, Enum):
    OK = "ok"
    TIMEOUT = "timeout"
    ERROR = "error"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class CallResult(Generic[T]):
    status: CallStatus
    value: Optional[T] = None
    error: str = ""
    attempts: int = 0

    @property
    def ok(self) -> bool:
        return self.status is CallStatus.OK


def bounded_call(
    fn: Callable[[], T],
    *,
    timeout: float,
    retries: int = 0,
    backoff: float = 0.5,
    cancel: Optional[threading.Event] = None,
    label: str = "call",
) -> CallResult[T]:
    """Run ``fn`` with a per-attempt timeout and up to ``retries`` extra attempts."""
    last = CallResult(status=CallStatus.ERROR, error="not attempted")
    for attempt in range(1, retries + 2):
        if cancel is not None and cancel.is_set():
            return CallResult(status=CallStatus.CANCELLED, error="cancelled", attempts=attempt - 1)

        last = _attempt(fn, timeout=timeout, cancel=cancel, attempt=attempt)
        if last.status in (CallStatus.OK, CallStatus.CANCELLED):
            return last
        logger.warning("%s attempt %d/%d failed (%s): %s", label, attempt, retries + 1, last.status.value, last.error)

        if attempt <= retries:
            delay = backoff * (2 ** (attempt - 1))
            if cancel is not None:
                if cancel.wait(delay):
                    return CallResult(status=CallStatus.CANCELLED, error="cancelled", attempts=attempt)
            else:
                time.sleep(delay)
    return last


def _attempt(fn: Callable[[], T], *, timeout: float, cancel: Optional[threading.Event], attempt: int) -> CallResult[T]:
    ex = ThreadPoolExecutor(max_workers=1)
    fut = ex.submit(fn)
    deadline = time.monotonic() + timeout
    try:
        while True:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                fut.cancel()
                return CallResult(status=CallStatus.TIMEOUT, error=f"timed out after {timeout:.1f}s", attempts=attempt)
            try:
                value = fut.result(timeout=min(_POLL_SECONDS, remaining))
                return CallResult(status=CallStatus.OK, value=value, attempts=attempt)
            except FutureTimeout:
                if fut.done():
                    # fn itself raised TimeoutError (e.g. bounded upload wait)
                    return CallResult(status=CallStatus.TIMEOUT, error=str(fut.exception()), attempts=attempt)
                if cancel is not None and cancel.is_set():
                    fut.cancel()
                    return CallResult(status=CallStatus.CANCELLED, error="cancelled", attempts=attempt)
            except Exception as e:
                logger.debug("call raised", exc_info=True)
                return CallResult(status=CallStatus.ERROR, error=f"{type(e).__name__}: {e}", attempts=attempt)
    finally:
        ex.shutdown(wait=False, cancel_futures=True)
