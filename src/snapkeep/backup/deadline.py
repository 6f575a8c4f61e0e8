"""
Timeouts for backup steps.

Two mechanisms are used:
    - Deadline: a cooperative time limit checked between units of work. Used
      inside store transactions so a timeout always ends in a rollback.
    - call_with_timeout: runs a self-contained step (encode, decode) on a
      worker thread and stops waiting once the timeout passes. The step's
      result is discarded, so no artifact is produced.
"""

from __future__ import annotations

import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from typing import Any, TypeVar

from snapkeep.errors import OperationTimeoutError

T = TypeVar("T")


class Deadline:
    """
    A point in time after which an operation must stop.

    A Deadline built with ``timeout=None`` never expires.
    """

    def __init__(
        self,
        timeout: float | None,
        step: str = "operation",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.timeout = timeout if timeout and timeout > 0 else None
        self.step = step
        self._clock = clock
        self._expires_at = clock() + self.timeout if self.timeout is not None else None

    def remaining(self) -> float | None:
        """Seconds left, or None when unbounded."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    def expired(self) -> bool:
        return self._expires_at is not None and self._clock() >= self._expires_at

    def check(self, step: str | None = None) -> None:
        """
        Raise if the deadline has passed.

        Raises:
            OperationTimeoutError: If expired.
        """
        if self.expired():
            assert self.timeout is not None
            raise OperationTimeoutError(step or self.step, self.timeout)


def call_with_timeout(
    func: Callable[..., T],
    timeout: float | None,
    step: str,
    *args: Any,
    **kwargs: Any,
) -> T:
    """
    Call ``func`` and give up waiting after ``timeout`` seconds.

    Exceptions raised by ``func`` propagate unchanged.

    Raises:
        OperationTimeoutError: If the call does not finish in time.
    """
    if not timeout or timeout <= 0:
        return func(*args, **kwargs)

    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix=f"snapkeep-{step}")
    try:
        future = executor.submit(func, *args, **kwargs)
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError as e:
            future.cancel()
            raise OperationTimeoutError(step, timeout) from e
    finally:
        executor.shutdown(wait=False)
