"""
Backoff — exponential delay with jitter, and a retry helper built on it.

Used by the operations layer to retry retryable fetch failures and by the
supervisor to space out keep-alive restarts.  The fetcher itself never
retries; retry policy belongs to whoever calls it.
"""

from __future__ import annotations

import logging
import random
import threading
from collections.abc import Callable
from typing import TypeVar

from kegworks.core.errors import KegError, OperationCancelled

logger = logging.getLogger(__name__)

T = TypeVar("T")


def backoff_delay(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 60.0,
    jitter: float = 0.3,
) -> float:
    """Delay before retry number ``attempt`` (1-based).

    ``base * 2**(attempt-1)`` capped at ``max_delay``, plus up to
    ``jitter`` of that value at random.  The result never exceeds
    ``max_delay * (1 + jitter)``.
    """
    if attempt < 1:
        return 0.0
    delay = min(base_delay * (2 ** (attempt - 1)), max_delay)
    return delay + random.uniform(0, delay * jitter)


def retry_call(
    func: Callable[[], T],
    *,
    attempts: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    cancel: threading.Event | None = None,
    describe: str = "operation",
) -> T:
    """Call ``func`` until it succeeds or a non-retryable error occurs.

    Only ``KegError`` instances with ``retryable = True`` are retried,
    at most ``attempts`` extra times.  The wait between attempts is
    interruptible through ``cancel``.
    """
    attempt = 0
    while True:
        try:
            return func()
        except KegError as e:
            if not e.retryable or attempt >= attempts:
                raise
            attempt += 1
            delay = backoff_delay(attempt, base_delay, max_delay)
            logger.warning(
                "%s failed (%s) — retry %d/%d in %.1fs",
                describe, e.message, attempt, attempts, delay,
            )
            waiter = cancel or threading.Event()
            if waiter.wait(delay):
                raise OperationCancelled(
                    f"{describe} cancelled during retry backoff",
                    formula=e.formula,
                ) from e
