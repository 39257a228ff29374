"""
Per-name locks — serialize operations on one formula, never across formulas.

Locks are re-entrant so an operation that already holds a name's lock
(e.g. upgrade) can call supervisor methods that take the same lock.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager


class NameLocks:
    """Lazily created ``RLock`` per formula name."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.RLock] = {}

    def get(self, name: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = threading.RLock()
                self._locks[name] = lock
            return lock

    @contextmanager
    def hold(self, name: str) -> Iterator[None]:
        """Hold the lock for ``name`` for the duration of the block."""
        lock = self.get(name)
        with lock:
            yield

    def names(self) -> list[str]:
        with self._guard:
            return sorted(self._locks)
