"""
Tests for reliability — backoff delays, retry policy, per-name locks.
"""

import threading
import time

import pytest

from kegworks.core.errors import ChecksumMismatch, FetchFailed, OperationCancelled
from kegworks.core.reliability.backoff import backoff_delay, retry_call
from kegworks.core.reliability.locks import NameLocks

# ── Backoff ──────────────────────────────────────────────────────────


class TestBackoffDelay:
    def test_grows_exponentially(self):
        assert backoff_delay(1, 1.0, 60.0, jitter=0) == 1.0
        assert backoff_delay(2, 1.0, 60.0, jitter=0) == 2.0
        assert backoff_delay(4, 1.0, 60.0, jitter=0) == 8.0

    def test_capped(self):
        assert backoff_delay(20, 1.0, 30.0, jitter=0) == 30.0

    def test_jitter_bounded(self):
        for _ in range(50):
            delay = backoff_delay(3, 1.0, 60.0, jitter=0.3)
            assert 4.0 <= delay <= 5.2 + 1e-9

    def test_zero_attempt(self):
        assert backoff_delay(0) == 0.0


# ── Retry ────────────────────────────────────────────────────────────


class TestRetryCall:
    def test_success_first_try(self):
        assert retry_call(lambda: 42, attempts=3) == 42

    def test_retries_retryable(self):
        calls = []

        def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise FetchFailed("reset")
            return "ok"

        assert retry_call(flaky, attempts=3, base_delay=0.001) == "ok"
        assert len(calls) == 3

    def test_non_retryable_raised_immediately(self):
        calls = []

        def bad():
            calls.append(1)
            raise ChecksumMismatch("nope")

        with pytest.raises(ChecksumMismatch):
            retry_call(bad, attempts=5, base_delay=0.001)
        assert len(calls) == 1

    def test_plain_exceptions_not_retried(self):
        calls = []

        def boom():
            calls.append(1)
            raise ValueError("x")

        with pytest.raises(ValueError):
            retry_call(boom, attempts=5, base_delay=0.001)
        assert len(calls) == 1

    def test_zero_attempts(self):
        with pytest.raises(FetchFailed):
            retry_call(lambda: (_ for _ in ()).throw(FetchFailed("down")), attempts=0)

    def test_cancel_interrupts_wait(self):
        cancel = threading.Event()
        threading.Timer(0.1, cancel.set).start()

        def down():
            raise FetchFailed("down", formula="demo")

        started = time.monotonic()
        with pytest.raises(OperationCancelled) as exc:
            retry_call(down, attempts=3, base_delay=30.0, cancel=cancel)
        assert time.monotonic() - started < 5
        assert exc.value.formula == "demo"


# ── Locks ────────────────────────────────────────────────────────────


class TestNameLocks:
    def test_same_name_same_lock(self):
        locks = NameLocks()
        assert locks.get("a") is locks.get("a")
        assert locks.get("a") is not locks.get("b")
        assert locks.names() == ["a", "b"]

    def test_reentrant(self):
        locks = NameLocks()
        with locks.hold("a"):
            with locks.hold("a"):
                pass

    def test_serializes_same_name(self):
        locks = NameLocks()
        order = []

        def worker(tag):
            with locks.hold("x"):
                order.append(f"{tag}-in")
                time.sleep(0.05)
                order.append(f"{tag}-out")

        threads = [threading.Thread(target=worker, args=(t,)) for t in "ab"]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert order[0][0] == order[1][0]
        assert order[2][0] == order[3][0]

    def test_different_names_do_not_block(self):
        locks = NameLocks()
        entered = threading.Event()

        def other():
            with locks.hold("b"):
                entered.set()

        with locks.hold("a"):
            t = threading.Thread(target=other)
            t.start()
            assert entered.wait(2)
        t.join()
