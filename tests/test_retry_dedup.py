from __future__ import annotations

import asyncio

import pytest

from deepfocus_sync.dedup import Debouncer, ProcessedMessageSet
from deepfocus_sync.errors import RemoteWriteFailure
from deepfocus_sync.retry import RetryExecutor, RetryPolicy


def test_fixed_delay_by_default():
    policy = RetryPolicy()
    assert [policy.delay_for(n) for n in (1, 2, 3)] == [1.0, 1.0, 1.0]


def test_exponential_backoff_is_capped():
    policy = RetryPolicy(base_delay_seconds=1.0, multiplier=2.0, max_delay_seconds=5.0)
    assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 5.0]


@pytest.mark.asyncio
class TestRetryExecutor:
    async def test_succeeds_after_transient_failures(self):
        delays = []

        async def sleep(d):
            delays.append(d)

        attempts = 0

        async def op():
            nonlocal attempts
            attempts += 1
            if attempts < 3:
                raise ConnectionError("flaky")
            return "ok"

        result = await RetryExecutor(RetryPolicy(), sleep=sleep).run("create:u", op)

        assert result == "ok"
        assert attempts == 3
        assert delays == [1.0, 1.0]

    async def test_gives_up_after_max_attempts(self):
        async def sleep(_d):
            return None

        attempts = 0

        async def op():
            nonlocal attempts
            attempts += 1
            raise ConnectionError("down")

        executor = RetryExecutor(RetryPolicy(max_attempts=3), sleep=sleep)
        with pytest.raises(RemoteWriteFailure) as excinfo:
            await executor.run("close:S1", op)

        assert attempts == 3
        assert excinfo.value.operation == "close:S1"
        assert excinfo.value.attempts == 3
        assert isinstance(excinfo.value.last_error, ConnectionError)
        assert not executor.in_flight("close:S1")

    async def test_same_key_shares_one_run(self):
        gate = asyncio.Event()
        calls = 0

        async def op():
            nonlocal calls
            calls += 1
            await gate.wait()
            return calls

        executor = RetryExecutor()
        first = asyncio.create_task(executor.run("create:u", op))
        await asyncio.sleep(0)
        assert executor.in_flight("create:u")
        second = asyncio.create_task(executor.run("create:u", op))
        await asyncio.sleep(0)
        gate.set()

        assert await asyncio.gather(first, second) == [1, 1]
        assert calls == 1

    async def test_joiner_sees_failure(self):
        gate = asyncio.Event()

        async def sleep(_d):
            return None

        async def op():
            await gate.wait()
            raise ConnectionError("down")

        executor = RetryExecutor(RetryPolicy(max_attempts=1), sleep=sleep)
        first = asyncio.create_task(executor.run("k", op))
        await asyncio.sleep(0)
        second = asyncio.create_task(executor.run("k", op))
        await asyncio.sleep(0)
        gate.set()

        results = await asyncio.gather(first, second, return_exceptions=True)
        assert all(isinstance(r, RemoteWriteFailure) for r in results)


def test_processed_set_rejects_repeats():
    processed = ProcessedMessageSet()
    assert processed.add("a") is True
    assert processed.add("a") is False
    assert "a" in processed


def test_processed_set_trims_to_most_recent():
    processed = ProcessedMessageSet(capacity=100, keep=50)
    for i in range(101):
        processed.add(f"k{i}")

    assert len(processed) == 50
    assert "k100" in processed
    assert "k51" in processed
    assert "k50" not in processed
    # An evicted key is accepted again
    assert processed.add("k0") is True


def test_processed_set_validates_bounds():
    with pytest.raises(ValueError):
        ProcessedMessageSet(capacity=10, keep=20)


def test_debouncer_collapses_repeat_within_window():
    d = Debouncer(0.5)
    assert d.accept("True:", now=10.0)
    assert not d.accept("True:", now=10.3)
    assert d.accept("True:", now=10.9)


def test_debouncer_latest_distinct_assertion_wins():
    d = Debouncer(0.5)
    assert d.accept("True:", now=10.0)
    assert d.accept("False:", now=10.1)
    assert d.accept("True:", now=10.2)
