"""Tests for same-provider retry with backoff."""

from __future__ import annotations

import pytest

from switchboard.errors import AIError
from switchboard.providers.retry import RetryHandler
from switchboard.types import ErrorCode


class Recorder:
    """Stand-in for asyncio.sleep that records delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def flaky(failures: list[AIError], result: str = "done"):
    calls = {"n": 0}

    async def operation() -> str:
        calls["n"] += 1
        if failures:
            raise failures.pop(0)
        return result

    return operation, calls


class TestDelays:
    def test_exponential_with_cap(self) -> None:
        handler = RetryHandler(5, initial_delay=0.5, multiplier=2.0, max_delay=3.0)
        assert [handler.delay_for(n) for n in range(1, 5)] == [0.5, 1.0, 2.0, 3.0]


class TestExecute:
    """RetryHandler.execute."""

    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self) -> None:
        sleep = Recorder()
        handler = RetryHandler(2, sleep=sleep)
        op, calls = flaky([AIError("busy", ErrorCode.PROVIDER_ERROR)])
        assert await handler.execute(op) == "done"
        assert calls["n"] == 2
        assert sleep.delays == [0.5]

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self) -> None:
        sleep = Recorder()
        handler = RetryHandler(2, sleep=sleep)
        op, calls = flaky([AIError("slow", ErrorCode.TIMEOUT) for _ in range(5)])
        with pytest.raises(AIError) as exc_info:
            await handler.execute(op)
        assert exc_info.value.code == ErrorCode.TIMEOUT
        assert calls["n"] == 3
        assert sleep.delays == [0.5, 1.0]

    @pytest.mark.asyncio
    async def test_non_retryable_code_propagates_immediately(self) -> None:
        handler = RetryHandler(3, sleep=Recorder())
        op, calls = flaky([AIError("bad key", ErrorCode.AUTHENTICATION_ERROR)])
        with pytest.raises(AIError):
            await handler.execute(op)
        assert calls["n"] == 1

    @pytest.mark.asyncio
    async def test_retryable_flag_false_is_not_retried(self) -> None:
        handler = RetryHandler(3, sleep=Recorder())
        op, calls = flaky([AIError("nope", ErrorCode.PROVIDER_ERROR, retryable=False)])
        with pytest.raises(AIError):
            await handler.execute(op)
        assert calls["n"] == 1

    @pytest.mark.asyncio
    async def test_on_retry_callback(self) -> None:
        seen: list[tuple[int, ErrorCode, float]] = []
        handler = RetryHandler(1, sleep=Recorder())
        op, _ = flaky([AIError("429", ErrorCode.RATE_LIMIT_EXCEEDED)])
        await handler.execute(op, on_retry=lambda n, e, d: seen.append((n, e.code, d)))
        assert seen == [(1, ErrorCode.RATE_LIMIT_EXCEEDED, 0.5)]

    @pytest.mark.asyncio
    async def test_zero_retries_runs_once(self) -> None:
        handler = RetryHandler(0, sleep=Recorder())
        op, calls = flaky([AIError("busy", ErrorCode.PROVIDER_ERROR)])
        with pytest.raises(AIError):
            await handler.execute(op)
        assert calls["n"] == 1
