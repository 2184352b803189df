"""Unit tests for retry policies and call_with_retry."""

from unittest.mock import AsyncMock

import pytest

from mailwatch.errors import AuthenticationError, PermanentError, TransientError
from mailwatch.retry import (
    GMAIL_API_POLICY,
    INITIALIZE_POLICY,
    RetryingExecutor,
    RetryPolicy,
    call_with_retry,
)


class _RecordingSleep:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


class TestRetryPolicy:
    """Tests for backoff arithmetic."""

    def test_delays_grow_exponentially(self):
        policy = RetryPolicy(initial_interval=2.0, backoff_coefficient=2.0, maximum_interval=60.0)
        assert [policy.delay_for(n) for n in range(1, 6)] == [2.0, 4.0, 8.0, 16.0, 32.0]

    def test_delay_capped_at_maximum(self):
        assert GMAIL_API_POLICY.delay_for(10) == 60.0
        assert INITIALIZE_POLICY.delay_for(10) == 300.0

    def test_permanent_errors_not_retryable(self):
        policy = RetryPolicy()
        assert policy.is_retryable(TransientError("x"))
        assert policy.is_retryable(RuntimeError("x"))
        assert not policy.is_retryable(PermanentError("x"))
        assert not policy.is_retryable(AuthenticationError("x"))


class TestCallWithRetry:
    """Tests for call_with_retry."""

    @pytest.mark.asyncio
    async def test_returns_first_success(self):
        fn = AsyncMock(return_value="ok")
        sleep = _RecordingSleep()

        result = await call_with_retry(fn, 1, policy=RetryPolicy(), sleep=sleep, flag=True)

        assert result == "ok"
        fn.assert_awaited_once_with(1, flag=True)
        assert sleep.delays == []

    @pytest.mark.asyncio
    async def test_retries_transient_then_succeeds(self):
        fn = AsyncMock(side_effect=[TransientError("429"), TransientError("503"), "ok"])
        sleep = _RecordingSleep()
        policy = RetryPolicy(initial_interval=1.0, backoff_coefficient=3.0, maximum_attempts=5)

        result = await call_with_retry(fn, policy=policy, sleep=sleep)

        assert result == "ok"
        assert fn.await_count == 3
        assert sleep.delays == [1.0, 3.0]

    @pytest.mark.asyncio
    async def test_gives_up_after_maximum_attempts(self):
        fn = AsyncMock(side_effect=TransientError("down"))
        sleep = _RecordingSleep()

        with pytest.raises(TransientError, match="down"):
            await call_with_retry(fn, policy=RetryPolicy(maximum_attempts=3), sleep=sleep)

        assert fn.await_count == 3
        assert len(sleep.delays) == 2

    @pytest.mark.asyncio
    async def test_permanent_error_raised_immediately(self):
        fn = AsyncMock(side_effect=AuthenticationError("revoked"))
        sleep = _RecordingSleep()

        with pytest.raises(AuthenticationError):
            await call_with_retry(fn, policy=RetryPolicy(), sleep=sleep)

        fn.assert_awaited_once()
        assert sleep.delays == []


class TestRetryingExecutor:
    """Tests for the executor wrapper."""

    @pytest.mark.asyncio
    async def test_uses_overridden_sleep(self):
        class _Executor(RetryingExecutor):
            def __init__(self):
                self.slept = []

            async def _sleep(self, seconds):
                self.slept.append(seconds)

        executor = _Executor()
        fn = AsyncMock(side_effect=[TransientError("x"), 7])

        result = await executor.execute(
            "op", fn, "a", policy=RetryPolicy(initial_interval=0.5), key="v"
        )

        assert result == 7
        assert executor.slept == [0.5]
        fn.assert_awaited_with("a", key="v")
