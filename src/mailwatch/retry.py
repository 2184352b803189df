"""Bounded exponential backoff for external calls."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, TypeVar

from mailwatch.errors import PermanentError
from mailwatch.logging import get_logger

log = get_logger("mailwatch.retry")

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[Any]]


@dataclass(frozen=True)
class RetryPolicy:
    """How an external call is retried.

    Delay before attempt ``n`` (1-based, n >= 2) is
    ``min(initial_interval * backoff_coefficient ** (n - 2), maximum_interval)``.
    """

    initial_interval: float = 1.0
    backoff_coefficient: float = 2.0
    maximum_interval: float = 30.0
    maximum_attempts: int = 5
    non_retryable: tuple[type[BaseException], ...] = field(default=(PermanentError,))

    def delay_for(self, attempt: int) -> float:
        """Seconds to wait after the given failed attempt (1-based)."""
        delay = self.initial_interval * (self.backoff_coefficient ** (attempt - 1))
        return float(min(delay, self.maximum_interval))

    def is_retryable(self, exc: BaseException) -> bool:
        return not isinstance(exc, self.non_retryable)


GMAIL_API_POLICY = RetryPolicy(
    initial_interval=2.0, backoff_coefficient=2.0, maximum_interval=60.0, maximum_attempts=5
)
OAUTH_POLICY = RetryPolicy(
    initial_interval=2.0, backoff_coefficient=2.0, maximum_interval=60.0, maximum_attempts=5
)
EXTRACTION_POLICY = RetryPolicy(
    initial_interval=1.0, backoff_coefficient=2.0, maximum_interval=30.0, maximum_attempts=3
)
STORE_POLICY = RetryPolicy(
    initial_interval=0.5, backoff_coefficient=2.0, maximum_interval=10.0, maximum_attempts=5
)
INITIALIZE_POLICY = RetryPolicy(
    initial_interval=5.0, backoff_coefficient=2.0, maximum_interval=300.0, maximum_attempts=6
)


async def call_with_retry(
    fn: Callable[..., Awaitable[T]],
    *args: Any,
    policy: RetryPolicy,
    name: str = "",
    sleep: SleepFn = asyncio.sleep,
    **kwargs: Any,
) -> T:
    """Await ``fn(*args, **kwargs)``, retrying retryable failures with backoff.

    Non-retryable errors and the final failure are re-raised unchanged.
    """
    op = name or getattr(fn, "__name__", "call")
    attempt = 1
    while True:
        try:
            return await fn(*args, **kwargs)
        except Exception as exc:
            if not policy.is_retryable(exc):
                raise
            if attempt >= policy.maximum_attempts:
                log.warning(
                    "retry_exhausted",
                    operation=op,
                    attempts=attempt,
                    error=str(exc),
                )
                raise
            delay = policy.delay_for(attempt)
            log.info(
                "retrying_operation",
                operation=op,
                attempt=attempt,
                delay_seconds=delay,
                error=str(exc),
            )
            await sleep(delay)
            attempt += 1


class RetryingExecutor:
    """Runs external calls under a retry policy.

    The base for every executor handed to the fetcher, invoker, and
    pipeline; substrates override ``_sleep`` to control how backoff waits.
    """

    async def _sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    async def execute(
        self,
        name: str,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        policy: RetryPolicy,
        **kwargs: Any,
    ) -> T:
        return await call_with_retry(
            fn, *args, policy=policy, name=name, sleep=self._sleep, **kwargs
        )
