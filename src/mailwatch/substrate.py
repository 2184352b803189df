"""Asyncio execution substrate for subscription controllers.

Provides the durable-timer, signal wake-up, retry, and continuation
primitives a controller is written against. Timers are wall-clock
deadlines re-checked at least every ``max_timer_slice`` seconds, so a
suspended host resumes at the correct point.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import datetime
from typing import NoReturn

from mailwatch.logging import get_logger
from mailwatch.models import ChangeNotification, utcnow
from mailwatch.retry import RetryingExecutor

log = get_logger("mailwatch.substrate")

MAX_TIMER_SLICE_SECONDS = 3600.0


class ContinueAsNew(Exception):
    """Raised to end a controller run and restart it with carried-over signals."""

    def __init__(self, pending: list[ChangeNotification]) -> None:
        super().__init__(f"continue as new with {len(pending)} pending notifications")
        self.pending = list(pending)


class AsyncioSubstrate(RetryingExecutor):
    """One tenant's substrate. Not shared between tenants."""

    def __init__(
        self,
        *,
        clock: Callable[[], datetime] = utcnow,
        max_timer_slice: float = MAX_TIMER_SLICE_SECONDS,
    ) -> None:
        self._clock = clock
        self._max_timer_slice = max_timer_slice
        self._wakeup = asyncio.Event()

    def now(self) -> datetime:
        return self._clock()

    def wake(self) -> None:
        self._wakeup.set()

    async def wait(self, condition: Callable[[], bool], deadline: datetime | None) -> bool:
        while True:
            if condition():
                return True
            self._wakeup.clear()
            timeout: float | None = None
            if deadline is not None:
                remaining = (deadline - self.now()).total_seconds()
                if remaining <= 0:
                    return False
                timeout = min(remaining, self._max_timer_slice)
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
            except TimeoutError:
                continue

    def continue_as_new(self, pending: list[ChangeNotification]) -> NoReturn:
        log.info("continuing_as_new", pending=len(pending))
        raise ContinueAsNew(pending)
