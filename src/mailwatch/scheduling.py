"""Scheduled backfills.

A backfill schedule stores a Gmail search query and a cron expression.
The scheduler polls for due schedules and runs each through the
supervisor's backfill, then records the run and the next run time.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime

from croniter import croniter  # type: ignore[import-untyped]

from mailwatch.constants import (
    DEFAULT_SCHEDULE_CRON,
    DEFAULT_SCHEDULE_MAX_RESULTS,
    SCHEDULER_POLL_SECONDS,
)
from mailwatch.errors import MailwatchError
from mailwatch.logging import get_logger
from mailwatch.models import BackfillSchedule, ScheduleRunStatus, utcnow
from mailwatch.pipeline import IngestionOutcome, IngestionSummary
from mailwatch.ports import PersistenceStore
from mailwatch.retry import STORE_POLICY, RetryingExecutor

log = get_logger("mailwatch.scheduling")

BackfillRunner = Callable[..., Awaitable[IngestionSummary]]

_ERROR_OUTCOMES = (
    IngestionOutcome.FAILED,
    IngestionOutcome.FETCH_FAILED,
    IngestionOutcome.EXTRACTION_FAILED,
)


def next_run_after(cron_expression: str, after: datetime) -> datetime:
    """First cron fire time strictly after ``after``, in the same timezone."""
    if not croniter.is_valid(cron_expression):
        raise ValueError(f"invalid cron expression: {cron_expression!r}")
    next_run: datetime = croniter(cron_expression, after).get_next(datetime)
    return next_run


class BackfillScheduler:
    """Runs stored backfill schedules when they fall due.

    ``backfill`` is ``SubscriptionSupervisor.backfill`` in production; it
    serialises with the tenant's own ingestion.
    """

    def __init__(
        self,
        store: PersistenceStore,
        backfill: BackfillRunner,
        *,
        clock: Callable[[], datetime] = utcnow,
        poll_interval: float = SCHEDULER_POLL_SECONDS,
    ) -> None:
        self._store = store
        self._backfill = backfill
        self._clock = clock
        self._poll_interval = poll_interval
        self._executor = RetryingExecutor()
        self._task: asyncio.Task[None] | None = None

    async def add(
        self,
        tenant_id: str,
        name: str,
        search_query: str,
        *,
        cron_expression: str = DEFAULT_SCHEDULE_CRON,
        max_results: int = DEFAULT_SCHEDULE_MAX_RESULTS,
        is_active: bool = True,
    ) -> BackfillSchedule:
        """Create or replace the tenant's schedule called ``name``.

        Raises:
            ValueError: Missing fields, a non-positive result cap, or an
                invalid cron expression.
        """
        if not tenant_id or not name or not search_query:
            raise ValueError("tenant_id, name and search_query are required")
        if max_results <= 0:
            raise ValueError(f"max_results must be positive, got: {max_results}")
        schedule = BackfillSchedule(
            tenant_id=tenant_id,
            name=name,
            search_query=search_query,
            cron_expression=cron_expression,
            max_results=max_results,
            is_active=is_active,
            next_run_at=next_run_after(cron_expression, self._clock()),
        )
        saved: BackfillSchedule = await self._executor.execute(
            "save_schedule", self._store.save_schedule, schedule, policy=STORE_POLICY
        )
        log.info(
            "backfill_schedule_saved",
            tenant_id=tenant_id,
            name=name,
            cron=cron_expression,
            next_run_at=saved.next_run_at,
        )
        return saved

    async def run_due(self) -> list[BackfillSchedule]:
        """Run every schedule due now. Returns the schedules that ran."""
        now = self._clock()
        due: list[BackfillSchedule] = await self._executor.execute(
            "list_due_schedules", self._store.list_due_schedules, now, policy=STORE_POLICY
        )
        for schedule in due:
            await self._run(schedule, now)
        return due

    async def _run(self, schedule: BackfillSchedule, now: datetime) -> None:
        assert schedule.id is not None
        bound = log.bind(tenant_id=schedule.tenant_id, schedule=schedule.name)
        try:
            summary = await self._backfill(
                schedule.tenant_id, schedule.search_query, max_results=schedule.max_results
            )
        except (MailwatchError, ValueError) as exc:
            bound.warning("scheduled_backfill_failed", error=str(exc))
            status, fetched, processed, errors = ScheduleRunStatus.FAILURE, 0, 0, 1
        else:
            status = ScheduleRunStatus.SUCCESS
            fetched = summary.total
            processed = summary.count(IngestionOutcome.PROCESSED)
            errors = sum(summary.count(outcome) for outcome in _ERROR_OUTCOMES)
            bound.info("scheduled_backfill_completed", **summary.to_dict())

        await self._executor.execute(
            "record_schedule_run",
            self._store.record_schedule_run,
            schedule.id,
            status=status,
            fetched=fetched,
            processed=processed,
            errors=errors,
            ran_at=now,
            next_run_at=next_run_after(schedule.cron_expression, now),
            policy=STORE_POLICY,
        )

    # ------------------------------------------------------------------
    # Background loop
    # ------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="backfill-scheduler")
        log.info("backfill_scheduler_started", poll_interval=self._poll_interval)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        log.info("backfill_scheduler_stopped")

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_due()
            except MailwatchError as exc:
                # Store outage; the due schedules are picked up next tick.
                log.error("backfill_scheduler_tick_failed", error=str(exc))
            await asyncio.sleep(self._poll_interval)
