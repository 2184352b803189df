"""Unit tests for stored backfill schedules and the scheduler loop."""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from doubles import T0, InMemoryStore

from mailwatch.errors import TransientError
from mailwatch.models import ScheduleRunStatus
from mailwatch.pipeline import IngestionOutcome, IngestionResult, IngestionSummary
from mailwatch.scheduling import BackfillScheduler, next_run_after


class Clock:
    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


def _summary(*outcomes: IngestionOutcome) -> IngestionSummary:
    summary = IngestionSummary()
    for index, outcome in enumerate(outcomes):
        summary.add(IngestionResult(provider_message_id=f"m-{index}", outcome=outcome))
    return summary


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def store():
    return InMemoryStore()


@pytest.fixture
def backfill():
    return AsyncMock(return_value=_summary())


@pytest.fixture
def scheduler(store, backfill, clock):
    return BackfillScheduler(store, backfill, clock=clock, poll_interval=0.01)


# ------------------------------------------------------------------
# Cron evaluation
# ------------------------------------------------------------------


class TestNextRunAfter:
    """Tests for next_run_after."""

    @pytest.mark.parametrize(
        ("expression", "expected"),
        [
            ("* * * * *", T0 + timedelta(minutes=1)),
            ("*/15 * * * *", T0 + timedelta(minutes=15)),
            ("0 6 * * *", datetime(2026, 1, 6, 6, 0, tzinfo=UTC)),
        ],
    )
    def test_next_fire_time(self, expression, expected):
        assert next_run_after(expression, T0) == expected

    def test_keeps_timezone(self):
        assert next_run_after("* * * * *", T0).tzinfo is not None

    @pytest.mark.parametrize("expression", ["", "every minute", "61 * * * *"])
    def test_invalid_expression_raises(self, expression):
        with pytest.raises(ValueError, match="invalid cron expression"):
            next_run_after(expression, T0)


# ------------------------------------------------------------------
# Saving schedules
# ------------------------------------------------------------------


class TestAdd:
    """Tests for BackfillScheduler.add."""

    @pytest.mark.asyncio
    async def test_saves_with_next_run(self, scheduler, store):
        schedule = await scheduler.add(
            "tenant-1", "card-alerts", "from:alerts@acme.com", cron_expression="*/15 * * * *"
        )

        assert schedule.id is not None
        assert schedule.next_run_at == T0 + timedelta(minutes=15)
        assert schedule.max_results == 50
        assert store.schedules[schedule.id].search_query == "from:alerts@acme.com"

    @pytest.mark.asyncio
    async def test_same_name_replaces_and_keeps_statistics(self, scheduler, store, clock):
        first = await scheduler.add("tenant-1", "card-alerts", "from:a@bank.com")
        clock.now = T0 + timedelta(minutes=1)
        await scheduler.run_due()

        second = await scheduler.add("tenant-1", "card-alerts", "from:b@bank.com")

        assert second.id == first.id
        assert second.search_query == "from:b@bank.com"
        assert second.total_runs == 1
        assert len(store.schedules) == 1

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("args", "kwargs", "match"),
        [
            (("", "n", "q"), {}, "required"),
            (("tenant-1", "", "q"), {}, "required"),
            (("tenant-1", "n", ""), {}, "required"),
            (("tenant-1", "n", "q"), {"max_results": 0}, "positive"),
            (("tenant-1", "n", "q"), {"cron_expression": "nope"}, "invalid cron"),
        ],
    )
    async def test_rejects_bad_input(self, scheduler, store, args, kwargs, match):
        with pytest.raises(ValueError, match=match):
            await scheduler.add(*args, **kwargs)
        assert store.schedules == {}


# ------------------------------------------------------------------
# Running due schedules
# ------------------------------------------------------------------


class TestRunDue:
    """Tests for BackfillScheduler.run_due."""

    @pytest.mark.asyncio
    async def test_nothing_due_yet(self, scheduler, backfill):
        await scheduler.add("tenant-1", "card-alerts", "from:alerts@acme.com")

        assert await scheduler.run_due() == []
        backfill.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_runs_and_records_statistics(self, scheduler, store, backfill, clock):
        backfill.return_value = _summary(
            IngestionOutcome.PROCESSED,
            IngestionOutcome.PROCESSED,
            IngestionOutcome.NO_MATCH,
            IngestionOutcome.FETCH_FAILED,
        )
        saved = await scheduler.add(
            "tenant-1",
            "card-alerts",
            "from:alerts@acme.com",
            cron_expression="*/15 * * * *",
            max_results=20,
        )
        clock.now = T0 + timedelta(minutes=16)

        ran = await scheduler.run_due()

        assert [s.name for s in ran] == ["card-alerts"]
        backfill.assert_awaited_once_with("tenant-1", "from:alerts@acme.com", max_results=20)
        schedule = store.schedules[saved.id]
        assert schedule.total_runs == 1
        assert schedule.last_run_status is ScheduleRunStatus.SUCCESS
        assert schedule.last_run_at == clock.now
        assert schedule.total_emails_fetched == 4
        assert schedule.total_emails_processed == 2
        assert schedule.total_errors == 1
        assert schedule.next_run_at == T0 + timedelta(minutes=30)

    @pytest.mark.asyncio
    async def test_failed_backfill_recorded_and_rescheduled(
        self, scheduler, store, backfill, clock
    ):
        backfill.side_effect = ValueError("no active account for tenant tenant-1")
        saved = await scheduler.add("tenant-1", "card-alerts", "from:alerts@acme.com")
        clock.now = T0 + timedelta(minutes=1)

        await scheduler.run_due()

        schedule = store.schedules[saved.id]
        assert schedule.last_run_status is ScheduleRunStatus.FAILURE
        assert schedule.total_errors == 1
        assert schedule.total_emails_fetched == 0
        assert schedule.next_run_at == T0 + timedelta(minutes=2)

    @pytest.mark.asyncio
    async def test_one_failure_does_not_block_others(self, scheduler, store, backfill, clock):
        backfill.side_effect = [TransientError("gmail down"), _summary(IngestionOutcome.PROCESSED)]
        first = await scheduler.add("tenant-1", "a", "q1")
        second = await scheduler.add("tenant-2", "b", "q2")
        clock.now = T0 + timedelta(minutes=1)

        await scheduler.run_due()

        assert store.schedules[first.id].last_run_status is ScheduleRunStatus.FAILURE
        assert store.schedules[second.id].last_run_status is ScheduleRunStatus.SUCCESS

    @pytest.mark.asyncio
    async def test_inactive_schedule_never_runs(self, scheduler, backfill, clock):
        await scheduler.add("tenant-1", "paused", "q", is_active=False)
        clock.now = T0 + timedelta(days=1)

        assert await scheduler.run_due() == []
        backfill.assert_not_awaited()


# ------------------------------------------------------------------
# Background loop
# ------------------------------------------------------------------


class TestLoop:
    """Tests for start and stop."""

    @pytest.mark.asyncio
    async def test_start_runs_due_schedules_until_stopped(self, scheduler, backfill, clock):
        await scheduler.add("tenant-1", "card-alerts", "q")
        clock.now = T0 + timedelta(minutes=1)

        scheduler.start()
        scheduler.start()
        assert scheduler.running
        await asyncio.wait_for(_until(lambda: backfill.await_count >= 1), 2.0)
        await scheduler.stop()

        assert not scheduler.running
        assert backfill.await_count == 1

    @pytest.mark.asyncio
    async def test_store_outage_does_not_kill_loop(self, store, backfill, clock):
        store.fail("list_due_schedules", *(TransientError("db down") for _ in range(5)))
        scheduler = BackfillScheduler(store, backfill, clock=clock, poll_interval=0.01)
        scheduler._executor._sleep = AsyncMock()
        await scheduler.add("tenant-1", "card-alerts", "q")
        clock.now = T0 + timedelta(minutes=1)

        scheduler.start()
        await asyncio.wait_for(_until(lambda: backfill.await_count >= 1), 2.0)
        await scheduler.stop()

        assert store.calls.count("list_due_schedules") >= 2

    @pytest.mark.asyncio
    async def test_stop_without_start(self, scheduler):
        await scheduler.stop()
        assert not scheduler.running


async def _until(predicate) -> None:
    while not predicate():
        await asyncio.sleep(0.005)
