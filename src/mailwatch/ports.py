"""Interfaces of the collaborators the core is written against.

Concrete implementations are injected at construction time: Gmail and
Google OAuth over httpx, OpenAI for extraction, asyncpg for persistence,
and the asyncio substrate for timers, signals, and retries.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from datetime import datetime
from typing import Any, NoReturn, Protocol, TypeVar

from mailwatch.models import (
    AccessCredential,
    BackfillSchedule,
    ChangeNotification,
    ExtractedResult,
    MatchRule,
    ScheduleRunStatus,
    SourceMessage,
    SubscriptionAccount,
    TenantContext,
)
from mailwatch.retry import RetryPolicy

T = TypeVar("T")


class Executor(Protocol):
    """Runs a declared external call under a retry policy."""

    async def execute(
        self,
        name: str,
        fn: Callable[..., Awaitable[T]],
        *args: Any,
        policy: RetryPolicy,
        **kwargs: Any,
    ) -> T: ...


class ExecutionSubstrate(Executor, Protocol):
    """Timers, signal wake-ups, retries, and continuation for one tenant."""

    def now(self) -> datetime: ...

    async def wait(self, condition: Callable[[], bool], deadline: datetime | None) -> bool:
        """Suspend until ``condition()`` holds (True) or ``deadline`` passes (False)."""
        ...

    def wake(self) -> None:
        """Re-evaluate the condition of a pending ``wait``."""
        ...

    def continue_as_new(self, pending: list[ChangeNotification]) -> NoReturn: ...


class EmailGateway(Protocol):
    """Operations on the tenant's mailbox."""

    async def search_or_fetch_delta(
        self, ctx: TenantContext, cursor: str | None
    ) -> tuple[list[str], str]:
        """Return message IDs added since ``cursor`` and the new cursor."""
        ...

    async def search(self, ctx: TenantContext, query: str, max_results: int) -> list[str]: ...

    async def get_message(self, ctx: TenantContext, message_id: str) -> SourceMessage: ...

    async def register_watch(self, ctx: TenantContext, topic_name: str) -> tuple[str, datetime]:
        """Return the mailbox's current cursor and the watch expiry."""
        ...

    async def deregister_watch(self, ctx: TenantContext) -> None: ...

    async def label(self, ctx: TenantContext, message_id: str, tag: str) -> None: ...


class CredentialRefresher(Protocol):
    async def refresh(self, refresh_token: str) -> AccessCredential: ...


class ExtractionService(Protocol):
    async def extract(self, system_prompt: str, user_prompt: str) -> dict[str, Any]:
        """Return the parsed JSON object produced by the model."""
        ...


class PersistenceStore(Protocol):
    """Single-document atomic operations over accounts, messages, rules, schedules, results."""

    # Accounts
    async def upsert_account(self, account: SubscriptionAccount) -> SubscriptionAccount: ...

    async def get_account(self, tenant_id: str) -> SubscriptionAccount | None: ...

    async def find_active_account_by_address(self, address: str) -> SubscriptionAccount | None: ...

    async def list_active_accounts(self) -> list[SubscriptionAccount]: ...

    async def record_credential(self, tenant_id: str, credential: AccessCredential) -> None: ...

    async def record_watch(
        self, tenant_id: str, history_id: str, expiration: datetime
    ) -> None: ...

    async def advance_cursor(
        self, tenant_id: str, history_id: str, synced_count: int, synced_at: datetime
    ) -> None: ...

    async def record_account_error(
        self, tenant_id: str, error: str, *, deactivate: bool = False
    ) -> None: ...

    async def deactivate_account(self, tenant_id: str) -> bool: ...

    # Source messages
    async def get_source_message(
        self, tenant_id: str, provider_message_id: str
    ) -> SourceMessage | None: ...

    async def insert_source_message(self, message: SourceMessage) -> bool:
        """Insert if absent. Returns False when the key already exists."""
        ...

    async def mark_message_processed(
        self,
        tenant_id: str,
        provider_message_id: str,
        *,
        lifecycle_id: str,
        rule_id: int | None,
        result_id: int,
        confidence: float,
        processed_at: datetime,
    ) -> None: ...

    async def mark_message_failed(
        self,
        tenant_id: str,
        provider_message_id: str,
        *,
        error: str,
        lifecycle_id: str,
        processed_at: datetime,
        rule_id: int | None = None,
        confidence: float | None = None,
    ) -> None: ...

    # Rules
    async def list_active_rules(self, tenant_id: str) -> list[MatchRule]: ...

    async def save_rule(self, rule: MatchRule) -> MatchRule: ...

    async def record_rule_outcome(
        self, rule_id: int, *, success: bool, matched_at: datetime
    ) -> None: ...

    # Backfill schedules
    async def save_schedule(self, schedule: BackfillSchedule) -> BackfillSchedule: ...

    async def list_schedules(self, tenant_id: str) -> list[BackfillSchedule]: ...

    async def list_due_schedules(self, now: datetime) -> list[BackfillSchedule]: ...

    async def record_schedule_run(
        self,
        schedule_id: int,
        *,
        status: ScheduleRunStatus,
        fetched: int,
        processed: int,
        errors: int,
        ran_at: datetime,
        next_run_at: datetime,
    ) -> None: ...

    # Results
    async def insert_result(self, result: ExtractedResult) -> tuple[int, bool]:
        """Insert if absent. Returns (result id, created)."""
        ...
