"""Data models for subscriptions, messages, rules, and extracted results.

All models are plain dataclasses with to_dict() for logging and status
queries, and from_row() where they are read back from PostgreSQL.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(UTC)


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _json_field(value: Any, default: Any) -> Any:
    """asyncpg returns JSONB as text unless a codec is registered."""
    if value is None:
        return default
    if isinstance(value, str):
        return json.loads(value)
    return value


# ------------------------------------------------------------------
# Subscription account
# ------------------------------------------------------------------


@dataclass
class SubscriptionAccount:
    """A tenant's linked mailbox and the state of its watch subscription."""

    tenant_id: str
    source_address: str
    refresh_token: str
    topic_name: str = ""
    lifecycle_id: str = ""
    access_token: str | None = None
    access_token_expires_at: datetime | None = None
    watch_expiration: datetime | None = None
    history_id: str | None = None
    is_active: bool = True
    error_count: int = 0
    last_error: str | None = None
    last_sync_at: datetime | None = None
    total_messages_synced: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Status view. Tokens are never included."""
        return {
            "tenant_id": self.tenant_id,
            "source_address": self.source_address,
            "topic_name": self.topic_name,
            "lifecycle_id": self.lifecycle_id,
            "watch_expiration": _iso(self.watch_expiration),
            "history_id": self.history_id,
            "is_active": self.is_active,
            "error_count": self.error_count,
            "last_error": self.last_error,
            "last_sync_at": _iso(self.last_sync_at),
            "total_messages_synced": self.total_messages_synced,
        }

    @classmethod
    def from_row(cls, row: Any) -> SubscriptionAccount:
        return cls(
            tenant_id=row["tenant_id"],
            source_address=row["source_address"],
            refresh_token=row["refresh_token"],
            topic_name=row["topic_name"],
            lifecycle_id=row["lifecycle_id"],
            access_token=row["access_token"],
            access_token_expires_at=row["access_token_expires_at"],
            watch_expiration=row["watch_expiration"],
            history_id=row["history_id"],
            is_active=row["is_active"],
            error_count=row["error_count"],
            last_error=row["last_error"],
            last_sync_at=row["last_sync_at"],
            total_messages_synced=row["total_messages_synced"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


@dataclass(frozen=True)
class AccessCredential:
    """A short-lived access token and when it stops working."""

    token: str
    expires_at: datetime

    def expires_within(self, now: datetime, margin_seconds: float) -> bool:
        return (self.expires_at - now).total_seconds() <= margin_seconds


@dataclass(frozen=True)
class TenantContext:
    """Per-invocation context handed to every provider call."""

    tenant_id: str
    access_token: str
    lifecycle_id: str = ""


# ------------------------------------------------------------------
# Notifications
# ------------------------------------------------------------------


@dataclass(frozen=True)
class ChangeNotification:
    """A decoded push notification. Consumed once, never persisted."""

    source_address: str
    cursor_hint: str
    received_at: datetime
    tenant_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "source_address": self.source_address,
            "cursor_hint": self.cursor_hint,
            "received_at": self.received_at.isoformat(),
        }


# ------------------------------------------------------------------
# Source messages
# ------------------------------------------------------------------


@dataclass
class SourceMessage:
    """A provider message as first seen, plus its processing outcome."""

    tenant_id: str
    provider_message_id: str
    thread_id: str = ""
    from_address: str = ""
    to_address: str = ""
    subject: str = ""
    sent_at: datetime | None = None
    body: str = ""
    snippet: str = ""
    labels: list[str] = field(default_factory=list)
    is_processed: bool = False
    processed_at: datetime | None = None
    lifecycle_id: str | None = None
    matched_rule_id: int | None = None
    result_id: int | None = None
    confidence: float | None = None
    processing_error: str | None = None
    fetch_error: str | None = None

    @property
    def is_terminal(self) -> bool:
        """Processed or failed; replays skip it."""
        return self.is_processed or self.processing_error is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "provider_message_id": self.provider_message_id,
            "thread_id": self.thread_id,
            "from_address": self.from_address,
            "to_address": self.to_address,
            "subject": self.subject,
            "sent_at": _iso(self.sent_at),
            "is_processed": self.is_processed,
            "processed_at": _iso(self.processed_at),
            "matched_rule_id": self.matched_rule_id,
            "result_id": self.result_id,
            "confidence": self.confidence,
            "processing_error": self.processing_error,
            "fetch_error": self.fetch_error,
        }

    @classmethod
    def fetch_failed(cls, tenant_id: str, provider_message_id: str, error: str) -> SourceMessage:
        """Placeholder for a delta candidate whose body could not be fetched."""
        return cls(
            tenant_id=tenant_id,
            provider_message_id=provider_message_id,
            fetch_error=error,
        )

    @classmethod
    def from_row(cls, row: Any) -> SourceMessage:
        return cls(
            tenant_id=row["tenant_id"],
            provider_message_id=row["provider_message_id"],
            thread_id=row["thread_id"],
            from_address=row["from_address"],
            to_address=row["to_address"],
            subject=row["subject"],
            sent_at=row["sent_at"],
            body=row["body"],
            snippet=row["snippet"],
            labels=list(_json_field(row["labels"], [])),
            is_processed=row["is_processed"],
            processed_at=row["processed_at"],
            lifecycle_id=row["lifecycle_id"],
            matched_rule_id=row["matched_rule_id"],
            result_id=row["result_id"],
            confidence=row["confidence"],
            processing_error=row["processing_error"],
            fetch_error=row["fetch_error"],
        )


# ------------------------------------------------------------------
# Match rules
# ------------------------------------------------------------------


@dataclass
class MatchRule:
    """Tenant-configured criteria mapping a bank e-mail to an extraction prompt."""

    tenant_id: str
    name: str
    bank_name: str
    from_addresses: list[str]
    extraction_prompt: str
    subject_patterns: list[str] = field(default_factory=list)
    body_keywords: list[str] = field(default_factory=list)
    is_active: bool = True
    priority: int = 0
    id: int | None = None
    match_count: int = 0
    success_count: int = 0
    fail_count: int = 0
    success_rate: float = 0.0
    last_matched_at: datetime | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "bank_name": self.bank_name,
            "from_addresses": self.from_addresses,
            "subject_patterns": self.subject_patterns,
            "body_keywords": self.body_keywords,
            "is_active": self.is_active,
            "priority": self.priority,
            "match_count": self.match_count,
            "success_count": self.success_count,
            "fail_count": self.fail_count,
            "success_rate": self.success_rate,
            "last_matched_at": _iso(self.last_matched_at),
        }

    @classmethod
    def from_row(cls, row: Any) -> MatchRule:
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            name=row["name"],
            bank_name=row["bank_name"],
            from_addresses=list(_json_field(row["from_addresses"], [])),
            subject_patterns=list(_json_field(row["subject_patterns"], [])),
            body_keywords=list(_json_field(row["body_keywords"], [])),
            extraction_prompt=row["extraction_prompt"],
            is_active=row["is_active"],
            priority=row["priority"],
            match_count=row["match_count"],
            success_count=row["success_count"],
            fail_count=row["fail_count"],
            success_rate=row["success_rate"],
            last_matched_at=row["last_matched_at"],
            created_at=row["created_at"],
        )


# ------------------------------------------------------------------
# Backfill schedules
# ------------------------------------------------------------------


class ScheduleRunStatus(StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"


@dataclass
class BackfillSchedule:
    """A stored mailbox search re-run on a cron schedule.

    Run statistics accumulate across runs; ``next_run_at`` is advanced
    after every run, successful or not.
    """

    tenant_id: str
    name: str
    search_query: str
    cron_expression: str
    max_results: int = 50
    is_active: bool = True
    next_run_at: datetime | None = None
    id: int | None = None
    total_runs: int = 0
    last_run_at: datetime | None = None
    last_run_status: ScheduleRunStatus | None = None
    total_emails_fetched: int = 0
    total_emails_processed: int = 0
    total_errors: int = 0
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "name": self.name,
            "search_query": self.search_query,
            "cron_expression": self.cron_expression,
            "max_results": self.max_results,
            "is_active": self.is_active,
            "next_run_at": _iso(self.next_run_at),
            "total_runs": self.total_runs,
            "last_run_at": _iso(self.last_run_at),
            "last_run_status": str(self.last_run_status) if self.last_run_status else None,
            "total_emails_fetched": self.total_emails_fetched,
            "total_emails_processed": self.total_emails_processed,
            "total_errors": self.total_errors,
        }

    @classmethod
    def from_row(cls, row: Any) -> BackfillSchedule:
        status = row["last_run_status"]
        return cls(
            id=row["id"],
            tenant_id=row["tenant_id"],
            name=row["name"],
            search_query=row["search_query"],
            cron_expression=row["cron_expression"],
            max_results=row["max_results"],
            is_active=row["is_active"],
            next_run_at=row["next_run_at"],
            total_runs=row["total_runs"],
            last_run_at=row["last_run_at"],
            last_run_status=ScheduleRunStatus(status) if status else None,
            total_emails_fetched=row["total_emails_fetched"],
            total_emails_processed=row["total_emails_processed"],
            total_errors=row["total_errors"],
            created_at=row["created_at"],
        )


# ------------------------------------------------------------------
# Extracted results
# ------------------------------------------------------------------


class TransactionType(StrEnum):
    DEBIT = "debit"
    CREDIT = "credit"


@dataclass
class ExtractedResult:
    """A validated transaction extracted from one source message."""

    tenant_id: str
    source_message_id: str
    transaction_date: datetime
    merchant: str
    amount: float
    currency: str
    category: str
    transaction_type: TransactionType
    account_reference: str
    confidence: float
    bank_name: str = ""
    rule_id: int | None = None
    raw_output: dict[str, Any] = field(default_factory=dict)
    lifecycle_id: str = ""
    id: int | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "tenant_id": self.tenant_id,
            "source_message_id": self.source_message_id,
            "transaction_date": self.transaction_date.isoformat(),
            "merchant": self.merchant,
            "amount": self.amount,
            "currency": self.currency,
            "category": self.category,
            "transaction_type": str(self.transaction_type),
            "account_reference": self.account_reference,
            "confidence": self.confidence,
            "bank_name": self.bank_name,
            "rule_id": self.rule_id,
            "lifecycle_id": self.lifecycle_id,
        }
