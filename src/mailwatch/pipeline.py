"""Per-message ingestion pipeline.

For each candidate message:

1. Skip it if it was already processed or failed (``duplicate``).
2. Record the raw message (insert-if-absent). Candidates that could not
   be fetched are closed as ``fetch_failed``.
3. Match it against the tenant's active rules (``no_match`` stops here,
   before any extraction call).
4. Extract with the matched rule's prompt (``extraction_failed``).
5. Gate on confidence (``low_confidence``); exactly at the threshold passes.
6. Persist the ExtractedResult, update rule statistics, label the message
   in the mailbox, and mark it processed (``processed``).

A message that was recorded but never closed (a crash between steps 2
and 6) is resumed from step 3 on replay. When the store cannot record a
message at all, IngestionError is raised so the caller keeps its cursor.
"""

from __future__ import annotations

import asyncio
from collections import Counter
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import StrEnum
from typing import Any, TypeVar

from mailwatch.constants import (
    DEFAULT_CONFIDENCE_THRESHOLD,
    DEFAULT_PROCESSED_LABEL,
    ERROR_LOW_CONFIDENCE,
    ERROR_NO_MATCHING_RULE,
)
from mailwatch.errors import AuthenticationError, IngestionError
from mailwatch.extraction.invoker import ExtractionInvoker
from mailwatch.logging import get_logger
from mailwatch.matching import PatternMatcher
from mailwatch.models import ExtractedResult, MatchRule, SourceMessage, TenantContext, utcnow
from mailwatch.ports import EmailGateway, Executor, PersistenceStore
from mailwatch.retry import STORE_POLICY, RetryingExecutor, RetryPolicy

log = get_logger("mailwatch.pipeline")

T = TypeVar("T")


class IngestionOutcome(StrEnum):
    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    NO_MATCH = "no_match"
    EXTRACTION_FAILED = "extraction_failed"
    LOW_CONFIDENCE = "low_confidence"
    FETCH_FAILED = "fetch_failed"
    FAILED = "failed"


@dataclass
class IngestionResult:
    provider_message_id: str
    outcome: IngestionOutcome
    rule_id: int | None = None
    result_id: int | None = None
    confidence: float | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider_message_id": self.provider_message_id,
            "outcome": str(self.outcome),
            "rule_id": self.rule_id,
            "result_id": self.result_id,
            "confidence": self.confidence,
            "error": self.error,
        }


@dataclass
class IngestionSummary:
    """Outcome counts for a batch of messages."""

    results: list[IngestionResult] = field(default_factory=list)

    def add(self, result: IngestionResult) -> None:
        self.results.append(result)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def counts(self) -> dict[str, int]:
        return dict(Counter(str(r.outcome) for r in self.results))

    def count(self, outcome: IngestionOutcome) -> int:
        return sum(1 for r in self.results if r.outcome == outcome)

    def to_dict(self) -> dict[str, Any]:
        return {"total": self.total, "counts": self.counts}


class IngestionPipeline:
    """Runs the ingestion steps for one tenant's messages, one at a time.

    The confidence threshold and the label applied to processed messages
    are policy values injected at construction.
    """

    def __init__(
        self,
        store: PersistenceStore,
        gateway: EmailGateway,
        invoker: ExtractionInvoker,
        *,
        matcher: PatternMatcher | None = None,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        processed_label: str = DEFAULT_PROCESSED_LABEL,
        executor: Executor | None = None,
        store_policy: RetryPolicy = STORE_POLICY,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not 0.0 <= confidence_threshold <= 1.0:
            raise ValueError("confidence_threshold must be between 0 and 1")
        self._store = store
        self._gateway = gateway
        self._invoker = invoker
        self._matcher = matcher or PatternMatcher()
        self._threshold = confidence_threshold
        self._processed_label = processed_label
        self._executor = executor or RetryingExecutor()
        self._store_policy = store_policy
        self._clock = clock
        self._lock = asyncio.Lock()

    @property
    def confidence_threshold(self) -> float:
        return self._threshold

    async def _store_call(
        self, name: str, fn: Callable[..., Awaitable[T]], *args: Any, **kwargs: Any
    ) -> T:
        return await self._executor.execute(name, fn, *args, policy=self._store_policy, **kwargs)

    async def ingest_many(
        self, ctx: TenantContext, messages: Iterable[SourceMessage]
    ) -> IngestionSummary:
        summary = IngestionSummary()
        for message in messages:
            summary.add(await self.ingest(ctx, message))
        log.info("ingestion_batch_completed", tenant_id=ctx.tenant_id, **summary.to_dict())
        return summary

    async def ingest(self, ctx: TenantContext, message: SourceMessage) -> IngestionResult:
        """Run one message through the pipeline.

        Raises:
            IngestionError: The message could not be recorded or closed.
            AuthenticationError: The mailbox credential was rejected.
        """
        async with self._lock:
            return await self._ingest(ctx, message)

    async def _ingest(self, ctx: TenantContext, message: SourceMessage) -> IngestionResult:
        message.tenant_id = ctx.tenant_id
        if ctx.lifecycle_id and not message.lifecycle_id:
            message.lifecycle_id = ctx.lifecycle_id
        message_id = message.provider_message_id

        try:
            existing = await self._store_call(
                "get_source_message", self._store.get_source_message, ctx.tenant_id, message_id
            )
            if existing is not None and existing.is_terminal:
                log.debug(
                    "duplicate_message_skipped", tenant_id=ctx.tenant_id, message_id=message_id
                )
                return IngestionResult(message_id, IngestionOutcome.DUPLICATE)
            if existing is None:
                inserted = await self._store_call(
                    "insert_source_message", self._store.insert_source_message, message
                )
                if not inserted:
                    return IngestionResult(message_id, IngestionOutcome.DUPLICATE)
            else:
                log.info(
                    "resuming_unfinished_message", tenant_id=ctx.tenant_id, message_id=message_id
                )
                message = existing
        except Exception as exc:
            raise IngestionError(f"could not record message {message_id}: {exc}") from exc

        if message.fetch_error:
            return await self._close_failed(
                ctx, message, f"fetch failed: {message.fetch_error}", IngestionOutcome.FETCH_FAILED
            )

        try:
            return await self._process(ctx, message)
        except (IngestionError, AuthenticationError):
            raise
        except Exception as exc:
            log.error(
                "ingestion_step_failed",
                tenant_id=ctx.tenant_id,
                message_id=message_id,
                error=str(exc),
            )
            return await self._close_failed(
                ctx, message, f"processing error: {exc}", IngestionOutcome.FAILED
            )

    async def _process(self, ctx: TenantContext, message: SourceMessage) -> IngestionResult:
        rules = await self._store_call(
            "list_active_rules", self._store.list_active_rules, ctx.tenant_id
        )
        match = self._matcher.match(message.from_address, message.subject, message.body, rules)
        if match.rule is None:
            return await self._close_failed(
                ctx, message, ERROR_NO_MATCHING_RULE, IngestionOutcome.NO_MATCH
            )
        rule = match.rule

        extraction = await self._invoker.invoke(message, rule)
        if not extraction.ok or extraction.fields is None:
            await self._record_rule_outcome(rule, success=False)
            return await self._close_failed(
                ctx,
                message,
                f"extraction failed: {extraction.error}",
                IngestionOutcome.EXTRACTION_FAILED,
                rule_id=rule.id,
                confidence=0.0,
            )

        if extraction.confidence < self._threshold:
            await self._record_rule_outcome(rule, success=False)
            return await self._close_failed(
                ctx,
                message,
                ERROR_LOW_CONFIDENCE,
                IngestionOutcome.LOW_CONFIDENCE,
                rule_id=rule.id,
                confidence=extraction.confidence,
            )

        fields = extraction.fields
        result = ExtractedResult(
            tenant_id=ctx.tenant_id,
            source_message_id=message.provider_message_id,
            transaction_date=fields.transaction_date,
            merchant=fields.merchant,
            amount=fields.amount,
            currency=fields.currency,
            category=fields.category,
            transaction_type=fields.transaction_type,
            account_reference=fields.account_reference,
            confidence=fields.confidence,
            bank_name=rule.bank_name,
            rule_id=rule.id,
            raw_output=extraction.raw,
            lifecycle_id=ctx.lifecycle_id,
        )
        result_id, created = await self._store_call(
            "insert_result", self._store.insert_result, result
        )
        if created:
            await self._record_rule_outcome(rule, success=True)
        await self._label(ctx, message)
        await self._close(
            "mark_message_processed",
            self._store.mark_message_processed,
            ctx.tenant_id,
            message.provider_message_id,
            lifecycle_id=ctx.lifecycle_id,
            rule_id=rule.id,
            result_id=result_id,
            confidence=fields.confidence,
            processed_at=self._clock(),
        )
        log.info(
            "message_processed",
            tenant_id=ctx.tenant_id,
            message_id=message.provider_message_id,
            rule_id=rule.id,
            result_id=result_id,
            confidence=fields.confidence,
            created=created,
        )
        return IngestionResult(
            message.provider_message_id,
            IngestionOutcome.PROCESSED,
            rule_id=rule.id,
            result_id=result_id,
            confidence=fields.confidence,
        )

    async def _close_failed(
        self,
        ctx: TenantContext,
        message: SourceMessage,
        error: str,
        outcome: IngestionOutcome,
        *,
        rule_id: int | None = None,
        confidence: float | None = None,
    ) -> IngestionResult:
        await self._close(
            "mark_message_failed",
            self._store.mark_message_failed,
            ctx.tenant_id,
            message.provider_message_id,
            error=error,
            lifecycle_id=ctx.lifecycle_id,
            processed_at=self._clock(),
            rule_id=rule_id,
            confidence=confidence,
        )
        log.info(
            "message_not_ingested",
            tenant_id=ctx.tenant_id,
            message_id=message.provider_message_id,
            outcome=str(outcome),
            error=error,
        )
        return IngestionResult(
            message.provider_message_id,
            outcome,
            rule_id=rule_id,
            confidence=confidence,
            error=error,
        )

    async def _close(
        self, name: str, fn: Callable[..., Awaitable[None]], *args: Any, **kwargs: Any
    ) -> None:
        try:
            await self._store_call(name, fn, *args, **kwargs)
        except Exception as exc:
            raise IngestionError(f"could not close message {args[1]}: {exc}") from exc

    async def _record_rule_outcome(self, rule: MatchRule, *, success: bool) -> None:
        if rule.id is None:
            return
        try:
            await self._store_call(
                "record_rule_outcome",
                self._store.record_rule_outcome,
                rule.id,
                success=success,
                matched_at=self._clock(),
            )
        except Exception as exc:
            log.warning("rule_stats_update_failed", rule_id=rule.id, error=str(exc))

    async def _label(self, ctx: TenantContext, message: SourceMessage) -> None:
        if not self._processed_label:
            return
        try:
            await self._gateway.label(ctx, message.provider_message_id, self._processed_label)
        except Exception as exc:
            log.warning(
                "message_label_failed",
                tenant_id=ctx.tenant_id,
                message_id=message.provider_message_id,
                error=str(exc),
            )
