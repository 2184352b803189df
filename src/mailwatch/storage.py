"""PostgreSQL persistence for accounts, messages, rules, schedules, and results.

Every operation is a single statement, so each one is atomic on its own.
Uniqueness of ``(tenant_id, provider_message_id)`` and
``(tenant_id, source_message_id)`` is what makes replays idempotent.
"""

from __future__ import annotations

import json
from datetime import datetime
from typing import TYPE_CHECKING

from mailwatch.constants import RULE_SUCCESS_RATE_ALPHA
from mailwatch.logging import get_logger
from mailwatch.models import (
    AccessCredential,
    BackfillSchedule,
    ExtractedResult,
    MatchRule,
    ScheduleRunStatus,
    SourceMessage,
    SubscriptionAccount,
)

if TYPE_CHECKING:
    import asyncpg  # type: ignore[import-not-found,import-untyped]

log = get_logger("mailwatch.storage")

# ------------------------------------------------------------------
# DDL
# ------------------------------------------------------------------

_CREATE_ACCOUNTS_TABLE = """
CREATE TABLE IF NOT EXISTS subscription_accounts (
    tenant_id               TEXT PRIMARY KEY,
    source_address          TEXT NOT NULL,
    refresh_token           TEXT NOT NULL,
    topic_name              TEXT NOT NULL DEFAULT '',
    lifecycle_id            TEXT NOT NULL DEFAULT '',
    access_token            TEXT,
    access_token_expires_at TIMESTAMPTZ,
    watch_expiration        TIMESTAMPTZ,
    history_id              TEXT,
    is_active               BOOLEAN NOT NULL DEFAULT TRUE,
    error_count             INTEGER NOT NULL DEFAULT 0,
    last_error              TEXT,
    last_sync_at            TIMESTAMPTZ,
    total_messages_synced   BIGINT NOT NULL DEFAULT 0,
    created_at              TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at              TIMESTAMPTZ NOT NULL DEFAULT NOW()
);
CREATE INDEX IF NOT EXISTS idx_subscription_accounts_address
    ON subscription_accounts (LOWER(source_address)) WHERE is_active;
"""

_CREATE_MESSAGES_TABLE = """
CREATE TABLE IF NOT EXISTS source_messages (
    id                  BIGSERIAL PRIMARY KEY,
    tenant_id           TEXT NOT NULL,
    provider_message_id TEXT NOT NULL,
    thread_id           TEXT NOT NULL DEFAULT '',
    from_address        TEXT NOT NULL DEFAULT '',
    to_address          TEXT NOT NULL DEFAULT '',
    subject             TEXT NOT NULL DEFAULT '',
    sent_at             TIMESTAMPTZ,
    body                TEXT NOT NULL DEFAULT '',
    snippet             TEXT NOT NULL DEFAULT '',
    labels              JSONB NOT NULL DEFAULT '[]'::jsonb,
    is_processed        BOOLEAN NOT NULL DEFAULT FALSE,
    processed_at        TIMESTAMPTZ,
    lifecycle_id        TEXT,
    matched_rule_id     BIGINT,
    result_id           BIGINT,
    confidence          DOUBLE PRECISION,
    processing_error    TEXT,
    fetch_error         TEXT,
    created_at          TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (tenant_id, provider_message_id)
);
CREATE INDEX IF NOT EXISTS idx_source_messages_unprocessed
    ON source_messages (tenant_id, created_at) WHERE NOT is_processed;
"""

_CREATE_RULES_TABLE = """
CREATE TABLE IF NOT EXISTS match_rules (
    id                BIGSERIAL PRIMARY KEY,
    tenant_id         TEXT NOT NULL,
    name              TEXT NOT NULL,
    bank_name         TEXT NOT NULL DEFAULT '',
    from_addresses    JSONB NOT NULL DEFAULT '[]'::jsonb,
    subject_patterns  JSONB NOT NULL DEFAULT '[]'::jsonb,
    body_keywords     JSONB NOT NULL DEFAULT '[]'::jsonb,
    extraction_prompt TEXT NOT NULL DEFAULT '',
    is_active         BOOLEAN NOT NULL DEFAULT TRUE,
    priority          INTEGER NOT NULL DEFAULT 0,
    match_count       INTEGER NOT NULL DEFAULT 0,
    success_count     INTEGER NOT NULL DEFAULT 0,
    fail_count        INTEGER NOT NULL DEFAULT 0,
    success_rate      DOUBLE PRECISION NOT NULL DEFAULT 0,
    last_matched_at   TIMESTAMPTZ,
    created_at        TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at        TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (tenant_id, name)
);
CREATE INDEX IF NOT EXISTS idx_match_rules_active
    ON match_rules (tenant_id, priority DESC) WHERE is_active;
"""

_CREATE_RESULTS_TABLE = """
CREATE TABLE IF NOT EXISTS extracted_results (
    id                BIGSERIAL PRIMARY KEY,
    tenant_id         TEXT NOT NULL,
    source_message_id TEXT NOT NULL,
    transaction_date  TIMESTAMPTZ NOT NULL,
    merchant          TEXT NOT NULL,
    amount            DOUBLE PRECISION NOT NULL,
    currency          TEXT NOT NULL,
    category          TEXT NOT NULL,
    transaction_type  TEXT NOT NULL CHECK (transaction_type IN ('debit', 'credit')),
    account_reference TEXT NOT NULL DEFAULT '',
    bank_name         TEXT NOT NULL DEFAULT '',
    rule_id           BIGINT,
    confidence        DOUBLE PRECISION NOT NULL,
    raw_output        JSONB NOT NULL DEFAULT '{}'::jsonb,
    lifecycle_id      TEXT NOT NULL DEFAULT '',
    created_at        TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (tenant_id, source_message_id)
);
CREATE INDEX IF NOT EXISTS idx_extracted_results_tenant_date
    ON extracted_results (tenant_id, transaction_date DESC);
"""


_CREATE_SCHEDULES_TABLE = """
CREATE TABLE IF NOT EXISTS backfill_schedules (
    id                     BIGSERIAL PRIMARY KEY,
    tenant_id              TEXT NOT NULL,
    name                   TEXT NOT NULL,
    search_query           TEXT NOT NULL,
    cron_expression        TEXT NOT NULL,
    max_results            INTEGER NOT NULL DEFAULT 50,
    is_active              BOOLEAN NOT NULL DEFAULT TRUE,
    next_run_at            TIMESTAMPTZ,
    total_runs             INTEGER NOT NULL DEFAULT 0,
    last_run_at            TIMESTAMPTZ,
    last_run_status        TEXT CHECK (last_run_status IN ('success', 'failure')),
    total_emails_fetched   BIGINT NOT NULL DEFAULT 0,
    total_emails_processed BIGINT NOT NULL DEFAULT 0,
    total_errors           BIGINT NOT NULL DEFAULT 0,
    created_at             TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    updated_at             TIMESTAMPTZ NOT NULL DEFAULT NOW(),
    UNIQUE (tenant_id, name)
);
CREATE INDEX IF NOT EXISTS idx_backfill_schedules_due
    ON backfill_schedules (next_run_at) WHERE is_active;
"""


class PostgresStore:
    """asyncpg-backed implementation of the persistence store."""

    def __init__(self, *, success_rate_alpha: float = RULE_SUCCESS_RATE_ALPHA) -> None:
        self._pool: asyncpg.Pool | None = None
        self._alpha = success_rate_alpha

    async def initialize(self, pool: asyncpg.Pool) -> None:
        """Create tables and store the connection pool."""
        self._pool = pool
        async with pool.acquire() as conn:
            await conn.execute(_CREATE_ACCOUNTS_TABLE)
            await conn.execute(_CREATE_MESSAGES_TABLE)
            await conn.execute(_CREATE_RULES_TABLE)
            await conn.execute(_CREATE_RESULTS_TABLE)
            await conn.execute(_CREATE_SCHEDULES_TABLE)
        log.info("postgres_store_initialized")

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("PostgresStore is not initialized")
        return self._pool

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    async def upsert_account(self, account: SubscriptionAccount) -> SubscriptionAccount:
        """Create or reactivate the tenant's account.

        The cursor and watch expiry survive re-linking the same mailbox and
        are cleared when the tenant links a different one.
        """
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO subscription_accounts
                    (tenant_id, source_address, refresh_token, topic_name,
                     lifecycle_id, is_active)
                VALUES ($1, $2, $3, $4, $5, TRUE)
                ON CONFLICT (tenant_id) DO UPDATE SET
                    history_id = CASE
                        WHEN LOWER(subscription_accounts.source_address)
                             = LOWER(EXCLUDED.source_address)
                        THEN subscription_accounts.history_id ELSE NULL END,
                    watch_expiration = CASE
                        WHEN LOWER(subscription_accounts.source_address)
                             = LOWER(EXCLUDED.source_address)
                        THEN subscription_accounts.watch_expiration ELSE NULL END,
                    source_address = EXCLUDED.source_address,
                    refresh_token = EXCLUDED.refresh_token,
                    topic_name = EXCLUDED.topic_name,
                    lifecycle_id = EXCLUDED.lifecycle_id,
                    is_active = TRUE,
                    last_error = NULL,
                    updated_at = NOW()
                RETURNING *
                """,
                account.tenant_id,
                account.source_address,
                account.refresh_token,
                account.topic_name,
                account.lifecycle_id,
            )
        return SubscriptionAccount.from_row(row)

    async def get_account(self, tenant_id: str) -> SubscriptionAccount | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                "SELECT * FROM subscription_accounts WHERE tenant_id = $1",
                tenant_id,
            )
        return SubscriptionAccount.from_row(row) if row else None

    async def find_active_account_by_address(self, address: str) -> SubscriptionAccount | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM subscription_accounts
                WHERE LOWER(source_address) = LOWER($1) AND is_active
                ORDER BY updated_at DESC
                LIMIT 1
                """,
                address,
            )
        return SubscriptionAccount.from_row(row) if row else None

    async def list_active_accounts(self) -> list[SubscriptionAccount]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM subscription_accounts WHERE is_active ORDER BY created_at"
            )
        return [SubscriptionAccount.from_row(r) for r in rows]

    async def record_credential(self, tenant_id: str, credential: AccessCredential) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE subscription_accounts
                SET access_token = $2, access_token_expires_at = $3, updated_at = NOW()
                WHERE tenant_id = $1
                """,
                tenant_id,
                credential.token,
                credential.expires_at,
            )

    async def record_watch(self, tenant_id: str, history_id: str, expiration: datetime) -> None:
        """Store a new watch expiry. The cursor is only set when none exists yet."""
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE subscription_accounts
                SET watch_expiration = $3,
                    history_id = COALESCE(history_id, $2),
                    last_error = NULL,
                    updated_at = NOW()
                WHERE tenant_id = $1
                """,
                tenant_id,
                history_id,
                expiration,
            )

    async def advance_cursor(
        self, tenant_id: str, history_id: str, synced_count: int, synced_at: datetime
    ) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE subscription_accounts
                SET history_id = $2,
                    total_messages_synced = total_messages_synced + $3,
                    last_sync_at = $4,
                    updated_at = NOW()
                WHERE tenant_id = $1
                """,
                tenant_id,
                history_id,
                synced_count,
                synced_at,
            )

    async def record_account_error(
        self, tenant_id: str, error: str, *, deactivate: bool = False
    ) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE subscription_accounts
                SET error_count = error_count + 1,
                    last_error = $2,
                    is_active = CASE WHEN $3::boolean THEN FALSE ELSE is_active END,
                    updated_at = NOW()
                WHERE tenant_id = $1
                """,
                tenant_id,
                error,
                deactivate,
            )

    async def deactivate_account(self, tenant_id: str) -> bool:
        async with self.pool.acquire() as conn:
            result = await conn.execute(
                """
                UPDATE subscription_accounts
                SET is_active = FALSE, watch_expiration = NULL, updated_at = NOW()
                WHERE tenant_id = $1
                """,
                tenant_id,
            )
        return bool(result == "UPDATE 1")

    # ------------------------------------------------------------------
    # Source messages
    # ------------------------------------------------------------------

    async def get_source_message(
        self, tenant_id: str, provider_message_id: str
    ) -> SourceMessage | None:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                SELECT * FROM source_messages
                WHERE tenant_id = $1 AND provider_message_id = $2
                """,
                tenant_id,
                provider_message_id,
            )
        return SourceMessage.from_row(row) if row else None

    async def insert_source_message(self, message: SourceMessage) -> bool:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO source_messages
                    (tenant_id, provider_message_id, thread_id, from_address,
                     to_address, subject, sent_at, body, snippet, labels,
                     lifecycle_id, fetch_error)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12)
                ON CONFLICT (tenant_id, provider_message_id) DO NOTHING
                RETURNING id
                """,
                message.tenant_id,
                message.provider_message_id,
                message.thread_id,
                message.from_address,
                message.to_address,
                message.subject,
                message.sent_at,
                message.body,
                message.snippet,
                json.dumps(message.labels),
                message.lifecycle_id,
                message.fetch_error,
            )
        return row is not None

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
    ) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE source_messages
                SET is_processed = TRUE,
                    processed_at = $3,
                    lifecycle_id = $4,
                    matched_rule_id = $5,
                    result_id = $6,
                    confidence = $7,
                    processing_error = NULL
                WHERE tenant_id = $1 AND provider_message_id = $2 AND NOT is_processed
                """,
                tenant_id,
                provider_message_id,
                processed_at,
                lifecycle_id,
                rule_id,
                result_id,
                confidence,
            )

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
    ) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE source_messages
                SET processing_error = $3,
                    processed_at = $4,
                    lifecycle_id = $5,
                    matched_rule_id = $6,
                    confidence = $7
                WHERE tenant_id = $1 AND provider_message_id = $2 AND NOT is_processed
                """,
                tenant_id,
                provider_message_id,
                error,
                processed_at,
                lifecycle_id,
                rule_id,
                confidence,
            )

    # ------------------------------------------------------------------
    # Match rules
    # ------------------------------------------------------------------

    async def list_active_rules(self, tenant_id: str) -> list[MatchRule]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM match_rules
                WHERE tenant_id = $1 AND is_active
                ORDER BY priority DESC, created_at ASC, id ASC
                """,
                tenant_id,
            )
        return [MatchRule.from_row(r) for r in rows]

    async def save_rule(self, rule: MatchRule) -> MatchRule:
        """Create a rule or update the one with the same name. Statistics are kept."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO match_rules
                    (tenant_id, name, bank_name, from_addresses, subject_patterns,
                     body_keywords, extraction_prompt, is_active, priority)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
                ON CONFLICT (tenant_id, name) DO UPDATE SET
                    bank_name = EXCLUDED.bank_name,
                    from_addresses = EXCLUDED.from_addresses,
                    subject_patterns = EXCLUDED.subject_patterns,
                    body_keywords = EXCLUDED.body_keywords,
                    extraction_prompt = EXCLUDED.extraction_prompt,
                    is_active = EXCLUDED.is_active,
                    priority = EXCLUDED.priority,
                    updated_at = NOW()
                RETURNING *
                """,
                rule.tenant_id,
                rule.name,
                rule.bank_name,
                json.dumps(rule.from_addresses),
                json.dumps(rule.subject_patterns),
                json.dumps(rule.body_keywords),
                rule.extraction_prompt,
                rule.is_active,
                rule.priority,
            )
        return MatchRule.from_row(row)

    async def record_rule_outcome(
        self, rule_id: int, *, success: bool, matched_at: datetime
    ) -> None:
        """Bump counters and fold the outcome into the moving success rate.

        The first outcome seeds the rate directly.
        """
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE match_rules
                SET match_count = match_count + 1,
                    success_count = success_count + CASE WHEN $2::boolean THEN 1 ELSE 0 END,
                    fail_count = fail_count + CASE WHEN $2::boolean THEN 0 ELSE 1 END,
                    success_rate = CASE
                        WHEN match_count = 0 THEN CASE WHEN $2::boolean THEN 1.0 ELSE 0.0 END
                        ELSE success_rate * (1 - $3::double precision)
                             + CASE WHEN $2::boolean THEN $3::double precision ELSE 0.0 END
                    END,
                    last_matched_at = $4,
                    updated_at = NOW()
                WHERE id = $1
                """,
                rule_id,
                success,
                self._alpha,
                matched_at,
            )

    # ------------------------------------------------------------------
    # Backfill schedules
    # ------------------------------------------------------------------

    async def save_schedule(self, schedule: BackfillSchedule) -> BackfillSchedule:
        """Create a schedule or update the one with the same name. Run statistics are kept."""
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO backfill_schedules
                    (tenant_id, name, search_query, cron_expression, max_results,
                     is_active, next_run_at)
                VALUES ($1, $2, $3, $4, $5, $6, $7)
                ON CONFLICT (tenant_id, name) DO UPDATE SET
                    search_query = EXCLUDED.search_query,
                    cron_expression = EXCLUDED.cron_expression,
                    max_results = EXCLUDED.max_results,
                    is_active = EXCLUDED.is_active,
                    next_run_at = EXCLUDED.next_run_at,
                    updated_at = NOW()
                RETURNING *
                """,
                schedule.tenant_id,
                schedule.name,
                schedule.search_query,
                schedule.cron_expression,
                schedule.max_results,
                schedule.is_active,
                schedule.next_run_at,
            )
        return BackfillSchedule.from_row(row)

    async def list_schedules(self, tenant_id: str) -> list[BackfillSchedule]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                "SELECT * FROM backfill_schedules WHERE tenant_id = $1 ORDER BY name",
                tenant_id,
            )
        return [BackfillSchedule.from_row(r) for r in rows]

    async def list_due_schedules(self, now: datetime) -> list[BackfillSchedule]:
        async with self.pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT * FROM backfill_schedules
                WHERE is_active AND next_run_at IS NOT NULL AND next_run_at <= $1
                ORDER BY next_run_at ASC, id ASC
                """,
                now,
            )
        return [BackfillSchedule.from_row(r) for r in rows]

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
    ) -> None:
        async with self.pool.acquire() as conn:
            await conn.execute(
                """
                UPDATE backfill_schedules
                SET total_runs = total_runs + 1,
                    last_run_at = $3,
                    last_run_status = $2,
                    total_emails_fetched = total_emails_fetched + $4,
                    total_emails_processed = total_emails_processed + $5,
                    total_errors = total_errors + $6,
                    next_run_at = $7,
                    updated_at = NOW()
                WHERE id = $1
                """,
                schedule_id,
                str(status),
                ran_at,
                fetched,
                processed,
                errors,
                next_run_at,
            )

    # ------------------------------------------------------------------
    # Extracted results
    # ------------------------------------------------------------------

    async def insert_result(self, result: ExtractedResult) -> tuple[int, bool]:
        async with self.pool.acquire() as conn:
            row = await conn.fetchrow(
                """
                INSERT INTO extracted_results
                    (tenant_id, source_message_id, transaction_date, merchant,
                     amount, currency, category, transaction_type,
                     account_reference, bank_name, rule_id, confidence,
                     raw_output, lifecycle_id)
                VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
                ON CONFLICT (tenant_id, source_message_id) DO NOTHING
                RETURNING id
                """,
                result.tenant_id,
                result.source_message_id,
                result.transaction_date,
                result.merchant,
                result.amount,
                result.currency,
                result.category,
                str(result.transaction_type),
                result.account_reference,
                result.bank_name,
                result.rule_id,
                result.confidence,
                json.dumps(result.raw_output),
                result.lifecycle_id,
            )
            if row is not None:
                return int(row["id"]), True
            existing = await conn.fetchval(
                """
                SELECT id FROM extracted_results
                WHERE tenant_id = $1 AND source_message_id = $2
                """,
                result.tenant_id,
                result.source_message_id,
            )
        log.info(
            "extracted_result_exists",
            tenant_id=result.tenant_id,
            source_message_id=result.source_message_id,
        )
        return int(existing), False
