"""Per-tenant Gmail subscription lifecycle controller.

One controller owns one tenant's watch subscription for as long as the
tenant stays linked. It keeps the Gmail watch renewed before expiry,
drains change notifications in arrival order through the delta fetcher
and ingestion pipeline, and advances the stored history cursor only
after every message of a delta has been recorded.

States::

    initializing -> active -> renewal_due -> active
                           -> signal_received -> processing_signals -> active
                           -> stopping -> stopped
    any -> error   (authentication failure, or initialization giving up)

All waiting goes through the execution substrate, so the controller is
driven by real time in production and by a manual clock in tests.
"""

from __future__ import annotations

from collections import deque
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from mailwatch.constants import (
    CONTINUE_AS_NEW_DAYS,
    RENEWAL_BUFFER_HOURS,
    RENEWAL_RETRY_MINUTES,
    TOKEN_REFRESH_MARGIN_SECONDS,
)
from mailwatch.delta import DeltaFetcher, cursor_covers
from mailwatch.errors import AuthenticationError
from mailwatch.logging import get_logger
from mailwatch.models import (
    AccessCredential,
    ChangeNotification,
    SubscriptionAccount,
    TenantContext,
)
from mailwatch.pipeline import IngestionOutcome, IngestionPipeline, IngestionSummary
from mailwatch.ports import CredentialRefresher, EmailGateway, ExecutionSubstrate, PersistenceStore
from mailwatch.retry import (
    GMAIL_API_POLICY,
    INITIALIZE_POLICY,
    OAUTH_POLICY,
    STORE_POLICY,
    RetryPolicy,
)
from mailwatch.utils import timed_operation

if TYPE_CHECKING:
    from mailwatch.config import Settings

log = get_logger("mailwatch.controller")


class SubscriptionState(StrEnum):
    INITIALIZING = "initializing"
    ACTIVE = "active"
    RENEWAL_DUE = "renewal_due"
    SIGNAL_RECEIVED = "signal_received"
    PROCESSING_SIGNALS = "processing_signals"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"


_TERMINAL_STATES = frozenset(
    {SubscriptionState.STOPPING, SubscriptionState.STOPPED, SubscriptionState.ERROR}
)


@dataclass(frozen=True)
class SubscriptionInput:
    """What a controller run starts from.

    ``resumed`` runs pick up the persisted account as-is (after a restart or
    a continue-as-new) instead of re-linking it.
    """

    tenant_id: str
    source_address: str
    refresh_token: str
    topic_name: str
    lifecycle_id: str
    resumed: bool = False

    def continued(self) -> SubscriptionInput:
        return replace(self, resumed=True)

    @classmethod
    def from_account(cls, account: SubscriptionAccount) -> SubscriptionInput:
        return cls(
            tenant_id=account.tenant_id,
            source_address=account.source_address,
            refresh_token=account.refresh_token,
            topic_name=account.topic_name,
            lifecycle_id=account.lifecycle_id,
            resumed=True,
        )


@dataclass(frozen=True)
class ControllerConfig:
    renewal_buffer: timedelta = timedelta(hours=RENEWAL_BUFFER_HOURS)
    continue_as_new_after: timedelta = timedelta(days=CONTINUE_AS_NEW_DAYS)
    token_refresh_margin: timedelta = timedelta(seconds=TOKEN_REFRESH_MARGIN_SECONDS)
    renewal_retry_interval: timedelta = timedelta(minutes=RENEWAL_RETRY_MINUTES)
    initialize_policy: RetryPolicy = INITIALIZE_POLICY
    gmail_policy: RetryPolicy = GMAIL_API_POLICY
    oauth_policy: RetryPolicy = OAUTH_POLICY
    store_policy: RetryPolicy = STORE_POLICY

    @classmethod
    def from_settings(cls, settings: Settings) -> ControllerConfig:
        return cls(
            renewal_buffer=settings.renewal_buffer,
            continue_as_new_after=settings.continue_as_new_after,
            token_refresh_margin=settings.token_refresh_margin,
        )


@dataclass
class SubscriptionResult:
    tenant_id: str
    lifecycle_id: str
    status: str
    error: str | None = None
    notifications_processed: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "lifecycle_id": self.lifecycle_id,
            "status": self.status,
            "error": self.error,
            "notifications_processed": self.notifications_processed,
        }


class SubscriptionController:
    """Lifecycle state machine for one tenant's Gmail watch."""

    def __init__(
        self,
        params: SubscriptionInput,
        *,
        substrate: ExecutionSubstrate,
        store: PersistenceStore,
        gateway: EmailGateway,
        refresher: CredentialRefresher,
        fetcher: DeltaFetcher,
        pipeline: IngestionPipeline,
        config: ControllerConfig | None = None,
        pending: list[ChangeNotification] | None = None,
    ) -> None:
        self._input = params
        self._substrate = substrate
        self._store = store
        self._gateway = gateway
        self._refresher = refresher
        self._fetcher = fetcher
        self._pipeline = pipeline
        self._config = config or ControllerConfig()

        self._queue: deque[ChangeNotification] = deque(pending or [])
        self._stop_requested = False
        self._state = SubscriptionState.INITIALIZING
        self._account: SubscriptionAccount | None = None
        self._credential: AccessCredential | None = None
        self._renewal_retry_at: datetime | None = None
        self._catch_up_needed = False
        self._fatal: AuthenticationError | None = None
        self._notifications_processed = 0
        self._started_at: datetime | None = None
        self._log = log.bind(tenant_id=params.tenant_id, lifecycle_id=params.lifecycle_id)

    # ------------------------------------------------------------------
    # Signals and queries
    # ------------------------------------------------------------------

    @property
    def tenant_id(self) -> str:
        return self._input.tenant_id

    @property
    def params(self) -> SubscriptionInput:
        return self._input

    @property
    def state(self) -> SubscriptionState:
        return self._state

    @property
    def pending_notifications(self) -> tuple[ChangeNotification, ...]:
        return tuple(self._queue)

    @property
    def stop_requested(self) -> bool:
        return self._stop_requested

    def signal_notification(self, notification: ChangeNotification) -> bool:
        """Queue a change notification. Returns False once the lifecycle is ending."""
        if self._stop_requested or self._state in _TERMINAL_STATES:
            self._log.info(
                "notification_ignored",
                state=str(self._state),
                cursor_hint=notification.cursor_hint,
            )
            return False
        self._queue.append(notification)
        self._substrate.wake()
        return True

    def request_stop(self) -> None:
        if not self._stop_requested:
            self._log.info("stop_requested", state=str(self._state))
        self._stop_requested = True
        self._substrate.wake()

    # ------------------------------------------------------------------
    # Lifecycle loop
    # ------------------------------------------------------------------

    async def run(self) -> SubscriptionResult:
        self._started_at = self._substrate.now()
        try:
            if self._input.resumed:
                if not await self._resume():
                    self._state = SubscriptionState.STOPPED
                    return self._result("stopped")
            else:
                await self._initialize()
        except Exception as exc:
            return await self._fail(exc)

        while not self._stop_requested:
            self._state = SubscriptionState.ACTIVE
            deadline = self._renewal_deadline()
            woke = await self._substrate.wait(self._has_work, deadline)
            if self._stop_requested:
                break
            if self._queue:
                self._state = SubscriptionState.SIGNAL_RECEIVED
                await self._drain()
            elif not woke:
                self._state = SubscriptionState.RENEWAL_DUE
                await self._renew()
            if self._fatal is not None:
                return await self._fail(self._fatal)
            if not self._stop_requested:
                self._maybe_continue_as_new()

        return await self._shutdown()

    def _has_work(self) -> bool:
        return self._stop_requested or bool(self._queue)

    def _renewal_deadline(self) -> datetime:
        expiry = self._account.watch_expiration if self._account else None
        if expiry is None:
            deadline = self._substrate.now()
        else:
            deadline = expiry - self._config.renewal_buffer
        if self._renewal_retry_at is not None and self._renewal_retry_at > deadline:
            return self._renewal_retry_at
        return deadline

    def _maybe_continue_as_new(self) -> None:
        assert self._started_at is not None
        elapsed = self._substrate.now() - self._started_at
        if elapsed >= self._config.continue_as_new_after:
            self._log.info(
                "controller_history_reset",
                elapsed_days=round(elapsed.total_seconds() / 86400, 2),
                pending=len(self._queue),
            )
            self._substrate.continue_as_new(list(self._queue))

    # ------------------------------------------------------------------
    # Initialization
    # ------------------------------------------------------------------

    async def _initialize(self) -> None:
        self._state = SubscriptionState.INITIALIZING
        account = SubscriptionAccount(
            tenant_id=self._input.tenant_id,
            source_address=self._input.source_address,
            refresh_token=self._input.refresh_token,
            topic_name=self._input.topic_name,
            lifecycle_id=self._input.lifecycle_id,
        )
        self._account = await self._execute(
            "upsert_account", self._store.upsert_account, account, policy=self._config.store_policy
        )
        await self._refresh_credential(self._config.initialize_policy)
        await self._register_watch(self._config.initialize_policy)
        self._log.info(
            "subscription_initialized",
            source_address=self._input.source_address,
            watch_expiration=self._account.watch_expiration,
            history_id=self._account.history_id,
        )

    async def _resume(self) -> bool:
        account = await self._execute(
            "get_account",
            self._store.get_account,
            self._input.tenant_id,
            policy=self._config.store_policy,
        )
        if account is None or not account.is_active:
            self._log.info("subscription_not_resumed", reason="account_inactive")
            return False
        self._account = account
        if account.access_token and account.access_token_expires_at:
            self._credential = AccessCredential(
                token=account.access_token, expires_at=account.access_token_expires_at
            )
        self._log.info(
            "subscription_resumed",
            watch_expiration=account.watch_expiration,
            history_id=account.history_id,
            pending=len(self._queue),
        )
        return True

    # ------------------------------------------------------------------
    # Credential and watch
    # ------------------------------------------------------------------

    async def _refresh_credential(self, policy: RetryPolicy) -> None:
        credential = await self._execute(
            "refresh_credential", self._refresher.refresh, self._input.refresh_token, policy=policy
        )
        self._credential = credential
        await self._execute(
            "record_credential",
            self._store.record_credential,
            self._input.tenant_id,
            credential,
            policy=self._config.store_policy,
        )

    async def _context(self) -> TenantContext:
        margin = self._config.token_refresh_margin.total_seconds()
        if self._credential is None or self._credential.expires_within(
            self._substrate.now(), margin
        ):
            await self._refresh_credential(self._config.oauth_policy)
        assert self._credential is not None
        return TenantContext(
            tenant_id=self._input.tenant_id,
            access_token=self._credential.token,
            lifecycle_id=self._input.lifecycle_id,
        )

    async def _register_watch(self, policy: RetryPolicy) -> None:
        assert self._account is not None
        ctx = await self._context()
        cursor, expiration = await self._execute(
            "register_watch",
            self._gateway.register_watch,
            ctx,
            self._input.topic_name,
            policy=policy,
        )
        await self._execute(
            "record_watch",
            self._store.record_watch,
            self._input.tenant_id,
            cursor,
            expiration,
            policy=self._config.store_policy,
        )
        self._account.watch_expiration = expiration
        if not self._account.history_id:
            self._account.history_id = cursor
        self._renewal_retry_at = None
        self._log.info("watch_renewed", expiration=expiration.isoformat(), cursor=cursor)

    async def _renew(self) -> None:
        try:
            await self._register_watch(self._config.gmail_policy)
        except AuthenticationError as exc:
            self._fatal = exc
            return
        except Exception as exc:
            self._renewal_retry_at = self._substrate.now() + self._config.renewal_retry_interval
            self._log.error(
                "watch_renewal_failed",
                error=str(exc),
                retry_at=self._renewal_retry_at.isoformat(),
            )
            await self._record_error(exc)
            return

        if self._catch_up_needed and not self._queue and self._account is not None:
            # Pick up deltas whose notification failed before the renewal
            self._queue.append(
                ChangeNotification(
                    source_address=self._account.source_address,
                    cursor_hint=self._account.history_id or "",
                    received_at=self._substrate.now(),
                    tenant_id=self._input.tenant_id,
                )
            )

    # ------------------------------------------------------------------
    # Notification processing
    # ------------------------------------------------------------------

    async def _drain(self) -> None:
        self._state = SubscriptionState.PROCESSING_SIGNALS
        while self._queue and not self._stop_requested:
            notification = self._queue.popleft()
            try:
                await self._process_notification(notification)
            except AuthenticationError as exc:
                self._fatal = exc
                return
            except Exception as exc:
                self._catch_up_needed = True
                self._log.error(
                    "notification_processing_failed",
                    cursor_hint=notification.cursor_hint,
                    error=str(exc),
                )
                await self._record_error(exc)
            else:
                self._catch_up_needed = False
                self._notifications_processed += 1

    async def _process_notification(self, notification: ChangeNotification) -> None:
        assert self._account is not None
        cursor = self._account.history_id or notification.cursor_hint or None
        if not self._catch_up_needed and cursor_covers(
            self._account.history_id, notification.cursor_hint
        ):
            self._log.debug(
                "notification_already_covered",
                cursor=cursor,
                cursor_hint=notification.cursor_hint,
            )
            return

        ctx = await self._context()
        async with timed_operation("notification_processed", self._log, cursor=cursor) as timing:
            delta = await self._fetcher.fetch(ctx, cursor)
            summary = IngestionSummary()
            for message in delta.messages:
                summary.add(await self._pipeline.ingest(ctx, message))
            synced = summary.total - summary.count(IngestionOutcome.DUPLICATE)
            await self._execute(
                "advance_cursor",
                self._store.advance_cursor,
                self._input.tenant_id,
                delta.new_cursor,
                synced,
                self._substrate.now(),
                policy=self._config.store_policy,
            )
            self._account.history_id = delta.new_cursor
            timing.update(new_cursor=delta.new_cursor, messages=summary.total, **summary.counts)

    # ------------------------------------------------------------------
    # Errors and shutdown
    # ------------------------------------------------------------------

    async def _record_error(self, exc: BaseException, *, deactivate: bool = False) -> None:
        if self._account is not None:
            self._account.error_count += 1
            self._account.last_error = str(exc)
        try:
            await self._execute(
                "record_account_error",
                self._store.record_account_error,
                self._input.tenant_id,
                str(exc),
                deactivate=deactivate,
                policy=self._config.store_policy,
            )
        except Exception as store_exc:
            self._log.error("account_error_not_recorded", error=str(store_exc))

    async def _fail(self, exc: BaseException) -> SubscriptionResult:
        self._state = SubscriptionState.ERROR
        auth_failure = isinstance(exc, AuthenticationError)
        self._log.error(
            "subscription_failed",
            error=str(exc),
            error_type=type(exc).__name__,
            authentication=auth_failure,
        )
        await self._record_error(exc, deactivate=auth_failure)
        return self._result("error", error=str(exc))

    async def _shutdown(self) -> SubscriptionResult:
        self._state = SubscriptionState.STOPPING
        try:
            ctx = await self._context()
            await self._gateway.deregister_watch(ctx)
        except Exception as exc:
            self._log.warning("watch_deregistration_failed", error=str(exc))

        try:
            await self._execute(
                "deactivate_account",
                self._store.deactivate_account,
                self._input.tenant_id,
                policy=self._config.store_policy,
            )
        except Exception as exc:
            self._log.error("account_deactivation_failed", error=str(exc))

        self._state = SubscriptionState.STOPPED
        self._log.info("subscription_stopped", notifications=self._notifications_processed)
        return self._result("stopped")

    def _result(self, status: str, *, error: str | None = None) -> SubscriptionResult:
        return SubscriptionResult(
            tenant_id=self._input.tenant_id,
            lifecycle_id=self._input.lifecycle_id,
            status=status,
            error=error,
            notifications_processed=self._notifications_processed,
        )

    async def _execute(
        self, name: str, fn: Any, *args: Any, policy: RetryPolicy, **kwargs: Any
    ) -> Any:
        return await self._substrate.execute(name, fn, *args, policy=policy, **kwargs)
