"""Owns one subscription controller task per tenant.

The supervisor is the process-level surface: link and unlink a tenant's
mailbox, report status, deliver push notifications (starting the
tenant's controller when none is running), resume active accounts after
a restart, and run bounded backfills through the same pipeline.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from mailwatch.constants import (
    DEFAULT_CONFIDENCE_THRESHOLD,
    DEFAULT_PROCESSED_LABEL,
    LIFECYCLE_ID_PREFIX,
)
from mailwatch.controller import (
    ControllerConfig,
    SubscriptionController,
    SubscriptionInput,
    SubscriptionResult,
)
from mailwatch.delta import DeltaFetcher
from mailwatch.errors import NotificationDecodeError
from mailwatch.extraction.invoker import ExtractionInvoker
from mailwatch.logging import get_logger
from mailwatch.matching import PatternMatcher
from mailwatch.models import ChangeNotification, TenantContext
from mailwatch.notifications import decode_notification
from mailwatch.pipeline import IngestionPipeline, IngestionSummary
from mailwatch.ports import (
    CredentialRefresher,
    EmailGateway,
    ExecutionSubstrate,
    ExtractionService,
    PersistenceStore,
)
from mailwatch.retry import OAUTH_POLICY, STORE_POLICY, RetryingExecutor
from mailwatch.substrate import AsyncioSubstrate, ContinueAsNew

log = get_logger("mailwatch.supervisor")


def lifecycle_id_for(tenant_id: str) -> str:
    return f"{LIFECYCLE_ID_PREFIX}{tenant_id}-{uuid.uuid4().hex[:12]}"


@dataclass
class TenantRuntime:
    """Per-tenant collaborators shared by the controller and backfills."""

    substrate: ExecutionSubstrate
    fetcher: DeltaFetcher
    pipeline: IngestionPipeline


class SubscriptionSupervisor:
    """Runs and addresses per-tenant subscription controllers."""

    def __init__(
        self,
        store: PersistenceStore,
        *,
        gateway: EmailGateway,
        refresher: CredentialRefresher,
        extraction_service: ExtractionService,
        topic_name: str = "",
        config: ControllerConfig | None = None,
        confidence_threshold: float = DEFAULT_CONFIDENCE_THRESHOLD,
        processed_label: str = DEFAULT_PROCESSED_LABEL,
        substrate_factory: Callable[[], ExecutionSubstrate] = AsyncioSubstrate,
        matcher: PatternMatcher | None = None,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._refresher = refresher
        self._extraction_service = extraction_service
        self._topic_name = topic_name
        self._config = config or ControllerConfig()
        self._confidence_threshold = confidence_threshold
        self._processed_label = processed_label
        self._substrate_factory = substrate_factory
        self._matcher = matcher or PatternMatcher()
        self._executor = RetryingExecutor()

        self._runtimes: dict[str, TenantRuntime] = {}
        self._controllers: dict[str, SubscriptionController] = {}
        self._tasks: dict[str, asyncio.Task[SubscriptionResult]] = {}

    # ------------------------------------------------------------------
    # Wiring
    # ------------------------------------------------------------------

    def _runtime(self, tenant_id: str) -> TenantRuntime:
        runtime = self._runtimes.get(tenant_id)
        if runtime is None:
            substrate = self._substrate_factory()
            invoker = ExtractionInvoker(self._extraction_service, executor=substrate)
            runtime = TenantRuntime(
                substrate=substrate,
                fetcher=DeltaFetcher(self._gateway, executor=substrate),
                pipeline=IngestionPipeline(
                    self._store,
                    self._gateway,
                    invoker,
                    matcher=self._matcher,
                    confidence_threshold=self._confidence_threshold,
                    processed_label=self._processed_label,
                    executor=substrate,
                    clock=substrate.now,
                ),
            )
            self._runtimes[tenant_id] = runtime
        return runtime

    def _build_controller(
        self, params: SubscriptionInput, pending: list[ChangeNotification] | None
    ) -> SubscriptionController:
        runtime = self._runtime(params.tenant_id)
        return SubscriptionController(
            params,
            substrate=runtime.substrate,
            store=self._store,
            gateway=self._gateway,
            refresher=self._refresher,
            fetcher=runtime.fetcher,
            pipeline=runtime.pipeline,
            config=self._config,
            pending=pending,
        )

    def _start(
        self, params: SubscriptionInput, pending: list[ChangeNotification] | None = None
    ) -> SubscriptionController:
        controller = self._build_controller(params, pending)
        self._controllers[params.tenant_id] = controller
        task = asyncio.create_task(
            self._run_instance(controller), name=f"subscription-{params.tenant_id}"
        )
        self._tasks[params.tenant_id] = task
        task.add_done_callback(lambda t, tenant_id=params.tenant_id: self._on_done(tenant_id, t))
        log.info(
            "subscription_started",
            tenant_id=params.tenant_id,
            lifecycle_id=params.lifecycle_id,
            resumed=params.resumed,
        )
        return controller

    async def _run_instance(self, controller: SubscriptionController) -> SubscriptionResult:
        while True:
            try:
                return await controller.run()
            except ContinueAsNew as cont:
                params = controller.params.continued()
                # Signals delivered before the restart ride along in ``pending``.
                controller = self._build_controller(params, cont.pending)
                self._controllers[params.tenant_id] = controller
                log.info(
                    "subscription_continued",
                    tenant_id=params.tenant_id,
                    pending=len(cont.pending),
                )

    def _on_done(self, tenant_id: str, task: asyncio.Task[SubscriptionResult]) -> None:
        if self._tasks.get(tenant_id) is not task:
            return
        self._tasks.pop(tenant_id, None)
        self._controllers.pop(tenant_id, None)
        self._runtimes.pop(tenant_id, None)
        if task.cancelled():
            log.info("subscription_task_cancelled", tenant_id=tenant_id)
            return
        exc = task.exception()
        if exc is not None:
            log.error("subscription_task_crashed", tenant_id=tenant_id, error=str(exc))
            return
        log.info("subscription_task_finished", tenant_id=tenant_id, **task.result().to_dict())

    # ------------------------------------------------------------------
    # Link / unlink / status
    # ------------------------------------------------------------------

    def is_running(self, tenant_id: str) -> bool:
        task = self._tasks.get(tenant_id)
        return task is not None and not task.done()

    async def link(
        self,
        tenant_id: str,
        source_address: str,
        refresh_token: str,
        *,
        topic_name: str | None = None,
    ) -> str:
        """Start watching a tenant's mailbox. Returns the lifecycle ID.

        Linking a running tenant with the same mailbox, token and topic
        returns the running lifecycle's ID unchanged. Any difference stops
        the running lifecycle and starts a new one with the new details.
        """
        if not tenant_id or not source_address or not refresh_token:
            raise ValueError("tenant_id, source_address and refresh_token are required")
        topic = topic_name or self._topic_name
        if not topic:
            raise ValueError("a Pub/Sub topic name is required")

        existing = self._controllers.get(tenant_id)
        if existing is not None and self.is_running(tenant_id) and not existing.stop_requested:
            current = existing.params
            if (current.source_address, current.refresh_token, current.topic_name) == (
                source_address,
                refresh_token,
                topic,
            ):
                log.info("subscription_already_running", tenant_id=tenant_id)
                return current.lifecycle_id
            log.info(
                "subscription_relinking",
                tenant_id=tenant_id,
                mailbox_changed=current.source_address.lower() != source_address.lower(),
            )
            existing.request_stop()
        if self.is_running(tenant_id):
            # A stopping lifecycle must finish before the account is re-linked.
            await asyncio.wait({self._tasks[tenant_id]})

        params = SubscriptionInput(
            tenant_id=tenant_id,
            source_address=source_address,
            refresh_token=refresh_token,
            topic_name=topic,
            lifecycle_id=lifecycle_id_for(tenant_id),
        )
        self._start(params)
        return params.lifecycle_id

    async def unlink(self, tenant_id: str) -> bool:
        """Stop the tenant's lifecycle. Returns False when nothing was linked."""
        controller = self._controllers.get(tenant_id)
        if controller is not None and self.is_running(tenant_id):
            controller.request_stop()
            return True
        deactivated = await self._store_call(
            "deactivate_account", self._store.deactivate_account, tenant_id
        )
        log.info("subscription_unlinked_offline", tenant_id=tenant_id, deactivated=deactivated)
        return bool(deactivated)

    async def wait(self, tenant_id: str) -> SubscriptionResult | None:
        task = self._tasks.get(tenant_id)
        if task is None:
            return None
        return await asyncio.shield(task)

    async def status(self, tenant_id: str) -> dict[str, Any] | None:
        account = await self._store_call("get_account", self._store.get_account, tenant_id)
        if account is None:
            return None
        status = account.to_dict()
        controller = self._controllers.get(tenant_id)
        if controller is not None and self.is_running(tenant_id):
            status["state"] = str(controller.state)
            status["pending_notifications"] = len(controller.pending_notifications)
        else:
            status["state"] = "not_running"
            status["pending_notifications"] = 0
        return status

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def signal_with_start(
        self, params: SubscriptionInput, notification: ChangeNotification
    ) -> SubscriptionController:
        """Deliver ``notification``, starting the tenant's controller if needed."""
        controller = self._controllers.get(params.tenant_id)
        if controller is None or not self.is_running(params.tenant_id):
            return self._start(params, [notification])
        controller.signal_notification(notification)
        return controller

    async def handle_push(self, payload: dict[str, Any] | str | bytes) -> dict[str, Any]:
        """Webhook ingress for Gmail Pub/Sub pushes.

        Always returns a small status dict; malformed pushes and unknown
        mailboxes are acknowledged and dropped so Pub/Sub does not redeliver.
        """
        try:
            notification = decode_notification(payload)
        except NotificationDecodeError as exc:
            log.warning("push_rejected", error=str(exc))
            return {"status": "rejected", "error": str(exc)}

        account = await self._store_call(
            "find_active_account_by_address",
            self._store.find_active_account_by_address,
            notification.source_address,
        )
        if account is None:
            log.info("push_ignored_unknown_mailbox", source_address=notification.source_address)
            return {"status": "ignored"}

        notification = ChangeNotification(
            source_address=notification.source_address,
            cursor_hint=notification.cursor_hint,
            received_at=notification.received_at,
            tenant_id=account.tenant_id,
        )
        self.signal_with_start(SubscriptionInput.from_account(account), notification)
        log.debug(
            "push_delivered",
            tenant_id=account.tenant_id,
            cursor_hint=notification.cursor_hint,
        )
        return {"status": "accepted", "tenant_id": account.tenant_id}

    # ------------------------------------------------------------------
    # Process lifecycle
    # ------------------------------------------------------------------

    async def resume_active(self) -> int:
        """Start controllers for every active account not already running."""
        accounts = await self._store_call("list_active_accounts", self._store.list_active_accounts)
        started = 0
        for account in accounts:
            if self.is_running(account.tenant_id):
                continue
            self._start(SubscriptionInput.from_account(account))
            started += 1
        log.info("subscriptions_resumed", count=started)
        return started

    async def shutdown(self) -> None:
        """Cancel all controller tasks. Accounts stay active for the next start."""
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        log.info("supervisor_shutdown", tasks=len(tasks))

    # ------------------------------------------------------------------
    # Backfill
    # ------------------------------------------------------------------

    async def backfill(
        self, tenant_id: str, query: str, *, max_results: int = 100
    ) -> IngestionSummary:
        """Search the tenant's mailbox and ingest the hits.

        Runs through the tenant's pipeline, so it never overlaps with the
        controller's own ingestion.
        """
        account = await self._store_call("get_account", self._store.get_account, tenant_id)
        if account is None or not account.is_active:
            raise ValueError(f"no active account for tenant {tenant_id}")

        runtime = self._runtime(tenant_id)
        credential = await runtime.substrate.execute(
            "refresh_credential",
            self._refresher.refresh,
            account.refresh_token,
            policy=OAUTH_POLICY,
        )
        await runtime.substrate.execute(
            "record_credential",
            self._store.record_credential,
            tenant_id,
            credential,
            policy=STORE_POLICY,
        )
        ctx = TenantContext(
            tenant_id=tenant_id,
            access_token=credential.token,
            lifecycle_id=account.lifecycle_id,
        )
        ids = await runtime.substrate.execute(
            "search",
            self._gateway.search,
            ctx,
            query,
            max_results,
            policy=self._config.gmail_policy,
        )
        messages = await runtime.fetcher.resolve_many(ctx, ids)
        summary = await runtime.pipeline.ingest_many(ctx, messages)
        log.info("backfill_completed", tenant_id=tenant_id, query=query, **summary.to_dict())
        return summary

    async def _store_call(self, name: str, fn: Any, *args: Any) -> Any:
        return await self._executor.execute(name, fn, *args, policy=STORE_POLICY)
