"""Gmail implementation of the email gateway.

Every call takes a TenantContext and builds a short-lived GmailClient
from its access token. The only per-tenant state is a shared request
limiter, so concurrent calls for one mailbox stay under the client cap.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from datetime import UTC, datetime

from mailwatch.constants import (
    CURSOR_RESYNC_MAX_RESULTS,
    CURSOR_RESYNC_QUERY,
    HISTORY_PAGE_SIZE,
)
from mailwatch.errors import CursorExpiredError, TransientError
from mailwatch.gmail.client import MAX_CONCURRENT_REQUESTS, GmailClient
from mailwatch.logging import get_logger
from mailwatch.models import SourceMessage, TenantContext

log = get_logger("mailwatch.gmail.gateway")

INBOX_LABEL = "INBOX"
HISTORY_TYPES = ["messageAdded"]


class GmailGateway:
    """Email gateway backed by the Gmail REST API."""

    def __init__(
        self,
        *,
        client_factory: Callable[..., GmailClient] = GmailClient,
        max_concurrent_requests: int = MAX_CONCURRENT_REQUESTS,
        history_page_size: int = HISTORY_PAGE_SIZE,
        resync_query: str = CURSOR_RESYNC_QUERY,
        resync_max_results: int = CURSOR_RESYNC_MAX_RESULTS,
    ) -> None:
        self._client_factory = client_factory
        self._max_concurrent_requests = max_concurrent_requests
        self._limiters: dict[str, asyncio.Semaphore] = {}
        self._history_page_size = history_page_size
        self._resync_query = resync_query
        self._resync_max_results = resync_max_results

    def limiter_for(self, tenant_id: str) -> asyncio.Semaphore:
        limiter = self._limiters.get(tenant_id)
        if limiter is None:
            limiter = asyncio.Semaphore(self._max_concurrent_requests)
            self._limiters[tenant_id] = limiter
        return limiter

    def _client(self, ctx: TenantContext) -> GmailClient:
        return self._client_factory(ctx.access_token, limiter=self.limiter_for(ctx.tenant_id))

    async def search_or_fetch_delta(
        self, ctx: TenantContext, cursor: str | None
    ) -> tuple[list[str], str]:
        """Return inbox message IDs added since ``cursor`` and the new cursor.

        Without a usable cursor (none stored, or older than Gmail's history
        retention) the gateway re-synchronises from a bounded recent-inbox
        search and the mailbox's current history ID.
        """
        client = self._client(ctx)
        if not cursor:
            return await self._resync(client, ctx, reason="no_cursor")

        ids: list[str] = []
        seen: set[str] = set()
        new_cursor = cursor
        page_token: str | None = None
        try:
            while True:
                history, page_token, history_id = await client.get_history(
                    cursor,
                    history_types=HISTORY_TYPES,
                    label_id=INBOX_LABEL,
                    page_token=page_token,
                    max_results=self._history_page_size,
                )
                for record in history:
                    for added in record.get("messagesAdded", []):
                        message_id = added.get("message", {}).get("id")
                        if message_id and message_id not in seen:
                            seen.add(message_id)
                            ids.append(message_id)
                if history_id:
                    new_cursor = history_id
                if not page_token:
                    break
        except CursorExpiredError:
            return await self._resync(client, ctx, reason="cursor_expired")

        log.debug(
            "history_delta_fetched",
            tenant_id=ctx.tenant_id,
            count=len(ids),
            cursor=cursor,
            new_cursor=new_cursor,
        )
        return ids, new_cursor

    async def _resync(
        self, client: GmailClient, ctx: TenantContext, *, reason: str
    ) -> tuple[list[str], str]:
        profile = await client.get_profile()
        history_id = profile.get("historyId")
        if not history_id:
            raise TransientError("Gmail profile response had no historyId")
        ids = await self._search_ids(client, self._resync_query, self._resync_max_results)
        log.warning(
            "history_cursor_resync",
            tenant_id=ctx.tenant_id,
            reason=reason,
            count=len(ids),
            new_cursor=str(history_id),
        )
        return ids, str(history_id)

    async def search(self, ctx: TenantContext, query: str, max_results: int) -> list[str]:
        return await self._search_ids(self._client(ctx), query, max_results)

    async def _search_ids(self, client: GmailClient, query: str, max_results: int) -> list[str]:
        ids: list[str] = []
        page_token: str | None = None
        while len(ids) < max_results:
            stubs, page_token = await client.list_messages(
                query=query,
                max_results=min(max_results - len(ids), 500),
                page_token=page_token,
            )
            ids.extend(stub["id"] for stub in stubs if stub.get("id"))
            if not page_token or not stubs:
                break
        return ids[:max_results]

    async def get_message(self, ctx: TenantContext, message_id: str) -> SourceMessage:
        message = await self._client(ctx).get_message(message_id)
        return SourceMessage(
            tenant_id=ctx.tenant_id,
            provider_message_id=message.gmail_id or message_id,
            thread_id=message.thread_id,
            from_address=message.from_email,
            to_address=", ".join(message.to_emails),
            subject=message.subject,
            sent_at=message.received_at,
            body=message.body,
            snippet=message.snippet,
            labels=list(message.labels),
            lifecycle_id=ctx.lifecycle_id or None,
        )

    async def register_watch(self, ctx: TenantContext, topic_name: str) -> tuple[str, datetime]:
        result = await self._client(ctx).watch(topic_name, label_ids=[INBOX_LABEL])
        history_id = result.get("historyId")
        expiration = result.get("expiration")
        if not history_id or not expiration:
            raise TransientError(f"Invalid watch response: {result}")
        expires_at = datetime.fromtimestamp(int(expiration) / 1000, tz=UTC)
        return str(history_id), expires_at

    async def deregister_watch(self, ctx: TenantContext) -> None:
        await self._client(ctx).stop()

    async def label(self, ctx: TenantContext, message_id: str, tag: str) -> None:
        """Apply the user label named ``tag``, creating it on first use."""
        client = self._client(ctx)
        label_id = None
        for existing in await client.list_labels():
            if existing.get("name") == tag:
                label_id = existing.get("id")
                break
        if label_id is None:
            created = await client.create_label(tag)
            label_id = created.get("id")
        if not label_id:
            raise TransientError(f"Could not resolve label {tag!r}")
        await client.modify_message(message_id, add_labels=[label_id])
