"""Delta fetching: from a history cursor to fully resolved source messages."""

from __future__ import annotations

from dataclasses import dataclass, field

from mailwatch.errors import AuthenticationError
from mailwatch.logging import get_logger
from mailwatch.models import SourceMessage, TenantContext
from mailwatch.ports import EmailGateway, Executor
from mailwatch.retry import GMAIL_API_POLICY, RetryingExecutor, RetryPolicy

log = get_logger("mailwatch.delta")


def newer_cursor(current: str | None, candidate: str) -> str:
    """Gmail history IDs only grow; never move a numeric cursor backwards."""
    if current and current.isdigit() and candidate.isdigit():
        return candidate if int(candidate) >= int(current) else current
    return candidate


def cursor_covers(cursor: str | None, hint: str) -> bool:
    """True when changes up to ``hint`` were already fetched from ``cursor``."""
    if not cursor or not hint or not (cursor.isdigit() and hint.isdigit()):
        return False
    return int(cursor) >= int(hint)


@dataclass
class Delta:
    """Candidates added since a cursor, in provider order, and the new cursor."""

    messages: list[SourceMessage] = field(default_factory=list)
    new_cursor: str = ""

    @property
    def failed_count(self) -> int:
        return sum(1 for m in self.messages if m.fetch_error)


class DeltaFetcher:
    """Resolves a mailbox delta into SourceMessage candidates.

    A candidate that cannot be fetched after retries is returned as a
    placeholder with ``fetch_error`` set, so one bad message never blocks
    the rest of the delta. Authentication failures propagate.
    """

    def __init__(
        self,
        gateway: EmailGateway,
        *,
        executor: Executor | None = None,
        policy: RetryPolicy = GMAIL_API_POLICY,
    ) -> None:
        self._gateway = gateway
        self._executor = executor or RetryingExecutor()
        self._policy = policy

    async def fetch(self, ctx: TenantContext, cursor: str | None) -> Delta:
        ids, new_cursor = await self._executor.execute(
            "search_or_fetch_delta",
            self._gateway.search_or_fetch_delta,
            ctx,
            cursor,
            policy=self._policy,
        )
        messages = await self.resolve_many(ctx, ids)
        delta = Delta(messages=messages, new_cursor=newer_cursor(cursor, new_cursor))
        log.info(
            "delta_fetched",
            tenant_id=ctx.tenant_id,
            cursor=cursor,
            new_cursor=delta.new_cursor,
            count=len(messages),
            failed=delta.failed_count,
        )
        return delta

    async def resolve_many(self, ctx: TenantContext, ids: list[str]) -> list[SourceMessage]:
        return [await self._resolve(ctx, message_id) for message_id in ids]

    async def _resolve(self, ctx: TenantContext, message_id: str) -> SourceMessage:
        try:
            return await self._executor.execute(
                "get_message",
                self._gateway.get_message,
                ctx,
                message_id,
                policy=self._policy,
            )
        except AuthenticationError:
            raise
        except Exception as exc:
            log.warning(
                "message_fetch_failed",
                tenant_id=ctx.tenant_id,
                message_id=message_id,
                error=str(exc),
            )
            placeholder = SourceMessage.fetch_failed(ctx.tenant_id, message_id, str(exc))
            placeholder.lifecycle_id = ctx.lifecycle_id or None
            return placeholder
