"""Gmail API client wrapper.

Provides async methods for the parts of the Gmail API the ingestion
pipeline needs: history deltas, message search and retrieval, push
watch registration, and label management. HTTP failures are classified
into the Mailwatch error taxonomy so callers can decide what to retry.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

import httpx
from bs4 import BeautifulSoup

from mailwatch.errors import (
    AuthenticationError,
    CursorExpiredError,
    MailwatchError,
    NotFoundError,
    PermanentError,
    TransientError,
)
from mailwatch.logging import get_logger

log = get_logger("mailwatch.gmail.client")

GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1"

# Cap on in-flight requests per mailbox
MAX_CONCURRENT_REQUESTS = 10

# Usage-limit reasons Gmail reports with a 403 status
RATE_LIMIT_REASONS = frozenset(
    {"rateLimitExceeded", "userRateLimitExceeded", "dailyLimitExceeded", "quotaExceeded"}
)


def _error_reasons(detail: str) -> set[str]:
    """Collect ``error.errors[].reason`` and ``error.status`` from a Google error body."""
    try:
        body = json.loads(detail)
    except ValueError:
        return set()
    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        return set()
    reasons = {
        str(item.get("reason", ""))
        for item in error.get("errors") or []
        if isinstance(item, dict)
    }
    if error.get("status") == "RESOURCE_EXHAUSTED":
        reasons.add("rateLimitExceeded")
    return reasons


def classify_http_error(status_code: int, detail: str) -> MailwatchError:
    """Map an HTTP status from a Google API to an error class.

    A 403 is a usage limit, and so transient, when the body names a rate or
    quota reason. Any other 403 is a permission failure.
    """
    message = f"Gmail API error {status_code}: {detail}"
    if status_code == 403 and _error_reasons(detail) & RATE_LIMIT_REASONS:
        return TransientError(message)
    if status_code in (401, 403):
        return AuthenticationError(message)
    if status_code == 404:
        return NotFoundError(message)
    if status_code == 429 or status_code >= 500:
        return TransientError(message)
    return PermanentError(message)


@dataclass
class GmailMessage:
    """A Gmail message parsed from the ``full`` format."""

    gmail_id: str
    thread_id: str
    subject: str = ""
    from_email: str = ""
    to_emails: list[str] = field(default_factory=list)
    body_text: str = ""
    body_html: str = ""
    received_at: datetime | None = None
    labels: list[str] = field(default_factory=list)
    snippet: str = ""

    @property
    def body(self) -> str:
        """Plain-text body, falling back to the HTML part rendered as text."""
        if self.body_text.strip():
            return self.body_text
        if self.body_html:
            return html_to_text(self.body_html)
        return ""


def html_to_text(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "head"]):
        tag.decompose()
    lines = (line.strip() for line in soup.get_text("\n").splitlines())
    return "\n".join(line for line in lines if line)


class GmailClient:
    """Async Gmail API client.

    Wraps the Gmail REST API with error classification and a cap on
    concurrent requests. Each client instance is bound to a single Gmail
    account's access token. Clients for the same mailbox can share one
    ``limiter`` so the cap holds across them.
    """

    def __init__(
        self,
        access_token: str,
        *,
        limiter: asyncio.Semaphore | None = None,
        timeout: float = 30.0,
    ) -> None:
        if not access_token:
            raise ValueError("access_token is required")
        self._access_token = access_token
        self._timeout = timeout
        self._limiter = limiter or asyncio.Semaphore(MAX_CONCURRENT_REQUESTS)

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._access_token}"}

    async def _request(
        self,
        method: str,
        url: str,
        *,
        params: dict[str, Any] | None = None,
        json_data: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Make an authenticated request and return the decoded JSON body."""
        async with self._limiter, httpx.AsyncClient(timeout=self._timeout) as client:
            try:
                response = await client.request(
                    method, url, headers=self._headers(), params=params, json=json_data
                )
                response.raise_for_status()
            except httpx.HTTPStatusError as exc:
                raise classify_http_error(
                    exc.response.status_code, exc.response.text
                ) from exc
            except httpx.RequestError as exc:
                raise TransientError(f"Gmail API request failed: {exc}") from exc
        if not response.content:
            return {}
        result: dict[str, Any] = response.json()
        return result

    async def _get(self, url: str, params: dict[str, Any] | None = None) -> dict[str, Any]:
        return await self._request("GET", url, params=params)

    async def _post(self, url: str, json_data: dict[str, Any] | None = None) -> dict[str, Any]:
        return await self._request("POST", url, json_data=json_data or {})

    # ------------------------------------------------------------------
    # Messages
    # ------------------------------------------------------------------

    async def list_messages(
        self,
        *,
        query: str = "",
        max_results: int = 20,
        page_token: str | None = None,
        label_ids: list[str] | None = None,
    ) -> tuple[list[dict[str, str]], str | None]:
        """List message stubs (``id``, ``threadId``) matching a search query.

        Returns:
            Tuple of (message stubs, next page token or None).
        """
        data = await self._get(
            f"{GMAIL_API_BASE}/users/me/messages",
            _compact(maxResults=max_results, q=query, pageToken=page_token, labelIds=label_ids),
        )
        stubs: list[dict[str, str]] = data.get("messages", [])
        next_token = data.get("nextPageToken")
        log.debug("messages_listed", count=len(stubs), has_more=bool(next_token))
        return stubs, next_token

    async def get_message(self, message_id: str) -> GmailMessage:
        data = await self._get(
            f"{GMAIL_API_BASE}/users/me/messages/{message_id}", {"format": "full"}
        )
        return parse_message(data)

    async def modify_message(
        self,
        message_id: str,
        *,
        add_labels: list[str] | None = None,
        remove_labels: list[str] | None = None,
    ) -> dict[str, Any]:
        result = await self._post(
            f"{GMAIL_API_BASE}/users/me/messages/{message_id}/modify",
            _compact(addLabelIds=add_labels, removeLabelIds=remove_labels),
        )
        log.debug("message_labels_changed", message_id=message_id, added=add_labels)
        return result

    # ------------------------------------------------------------------
    # Labels
    # ------------------------------------------------------------------

    async def list_labels(self) -> list[dict[str, Any]]:
        data = await self._get(f"{GMAIL_API_BASE}/users/me/labels")
        return list(data.get("labels", []))

    async def create_label(self, name: str) -> dict[str, Any]:
        """Create a user label visible in both the label list and message list."""
        label = await self._post(
            f"{GMAIL_API_BASE}/users/me/labels",
            {"name": name, "labelListVisibility": "labelShow", "messageListVisibility": "show"},
        )
        log.info("gmail_label_created", name=name, label_id=label.get("id"))
        return label

    # ------------------------------------------------------------------
    # Mailbox state and push notifications
    # ------------------------------------------------------------------

    async def get_profile(self) -> dict[str, Any]:
        """Get the mailbox profile (address and current history ID)."""
        return await self._get(f"{GMAIL_API_BASE}/users/me/profile")

    async def get_history(
        self,
        start_history_id: str,
        *,
        history_types: list[str] | None = None,
        label_id: str | None = None,
        page_token: str | None = None,
        max_results: int = 100,
    ) -> tuple[list[dict[str, Any]], str | None, str | None]:
        """Get one page of mailbox history since a history ID.

        Returns:
            Tuple of (history records, next_page_token, latest history ID).

        Raises:
            CursorExpiredError: The start history ID is older than Gmail retains.
        """
        params = _compact(
            startHistoryId=start_history_id,
            maxResults=max_results,
            historyTypes=history_types,
            labelId=label_id,
            pageToken=page_token,
        )
        try:
            data = await self._get(f"{GMAIL_API_BASE}/users/me/history", params)
        except NotFoundError as exc:
            raise CursorExpiredError(
                f"History ID {start_history_id} is no longer available"
            ) from exc
        latest = data.get("historyId")
        return (
            data.get("history", []),
            data.get("nextPageToken"),
            str(latest) if latest else None,
        )

    async def watch(self, topic_name: str, *, label_ids: list[str] | None = None) -> dict[str, Any]:
        """Start (or renew) push notifications to a Pub/Sub topic.

        Returns:
            Dict with ``historyId`` and ``expiration`` (epoch milliseconds).
        """
        result = await self._post(
            f"{GMAIL_API_BASE}/users/me/watch",
            {
                "topicName": topic_name,
                "labelIds": label_ids or ["INBOX"],
                "labelFilterBehavior": "include",
            },
        )
        log.info("watch_registered", topic=topic_name, expiration=result.get("expiration"))
        return result

    async def stop(self) -> None:
        """Stop push notifications for the mailbox."""
        await self._post(f"{GMAIL_API_BASE}/users/me/stop")
        log.info("watch_stopped")


# ----------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------


def _compact(**params: Any) -> dict[str, Any]:
    """Drop unset query/body fields; Gmail rejects empty list parameters."""
    return {key: value for key, value in params.items() if value not in (None, "", [])}


def decode_body_data(data: str) -> str:
    """Decode Gmail's unpadded base64url part data. Undecodable data reads as empty."""
    if not data:
        return ""
    try:
        raw = base64.urlsafe_b64decode(data + "=" * (-len(data) % 4))
    except (binascii.Error, ValueError):
        return ""
    return raw.decode("utf-8", errors="replace")


def _leaf_parts(part: dict[str, Any]) -> Iterator[dict[str, Any]]:
    children = part.get("parts")
    if not children:
        yield part
        return
    for child in children:
        yield from _leaf_parts(child)


def extract_bodies(payload: dict[str, Any]) -> tuple[str, str]:
    """First inline text/plain and text/html parts, depth-first.

    Parts carrying a filename are attachments and never count as the body.
    """
    found: dict[str, str] = {}
    for part in _leaf_parts(payload):
        mime_type = part.get("mimeType", "")
        if mime_type not in ("text/plain", "text/html") or part.get("filename"):
            continue
        if not found.get(mime_type):
            found[mime_type] = decode_body_data(part.get("body", {}).get("data", ""))
    return found.get("text/plain", ""), found.get("text/html", "")


def _internal_date(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromtimestamp(int(value) / 1000, tz=UTC)
    except (ValueError, TypeError, OSError, OverflowError):
        return None


def parse_message(data: dict[str, Any]) -> GmailMessage:
    """Build a GmailMessage from a ``format=full`` API response."""
    payload = data.get("payload") or {}
    headers = {h.get("name", "").lower(): h.get("value", "") for h in payload.get("headers", [])}
    body_text, body_html = extract_bodies(payload)
    return GmailMessage(
        gmail_id=data.get("id", ""),
        thread_id=data.get("threadId", ""),
        subject=headers.get("subject", ""),
        from_email=headers.get("from", ""),
        to_emails=[a.strip() for a in headers.get("to", "").split(",") if a.strip()],
        body_text=body_text,
        body_html=body_html,
        received_at=_internal_date(data.get("internalDate")),
        labels=list(data.get("labelIds", [])),
        snippet=data.get("snippet", ""),
    )
