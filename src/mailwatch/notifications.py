"""Decoding of Gmail Pub/Sub push notifications."""

from __future__ import annotations

import base64
import binascii
import json
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from mailwatch.errors import NotificationDecodeError
from mailwatch.models import ChangeNotification, utcnow


class PushMessage(BaseModel):
    data: str = Field(min_length=1)
    message_id: str = Field(default="", alias="messageId")
    publish_time: datetime | None = Field(default=None, alias="publishTime")


class PushEnvelope(BaseModel):
    message: PushMessage
    subscription: str = ""


class MailboxChange(BaseModel):
    """The JSON object Gmail publishes inside ``message.data``."""

    email_address: str = Field(alias="emailAddress", min_length=1)
    history_id: str = Field(alias="historyId")

    @field_validator("email_address")
    @classmethod
    def _strip_address(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("emailAddress is empty")
        return v

    @field_validator("history_id", mode="before")
    @classmethod
    def _history_id_digits(cls, v: Any) -> str:
        if isinstance(v, bool) or not isinstance(v, int | str):
            raise ValueError("historyId must be an integer or digit string")
        text = str(v).strip()
        if not text.isdigit():
            raise ValueError(f"historyId is not numeric: {text!r}")
        return text


def decode_notification(
    payload: dict[str, Any] | str | bytes,
    *,
    now: Callable[[], datetime] = utcnow,
) -> ChangeNotification:
    """Decode a Pub/Sub push envelope into a ChangeNotification.

    Raises:
        NotificationDecodeError: The payload is not a well-formed Gmail push.
    """
    try:
        if isinstance(payload, bytes | str):
            payload = json.loads(payload)
        envelope = PushEnvelope.model_validate(payload)
        raw = base64.b64decode(_pad(envelope.message.data), altchars=b"-_", validate=False)
        change = MailboxChange.model_validate_json(raw)
    except (ValueError, ValidationError, binascii.Error, UnicodeDecodeError) as exc:
        raise NotificationDecodeError(f"Malformed push notification: {exc}") from exc

    received_at = envelope.message.publish_time or now()
    if received_at.tzinfo is None:
        received_at = received_at.replace(tzinfo=UTC)
    return ChangeNotification(
        source_address=change.email_address,
        cursor_hint=change.history_id,
        received_at=received_at,
    )


def _pad(data: str) -> str:
    return data + "=" * (-len(data) % 4)
