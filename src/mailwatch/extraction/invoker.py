"""Prompt construction and validation around the extraction service.

The model is asked for a single JSON object. Whatever comes back is
validated with ExtractedFields; anything unusable becomes a failed
ExtractionOutcome with confidence 0 instead of an exception.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field, ValidationError, field_validator

from mailwatch.constants import MAX_EXTRACTION_BODY_LENGTH, TRANSACTION_CATEGORIES
from mailwatch.errors import MailwatchError
from mailwatch.logging import get_logger
from mailwatch.models import MatchRule, SourceMessage, TransactionType
from mailwatch.ports import Executor, ExtractionService
from mailwatch.retry import EXTRACTION_POLICY, RetryingExecutor, RetryPolicy

log = get_logger("mailwatch.extraction.invoker")

_CATEGORY_LOOKUP = {c.lower(): c for c in TRANSACTION_CATEGORIES}

SYSTEM_PROMPT = f"""You extract financial transactions from bank notification e-mails.

Reply with one JSON object with exactly these keys:
- "transaction_date": ISO 8601 date or date-time of the transaction
- "merchant": merchant or counterparty name
- "amount": positive number, no currency symbols
- "currency": ISO 4217 three-letter code
- "category": one of {", ".join(TRANSACTION_CATEGORIES)}
- "transaction_type": "debit" for money out, "credit" for money in
- "account_reference": masked account or card number as shown, or ""
- "confidence": number between 0 and 1, how sure you are of the whole record

If the e-mail does not describe a transaction, reply with confidence 0."""


class ExtractedFields(BaseModel):
    """Validated extraction output."""

    transaction_date: datetime
    merchant: str = Field(min_length=1)
    amount: float
    currency: str = "USD"
    category: str
    transaction_type: TransactionType
    account_reference: str = ""
    confidence: float = Field(ge=0.0, le=1.0)

    @field_validator("transaction_date", mode="before")
    @classmethod
    def _parse_date(cls, v: Any) -> datetime:
        if isinstance(v, datetime):
            parsed = v
        elif isinstance(v, str) and v.strip():
            parsed = datetime.fromisoformat(v.strip().replace("Z", "+00:00"))
        else:
            raise ValueError("transaction_date must be an ISO 8601 string")
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=UTC)
        return parsed

    @field_validator("merchant", mode="before")
    @classmethod
    def _strip_merchant(cls, v: Any) -> Any:
        return v.strip() if isinstance(v, str) else v

    @field_validator("amount", mode="before")
    @classmethod
    def _numeric_amount(cls, v: Any) -> float:
        if isinstance(v, bool) or not isinstance(v, int | float):
            raise ValueError("amount must be a number")
        return float(v)

    @field_validator("currency", mode="before")
    @classmethod
    def _currency_code(cls, v: Any) -> str:
        if v is None:
            return "USD"
        if not isinstance(v, str):
            raise ValueError("currency must be a string")
        code = v.strip().upper()
        if len(code) != 3 or not code.isalpha():
            raise ValueError(f"invalid currency code: {v!r}")
        return code

    @field_validator("category", mode="before")
    @classmethod
    def _known_category(cls, v: Any) -> str:
        if not isinstance(v, str) or v.strip().lower() not in _CATEGORY_LOOKUP:
            raise ValueError(f"unknown category: {v!r}")
        return _CATEGORY_LOOKUP[v.strip().lower()]

    @field_validator("transaction_type", mode="before")
    @classmethod
    def _lower_type(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("account_reference", mode="before")
    @classmethod
    def _reference_string(cls, v: Any) -> str:
        if v is None:
            return ""
        if isinstance(v, bool) or not isinstance(v, str | int):
            raise ValueError("account_reference must be a string")
        return str(v).strip()

    @field_validator("confidence", mode="before")
    @classmethod
    def _numeric_confidence(cls, v: Any) -> float:
        if isinstance(v, bool) or not isinstance(v, int | float):
            raise ValueError("confidence must be a number")
        return float(v)


@dataclass
class ExtractionOutcome:
    """What one extraction attempt produced."""

    fields: ExtractedFields | None = None
    confidence: float = 0.0
    raw: dict[str, Any] = field(default_factory=dict)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.fields is not None and self.error is None

    @classmethod
    def failed(cls, error: str, raw: dict[str, Any] | None = None) -> ExtractionOutcome:
        return cls(fields=None, confidence=0.0, raw=raw or {}, error=error)


def build_user_prompt(message: SourceMessage, rule: MatchRule) -> str:
    body = message.body or message.snippet
    if len(body) > MAX_EXTRACTION_BODY_LENGTH:
        body = body[:MAX_EXTRACTION_BODY_LENGTH]
    sent = message.sent_at.isoformat() if message.sent_at else "unknown"
    parts = [
        f"Bank: {rule.bank_name or 'unknown'}",
        f"From: {message.from_address}",
        f"Subject: {message.subject}",
        f"Date: {sent}",
        "",
        "Body:",
        body,
    ]
    if rule.extraction_prompt.strip():
        parts += ["", "Instructions for this bank:", rule.extraction_prompt.strip()]
    return "\n".join(parts)


class ExtractionInvoker:
    """Runs the extraction service for a matched message and validates the reply."""

    def __init__(
        self,
        service: ExtractionService,
        *,
        executor: Executor | None = None,
        policy: RetryPolicy = EXTRACTION_POLICY,
    ) -> None:
        self._service = service
        self._executor = executor or RetryingExecutor()
        self._policy = policy

    async def invoke(self, message: SourceMessage, rule: MatchRule) -> ExtractionOutcome:
        user_prompt = build_user_prompt(message, rule)
        try:
            raw = await self._executor.execute(
                "extract",
                self._service.extract,
                SYSTEM_PROMPT,
                user_prompt,
                policy=self._policy,
            )
        except MailwatchError as exc:
            return self._failed(message, f"extraction service error: {exc}")

        try:
            fields = ExtractedFields.model_validate(raw)
        except ValidationError as exc:
            return self._failed(message, f"invalid extraction: {_summarize(exc)}", raw)

        log.debug(
            "extraction_validated",
            message_id=message.provider_message_id,
            rule_id=rule.id,
            confidence=fields.confidence,
        )
        return ExtractionOutcome(fields=fields, confidence=fields.confidence, raw=raw)

    @staticmethod
    def _failed(
        message: SourceMessage, error: str, raw: dict[str, Any] | None = None
    ) -> ExtractionOutcome:
        log.warning(
            "extraction_failed",
            tenant_id=message.tenant_id,
            message_id=message.provider_message_id,
            error=error,
        )
        return ExtractionOutcome.failed(error, raw)


def _summarize(exc: ValidationError) -> str:
    return "; ".join(
        f"{'.'.join(str(p) for p in err['loc']) or 'response'}: {err['msg']}"
        for err in exc.errors()
    )
