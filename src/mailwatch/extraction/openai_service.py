"""OpenAI chat-completions backend for transaction extraction."""

from __future__ import annotations

import json
from typing import Any

import openai

from mailwatch.constants import EXTRACTION_MAX_TOKENS, EXTRACTION_TEMPERATURE
from mailwatch.errors import ExtractionValidationError, PermanentError, TransientError
from mailwatch.logging import get_logger

log = get_logger("mailwatch.extraction.openai_service")


class OpenAIExtractionService:
    """Calls an OpenAI chat model in JSON mode and returns the parsed object."""

    def __init__(
        self,
        api_key: str | None = None,
        *,
        model: str = "gpt-4o-mini",
        temperature: float = EXTRACTION_TEMPERATURE,
        max_tokens: int = EXTRACTION_MAX_TOKENS,
        client: openai.AsyncOpenAI | None = None,
    ) -> None:
        if client is None:
            if not api_key:
                raise ValueError("OpenAI API key required for extraction")
            client = openai.AsyncOpenAI(api_key=api_key)
        self._client = client
        self._model = model
        self._temperature = temperature
        self._max_tokens = max_tokens
        log.info("openai_extraction_initialized", model=model)

    async def extract(self, system_prompt: str, user_prompt: str) -> dict[str, Any]:
        """Run one extraction.

        Raises:
            TransientError: Rate limit, connection failure, or server error.
            PermanentError: The request was rejected.
            ExtractionValidationError: The reply was not a JSON object.
        """
        try:
            response = await self._client.chat.completions.create(
                model=self._model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                response_format={"type": "json_object"},
                temperature=self._temperature,
                max_tokens=self._max_tokens,
            )
        except (
            openai.RateLimitError,
            openai.APIConnectionError,
            openai.InternalServerError,
        ) as exc:
            raise TransientError(f"OpenAI request failed: {exc}") from exc
        except openai.APIStatusError as exc:
            raise PermanentError(f"OpenAI rejected request ({exc.status_code}): {exc}") from exc

        if not response.choices:
            raise ExtractionValidationError("OpenAI returned no choices")
        content = response.choices[0].message.content
        if not content:
            raise ExtractionValidationError("OpenAI returned an empty message")
        try:
            parsed = json.loads(content)
        except json.JSONDecodeError as exc:
            raise ExtractionValidationError(f"Extraction reply is not JSON: {exc}") from exc
        if not isinstance(parsed, dict):
            raise ExtractionValidationError("Extraction reply is not a JSON object")

        usage = getattr(response, "usage", None)
        log.debug(
            "extraction_completed",
            model=self._model,
            total_tokens=getattr(usage, "total_tokens", None),
        )
        return parsed

    async def close(self) -> None:
        await self._client.close()
