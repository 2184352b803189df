"""Google OAuth2 access-token refresh.

Exchanges a tenant's long-lived refresh token for a short-lived access
token. A revoked or invalid grant is an authentication failure that
stops the tenant's subscription; anything else is classified like the
Gmail API errors.
"""

from __future__ import annotations

import contextlib
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

import httpx

from mailwatch.constants import DEFAULT_ACCESS_TOKEN_LIFETIME_SECONDS
from mailwatch.errors import AuthenticationError, PermanentError, TransientError
from mailwatch.logging import get_logger
from mailwatch.models import AccessCredential, utcnow

log = get_logger("mailwatch.gmail.auth")

GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"  # nosec B105

# Token endpoint error codes that mean the grant itself is unusable
_AUTH_ERROR_CODES = frozenset({"invalid_grant", "invalid_client", "unauthorized_client"})


class GoogleCredentialRefresher:
    """Refreshes Google OAuth2 access tokens for the Gmail API."""

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        *,
        timeout: float = 30.0,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        if not client_id:
            raise ValueError("client_id is required")
        if not client_secret:
            raise ValueError("client_secret is required")
        self._client_id = client_id
        self._client_secret = client_secret
        self._timeout = timeout
        self._clock = clock

    async def refresh(self, refresh_token: str) -> AccessCredential:
        """Exchange ``refresh_token`` for a fresh access credential.

        Raises:
            AuthenticationError: The grant was revoked or is invalid.
            TransientError: Network failure, rate limit, or server error.
        """
        if not refresh_token:
            raise AuthenticationError("No refresh token on file")

        data = {
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }

        async with httpx.AsyncClient(timeout=self._timeout) as client:
            try:
                response = await client.post(GOOGLE_TOKEN_URL, data=data)
                response.raise_for_status()
                result: dict[str, Any] = response.json()
            except httpx.HTTPStatusError as exc:
                raise _classify_token_error(exc.response) from exc
            except httpx.RequestError as exc:
                raise TransientError(f"Token refresh request failed: {exc}") from exc

        if "error" in result:
            raise AuthenticationError(
                f"Token refresh error: {result['error']} - {result.get('error_description', '')}"
            )
        token = result.get("access_token")
        if not token:
            raise PermanentError("Token refresh response had no access_token")

        lifetime = int(result.get("expires_in") or DEFAULT_ACCESS_TOKEN_LIFETIME_SECONDS)
        log.info("access_token_refreshed", expires_in=lifetime)
        return AccessCredential(token=token, expires_at=self._clock() + timedelta(seconds=lifetime))


def _classify_token_error(response: httpx.Response) -> Exception:
    status = response.status_code
    error_code = ""
    with contextlib.suppress(ValueError):
        body = response.json()
        if isinstance(body, dict):
            error_code = str(body.get("error", ""))
    message = f"Token refresh HTTP error {status}: {error_code or response.text}"
    if status in (401, 403) or error_code in _AUTH_ERROR_CODES:
        return AuthenticationError(message)
    if status == 429 or status >= 500:
        return TransientError(message)
    return PermanentError(message)
