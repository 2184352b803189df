"""Tests for Google OAuth2 access-token refresh."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from mailwatch.errors import AuthenticationError, PermanentError, TransientError
from mailwatch.gmail.auth import GOOGLE_TOKEN_URL, GoogleCredentialRefresher

NOW = datetime(2026, 1, 5, 9, 0, tzinfo=UTC)

# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def refresher() -> GoogleCredentialRefresher:
    return GoogleCredentialRefresher("test-client-id", "test-client-secret", clock=lambda: NOW)


@pytest.fixture
def mock_httpx():
    """Yield the client that ``async with httpx.AsyncClient(...)`` resolves to."""
    with patch("mailwatch.gmail.auth.httpx.AsyncClient") as mock_cls:
        client_instance = AsyncMock()
        mock_cls.return_value.__aenter__ = AsyncMock(return_value=client_instance)
        mock_cls.return_value.__aexit__ = AsyncMock(return_value=False)
        yield client_instance


def _make_response(
    status_code: int = 200, json_data: dict | None = None, text: str = ""
) -> MagicMock:
    resp = MagicMock(spec=httpx.Response)
    resp.status_code = status_code
    resp.text = text
    if json_data is not None:
        resp.json.return_value = json_data
    else:
        resp.json.side_effect = ValueError("no json")
    if 200 <= status_code < 300:
        resp.raise_for_status = MagicMock()
    else:
        resp.raise_for_status.side_effect = httpx.HTTPStatusError(
            message=f"HTTP {status_code}",
            request=MagicMock(spec=httpx.Request),
            response=resp,
        )
    return resp


# ===================================================================
# Tests
# ===================================================================


class TestConstructor:
    """Tests for GoogleCredentialRefresher.__init__."""

    def test_empty_client_id_raises(self) -> None:
        with pytest.raises(ValueError, match="client_id is required"):
            GoogleCredentialRefresher("", "secret")

    def test_empty_client_secret_raises(self) -> None:
        with pytest.raises(ValueError, match="client_secret is required"):
            GoogleCredentialRefresher("id", "")


class TestRefresh:
    """Tests for GoogleCredentialRefresher.refresh."""

    @pytest.mark.asyncio
    async def test_success(self, refresher, mock_httpx) -> None:
        mock_httpx.post.return_value = _make_response(
            json_data={"access_token": "ya29.new", "expires_in": 1800}
        )

        credential = await refresher.refresh("1//refresh")

        assert credential.token == "ya29.new"
        assert credential.expires_at == NOW + timedelta(seconds=1800)
        args, kwargs = mock_httpx.post.call_args
        assert args[0] == GOOGLE_TOKEN_URL
        assert kwargs["data"] == {
            "client_id": "test-client-id",
            "client_secret": "test-client-secret",
            "refresh_token": "1//refresh",
            "grant_type": "refresh_token",
        }

    @pytest.mark.asyncio
    async def test_default_lifetime(self, refresher, mock_httpx) -> None:
        mock_httpx.post.return_value = _make_response(json_data={"access_token": "ya29.new"})
        credential = await refresher.refresh("1//refresh")
        assert credential.expires_at == NOW + timedelta(hours=1)

    @pytest.mark.asyncio
    async def test_missing_refresh_token(self, refresher, mock_httpx) -> None:
        with pytest.raises(AuthenticationError, match="No refresh token"):
            await refresher.refresh("")
        mock_httpx.post.assert_not_called()

    @pytest.mark.asyncio
    async def test_invalid_grant_is_authentication_error(self, refresher, mock_httpx) -> None:
        mock_httpx.post.return_value = _make_response(
            status_code=400, json_data={"error": "invalid_grant"}
        )
        with pytest.raises(AuthenticationError, match="invalid_grant"):
            await refresher.refresh("revoked")

    @pytest.mark.asyncio
    async def test_unauthorized_is_authentication_error(self, refresher, mock_httpx) -> None:
        mock_httpx.post.return_value = _make_response(status_code=401, text="nope")
        with pytest.raises(AuthenticationError, match="401: nope"):
            await refresher.refresh("token")

    @pytest.mark.asyncio
    async def test_server_error_is_transient(self, refresher, mock_httpx) -> None:
        mock_httpx.post.return_value = _make_response(status_code=503, text="unavailable")
        with pytest.raises(TransientError):
            await refresher.refresh("token")

    @pytest.mark.asyncio
    async def test_other_client_error_is_permanent(self, refresher, mock_httpx) -> None:
        mock_httpx.post.return_value = _make_response(
            status_code=400, json_data={"error": "invalid_request"}
        )
        with pytest.raises(PermanentError) as exc_info:
            await refresher.refresh("token")
        assert not isinstance(exc_info.value, AuthenticationError)

    @pytest.mark.asyncio
    async def test_network_error_is_transient(self, refresher, mock_httpx) -> None:
        mock_httpx.post.side_effect = httpx.ConnectTimeout("timed out")
        with pytest.raises(TransientError, match="request failed"):
            await refresher.refresh("token")

    @pytest.mark.asyncio
    async def test_error_in_success_body(self, refresher, mock_httpx) -> None:
        mock_httpx.post.return_value = _make_response(
            json_data={"error": "invalid_grant", "error_description": "Token has been revoked."}
        )
        with pytest.raises(AuthenticationError, match="Token has been revoked"):
            await refresher.refresh("token")

    @pytest.mark.asyncio
    async def test_missing_access_token(self, refresher, mock_httpx) -> None:
        mock_httpx.post.return_value = _make_response(json_data={"expires_in": 3600})
        with pytest.raises(PermanentError, match="no access_token"):
            await refresher.refresh("token")
