"""Unit tests for Google access-token refresh."""

import json
from unittest.mock import AsyncMock, MagicMock, patch

import httpx
import pytest

from outreach.auth.google_oauth import (
    ConfigurationError,
    InsufficientScopeError,
    InvalidGrantError,
    TokenRefreshError,
    ensure_oauth_configured,
    exchange_authorization_code,
    refresh_access_token,
)


def _patched_client(response=None, side_effect=None):
    mock_client = AsyncMock()
    mock_client.__aenter__.return_value = mock_client
    mock_client.__aexit__.return_value = None
    mock_client.post = AsyncMock(return_value=response, side_effect=side_effect)
    return mock_client


@pytest.mark.unit
@pytest.mark.asyncio
async def test_refresh_access_token_success():
    """Test successful refresh returns the access token."""
    mock_response = MagicMock()
    mock_response.status_code = 200
    mock_response.json.return_value = {
        "access_token": "ya29.mock-google-access-token",
        "expires_in": 3599,
        "token_type": "Bearer",
    }
    mock_response.raise_for_status = MagicMock()

    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = _patched_client(mock_response)
        mock_client_class.return_value = mock_client

        result = await refresh_access_token("1//refresh")

        assert result == "ya29.mock-google-access-token"
        call_args = mock_client.post.call_args
        assert call_args.args[0] == "https://oauth2.googleapis.com/token"
        assert call_args.kwargs["data"]["grant_type"] == "refresh_token"
        assert call_args.kwargs["data"]["refresh_token"] == "1//refresh"
        assert call_args.kwargs["timeout"] == 10.0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_refresh_access_token_invalid_grant():
    """Test revoked refresh token raises InvalidGrantError."""
    mock_response = MagicMock()
    mock_response.status_code = 400
    mock_response.content = b'{"error": "invalid_grant"}'
    mock_response.json.return_value = {
        "error": "invalid_grant",
        "error_description": "Token has been expired or revoked.",
    }

    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client_class.return_value = _patched_client(mock_response)

        with pytest.raises(InvalidGrantError) as exc_info:
            await refresh_access_token("1//revoked")

        assert exc_info.value.status_code == 401


@pytest.mark.unit
@pytest.mark.asyncio
async def test_refresh_access_token_other_bad_request():
    mock_response = MagicMock()
    mock_response.status_code = 400
    mock_response.content = b'{"error": "invalid_client"}'
    mock_response.json.return_value = {"error": "invalid_client"}

    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client_class.return_value = _patched_client(mock_response)

        with pytest.raises(TokenRefreshError) as exc_info:
            await refresh_access_token("1//refresh")

        assert not isinstance(exc_info.value, InvalidGrantError)
        assert exc_info.value.error_code == "invalid_client"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_refresh_access_token_server_error():
    mock_response = MagicMock()
    mock_response.status_code = 503

    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client_class.return_value = _patched_client(mock_response)

        with pytest.raises(TokenRefreshError) as exc_info:
            await refresh_access_token("1//refresh")

        assert exc_info.value.status_code == 502


@pytest.mark.unit
@pytest.mark.asyncio
async def test_refresh_access_token_timeout():
    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client_class.return_value = _patched_client(side_effect=httpx.TimeoutException("timeout"))

        with pytest.raises(TokenRefreshError) as exc_info:
            await refresh_access_token("1//refresh")

        assert exc_info.value.status_code == 504
        assert exc_info.value.error_code == "timeout"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_refresh_access_token_missing_access_token():
    mock_response = MagicMock()
    mock_response.status_code = 200
    mock_response.json.return_value = {"token_type": "Bearer"}
    mock_response.raise_for_status = MagicMock()

    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client_class.return_value = _patched_client(mock_response)

        with pytest.raises(TokenRefreshError) as exc_info:
            await refresh_access_token("1//refresh")

        assert exc_info.value.error_code == "invalid_token_response"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_refresh_access_token_without_stored_token():
    with pytest.raises(InvalidGrantError):
        await refresh_access_token("")


@pytest.mark.unit
def test_missing_client_configuration():
    with patch("outreach.auth.google_oauth.settings") as mock_settings:
        mock_settings.GOOGLE_CLIENT_ID = ""
        mock_settings.GOOGLE_CLIENT_SECRET = "secret"

        with pytest.raises(ConfigurationError) as exc_info:
            ensure_oauth_configured()

        assert exc_info.value.status_code == 500


def _html_response(status_code):
    mock_response = MagicMock()
    mock_response.status_code = status_code
    mock_response.content = b"<html>Bad Gateway</html>"
    mock_response.json.side_effect = json.JSONDecodeError("Expecting value", "<html>", 0)
    mock_response.raise_for_status = MagicMock()
    return mock_response


@pytest.mark.unit
@pytest.mark.asyncio
async def test_refresh_access_token_html_bad_request():
    """A non-JSON 400 body still maps to a token error."""
    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client_class.return_value = _patched_client(_html_response(400))

        with pytest.raises(TokenRefreshError) as exc_info:
            await refresh_access_token("1//refresh")

        assert exc_info.value.error_code == "token_refresh_error"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_refresh_access_token_html_success_body():
    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client_class.return_value = _patched_client(_html_response(200))

        with pytest.raises(TokenRefreshError) as exc_info:
            await refresh_access_token("1//refresh")

        assert exc_info.value.error_code == "invalid_token_response"


GRANTED_SCOPES = (
    "https://www.googleapis.com/auth/gmail.send "
    "https://www.googleapis.com/auth/gmail.modify"
)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_exchange_authorization_code_success():
    """Test the connect-flow code exchange returns both tokens."""
    mock_response = MagicMock()
    mock_response.status_code = 200
    mock_response.json.return_value = {
        "access_token": "ya29.mock-google-access-token",
        "refresh_token": "1//new-refresh-token",
        "expires_in": 3599,
        "scope": GRANTED_SCOPES,
        "token_type": "Bearer",
    }

    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client = _patched_client(mock_response)
        mock_client_class.return_value = mock_client

        tokens = await exchange_authorization_code("4/auth-code", "http://localhost:5173/gmail/callback")

        assert tokens.access_token == "ya29.mock-google-access-token"
        assert tokens.refresh_token == "1//new-refresh-token"
        assert tokens.expires_in == 3599

        data = mock_client.post.call_args.kwargs["data"]
        assert data["grant_type"] == "authorization_code"
        assert data["code"] == "4/auth-code"
        assert data["redirect_uri"] == "http://localhost:5173/gmail/callback"
        assert data["client_id"] == "test-google-client-id"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_exchange_authorization_code_without_refresh_token():
    """Re-consent can omit the refresh token."""
    mock_response = MagicMock()
    mock_response.status_code = 200
    mock_response.json.return_value = {"access_token": "ya29.token", "scope": GRANTED_SCOPES}

    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client_class.return_value = _patched_client(mock_response)

        tokens = await exchange_authorization_code("4/auth-code", "http://localhost/cb")

        assert tokens.refresh_token is None


@pytest.mark.unit
@pytest.mark.asyncio
async def test_exchange_authorization_code_invalid_grant():
    mock_response = MagicMock()
    mock_response.status_code = 400
    mock_response.content = b'{"error": "invalid_grant"}'
    mock_response.json.return_value = {"error": "invalid_grant", "error_description": "Bad Request"}

    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client_class.return_value = _patched_client(mock_response)

        with pytest.raises(InvalidGrantError) as exc_info:
            await exchange_authorization_code("4/used-code", "http://localhost/cb")

        assert "connect Gmail again" in exc_info.value.message


@pytest.mark.unit
@pytest.mark.asyncio
async def test_exchange_authorization_code_redirect_mismatch():
    mock_response = MagicMock()
    mock_response.status_code = 400
    mock_response.content = b'{"error": "redirect_uri_mismatch"}'
    mock_response.json.return_value = {"error": "redirect_uri_mismatch"}

    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client_class.return_value = _patched_client(mock_response)

        with pytest.raises(TokenRefreshError) as exc_info:
            await exchange_authorization_code("4/auth-code", "http://evil.example/cb")

        assert exc_info.value.status_code == 400
        assert exc_info.value.error_code == "redirect_uri_mismatch"


@pytest.mark.unit
@pytest.mark.asyncio
async def test_exchange_authorization_code_missing_scope():
    mock_response = MagicMock()
    mock_response.status_code = 200
    mock_response.json.return_value = {
        "access_token": "ya29.token",
        "refresh_token": "1//refresh",
        "scope": "https://www.googleapis.com/auth/gmail.send",
    }

    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client_class.return_value = _patched_client(mock_response)

        with pytest.raises(InsufficientScopeError) as exc_info:
            await exchange_authorization_code("4/auth-code", "http://localhost/cb")

        assert exc_info.value.status_code == 403


@pytest.mark.unit
@pytest.mark.asyncio
async def test_exchange_authorization_code_timeout():
    with patch("httpx.AsyncClient") as mock_client_class:
        mock_client_class.return_value = _patched_client(side_effect=httpx.TimeoutException("timeout"))

        with pytest.raises(TokenRefreshError) as exc_info:
            await exchange_authorization_code("4/auth-code", "http://localhost/cb")

        assert exc_info.value.status_code == 504
