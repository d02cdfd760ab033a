"""Google OAuth token calls for connected mailboxes.

Connecting a mailbox exchanges the authorization code returned to the
dashboard for a long-lived refresh token, which is stored on the account.
Every send and every poll cycle then exchanges that refresh token for a
short-lived access token; access tokens are never persisted.
"""

import logging
from dataclasses import dataclass

import httpx

from outreach.core.config import settings
from outreach.core.tracing import get_tracer, safe_span_attributes
from opentelemetry.trace import Status, StatusCode

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)


class TokenRefreshError(Exception):
    """Base exception for token refresh errors."""

    def __init__(self, message: str, status_code: int = 502, error_code: str = "token_refresh_error"):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(self.message)


class InvalidGrantError(TokenRefreshError):
    """Raised when the stored refresh token was revoked or expired."""

    def __init__(self, message: str = "Gmail authorization expired. Please reconnect your Gmail account."):
        super().__init__(
            message=message,
            status_code=401,
            error_code="invalid_grant"
        )


class InsufficientScopeError(TokenRefreshError):
    """Raised when the user did not grant every Gmail scope the app needs."""

    def __init__(self, message: str = "Please reconnect your Gmail account and grant the required permissions"):
        super().__init__(
            message=message,
            status_code=403,
            error_code="insufficient_scope"
        )


class ConfigurationError(TokenRefreshError):
    """Raised when the Google OAuth client is not configured."""

    def __init__(self, message: str = "Google OAuth client is not configured"):
        super().__init__(
            message=message,
            status_code=500,
            error_code="configuration_error"
        )


def _json_or_empty(response: httpx.Response) -> dict:
    if not response.content:
        return {}
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def ensure_oauth_configured() -> None:
    if not settings.GOOGLE_CLIENT_ID or not settings.GOOGLE_CLIENT_SECRET:
        logger.error("Missing Google OAuth client configuration")
        raise ConfigurationError()


async def refresh_access_token(refresh_token: str) -> str:
    """Exchange a stored refresh token for a Google access token.

    Args:
        refresh_token: Refresh token saved when the user connected Gmail

    Returns:
        str: A valid Google access token

    Raises:
        ConfigurationError: If client id/secret are missing
        InvalidGrantError: If Google rejects the refresh token
        TokenRefreshError: For other failures, including timeouts
    """
    with tracer.start_as_current_span("google_oauth.refresh_access_token") as span:
        span.set_attributes(safe_span_attributes(
            refresh_token=refresh_token,
            provider="google"
        ))

        ensure_oauth_configured()

        if not refresh_token:
            span.set_status(Status(StatusCode.ERROR, "Missing refresh token"))
            raise InvalidGrantError("Gmail not connected. Please connect your Gmail account first.")

        payload = {
            "client_id": settings.GOOGLE_CLIENT_ID,
            "client_secret": settings.GOOGLE_CLIENT_SECRET,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    settings.GOOGLE_TOKEN_URL,
                    data=payload,
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                    timeout=settings.OAUTH_HTTP_TIMEOUT_SECONDS
                )

                if response.status_code in (400, 401):
                    error_data = _json_or_empty(response)
                    error = error_data.get("error", "")
                    error_description = error_data.get("error_description", "")

                    if error == "invalid_grant" or response.status_code == 401:
                        logger.warning(
                            "Token refresh rejected: invalid grant",
                            extra={"error_description": error_description}
                        )
                        span.set_status(Status(StatusCode.ERROR, "Invalid grant"))
                        span.set_attribute("error.type", "invalid_grant")
                        raise InvalidGrantError()

                    logger.error(
                        "Token refresh failed",
                        extra={"error": error, "error_description": error_description}
                    )
                    span.set_status(Status(StatusCode.ERROR, f"HTTP {response.status_code}"))
                    raise TokenRefreshError(
                        message=f"Token refresh failed: {error_description or error or 'bad request'}",
                        error_code=error or "token_refresh_error"
                    )

                elif response.status_code >= 400:
                    logger.error(
                        "Token refresh failed",
                        extra={"status_code": response.status_code}
                    )
                    span.set_status(Status(StatusCode.ERROR, f"HTTP {response.status_code}"))
                    span.set_attribute("http.status_code", response.status_code)
                    raise TokenRefreshError(
                        message=f"Token refresh failed with status {response.status_code}"
                    )

                response.raise_for_status()
                token_data = _json_or_empty(response)
                access_token = token_data.get("access_token")

                if not access_token:
                    logger.error("Token refresh response missing access_token field")
                    span.set_status(Status(StatusCode.ERROR, "Missing access token"))
                    raise TokenRefreshError(
                        message="Invalid token response from Google",
                        error_code="invalid_token_response"
                    )

                logger.debug(
                    "Token refresh successful",
                    extra={"expires_in": token_data.get("expires_in")}
                )
                span.set_status(Status(StatusCode.OK))
                if token_data.get("expires_in"):
                    span.set_attribute("expires_in_seconds", token_data.get("expires_in"))

                return access_token

        except httpx.TimeoutException:
            logger.error("Token refresh timeout")
            span.set_status(Status(StatusCode.ERROR, "Timeout"))
            span.set_attribute("error.type", "timeout")
            raise TokenRefreshError(
                message="Google token service timeout. Please try again.",
                status_code=504,
                error_code="timeout"
            )
        except httpx.RequestError as e:
            logger.error("Token refresh network error", extra={"error": str(e)})
            span.set_status(Status(StatusCode.ERROR, "Network error"))
            span.set_attribute("error.type", "network_error")
            raise TokenRefreshError(
                message="Unable to connect to Google token service. Please try again later.",
                status_code=503,
                error_code="network_error"
            )


@dataclass
class GoogleTokens:
    access_token: str
    refresh_token: str | None
    expires_in: int | None = None
    scope: str | None = None


async def exchange_authorization_code(code: str, redirect_uri: str) -> GoogleTokens:
    """Exchange the OAuth authorization code from the connect flow for tokens.

    Google only returns a refresh token on the first consent (or when the
    consent screen is forced), so ``refresh_token`` may be None.

    Raises:
        ConfigurationError: If client id/secret are missing
        InvalidGrantError: If the code is invalid, expired or already used
        InsufficientScopeError: If a required Gmail scope was not granted
        TokenRefreshError: For other failures, including timeouts
    """
    with tracer.start_as_current_span("google_oauth.exchange_authorization_code") as span:
        span.set_attributes(safe_span_attributes(
            redirect_uri=redirect_uri,
            provider="google"
        ))

        ensure_oauth_configured()

        payload = {
            "client_id": settings.GOOGLE_CLIENT_ID,
            "client_secret": settings.GOOGLE_CLIENT_SECRET,
            "code": code,
            "grant_type": "authorization_code",
            "redirect_uri": redirect_uri,
        }

        try:
            async with httpx.AsyncClient() as client:
                response = await client.post(
                    settings.GOOGLE_TOKEN_URL,
                    data=payload,
                    headers={"Content-Type": "application/x-www-form-urlencoded"},
                    timeout=settings.OAUTH_HTTP_TIMEOUT_SECONDS
                )
        except httpx.TimeoutException:
            logger.error("Authorization code exchange timeout")
            span.set_status(Status(StatusCode.ERROR, "Timeout"))
            raise TokenRefreshError(
                message="Google token service timeout. Please try again.",
                status_code=504,
                error_code="timeout"
            )
        except httpx.RequestError as e:
            logger.error("Authorization code exchange network error", extra={"error": str(e)})
            span.set_status(Status(StatusCode.ERROR, "Network error"))
            raise TokenRefreshError(
                message="Unable to connect to Google token service. Please try again later.",
                status_code=503,
                error_code="network_error"
            )

        if response.status_code in (400, 401):
            error_data = _json_or_empty(response)
            error = error_data.get("error", "")
            error_description = error_data.get("error_description", "")
            logger.warning(
                "Authorization code exchange rejected",
                extra={"error": error, "error_description": error_description}
            )
            span.set_status(Status(StatusCode.ERROR, error or f"HTTP {response.status_code}"))

            if error == "invalid_grant":
                raise InvalidGrantError("Authorization code is invalid or expired. Please connect Gmail again.")
            raise TokenRefreshError(
                message=f"Failed to exchange authorization code: {error_description or error or 'bad request'}",
                status_code=400,
                error_code=error or "code_exchange_failed"
            )

        elif response.status_code >= 400:
            logger.error("Authorization code exchange failed", extra={"status_code": response.status_code})
            span.set_status(Status(StatusCode.ERROR, f"HTTP {response.status_code}"))
            raise TokenRefreshError(
                message=f"Authorization code exchange failed with status {response.status_code}"
            )

        token_data = _json_or_empty(response)
        access_token = token_data.get("access_token")
        if not access_token:
            logger.error("Code exchange response missing access_token field")
            span.set_status(Status(StatusCode.ERROR, "Missing access token"))
            raise TokenRefreshError(
                message="Invalid token response from Google",
                error_code="invalid_token_response"
            )

        granted = set((token_data.get("scope") or "").split())
        missing = [scope for scope in settings.GMAIL_SCOPES_LIST if scope not in granted]
        if granted and missing:
            logger.warning("Gmail connect missing scopes", extra={"missing_scopes": missing})
            span.set_status(Status(StatusCode.ERROR, "Insufficient scope"))
            raise InsufficientScopeError()

        span.set_attribute("has_refresh_token", bool(token_data.get("refresh_token")))
        span.set_status(Status(StatusCode.OK))
        return GoogleTokens(
            access_token=access_token,
            refresh_token=token_data.get("refresh_token"),
            expires_in=token_data.get("expires_in"),
            scope=token_data.get("scope"),
        )
