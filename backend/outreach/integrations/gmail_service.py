"""Gmail API service layer.

Functions for sending outbound mail, listing and fetching candidate replies,
marking processed messages as read, and reading the connected address.
All calls use a short-lived access token from ``outreach.auth.google_oauth``
and a bounded timeout; failures surface as ``GmailServiceError`` subclasses
so a caller can decide whether one failure aborts a request or only one item
of a batch.
"""

import base64
import binascii
import logging
import re
from datetime import datetime
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import parseaddr
from typing import Any
import httpx

from outreach.core.config import settings
from outreach.core.tracing import get_tracer, safe_span_attributes
from opentelemetry.trace import Status, StatusCode

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

REPLY_PREFIX_RE = re.compile(r"^\s*re\s*:", re.IGNORECASE)


class GmailServiceError(Exception):
    """Base exception for Gmail service errors."""

    def __init__(self, message: str, status_code: int = 502, error_code: str = "gmail_service_error"):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(self.message)


class MessageNotFoundError(GmailServiceError):
    """Raised when a message doesn't exist in the mailbox."""

    def __init__(self, message: str = "Message not found"):
        super().__init__(
            message=message,
            status_code=404,
            error_code="message_not_found"
        )


class InvalidMessageError(GmailServiceError):
    """Raised when message data is invalid or missing required fields."""

    def __init__(self, message: str = "Invalid message data"):
        super().__init__(
            message=message,
            status_code=400,
            error_code="invalid_message"
        )


class GmailUnauthorizedError(GmailServiceError):
    """Raised when Gmail rejects the access token."""

    def __init__(self, message: str = "Gmail authorization expired. Please reconnect your Gmail account."):
        super().__init__(
            message=message,
            status_code=401,
            error_code="gmail_unauthorized"
        )


class GmailTimeoutError(GmailServiceError):
    """Raised when a Gmail call exceeds its timeout."""

    def __init__(self, message: str = "Gmail API request timeout. Please try again."):
        super().__init__(
            message=message,
            status_code=504,
            error_code="gmail_timeout"
        )


def get_header_value(headers: list[dict], name: str) -> str | None:
    """Extract header value from Gmail message headers (case-insensitive)."""
    for header in headers:
        if header.get("name", "").lower() == name.lower():
            return header.get("value")
    return None


def parse_email_address(value: str | None) -> str | None:
    """Return the lower-cased address of ``Name <addr>`` or a bare address."""
    if not value:
        return None
    _, address = parseaddr(value)
    address = (address or "").strip().lower()
    if "@" not in address:
        return None
    return address


def is_reply_subject(subject: str | None) -> bool:
    return bool(subject and REPLY_PREFIX_RE.match(subject))


def _json_or_empty(response: httpx.Response) -> dict[str, Any]:
    """Decode a JSON body; proxies in front of Gmail can answer with HTML."""
    if not response.content:
        return {}
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _decode_part_data(data: str) -> str:
    padded = data + "=" * (-len(data) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8", errors="replace")
    except (binascii.Error, ValueError) as e:
        raise InvalidMessageError(f"Unparseable message body: {e}") from e


def extract_message_body(message: dict[str, Any]) -> str:
    """Return the plain-text body, else the HTML body, else the snippet.

    Multipart payloads are walked depth-first and parts of the same type are
    concatenated in order.
    """
    payload = message.get("payload") or {}
    text_parts: list[str] = []
    html_parts: list[str] = []

    def walk(part: dict[str, Any]) -> None:
        data = (part.get("body") or {}).get("data")
        if data:
            mime_type = part.get("mimeType", "")
            if mime_type == "text/plain":
                text_parts.append(_decode_part_data(data))
            elif mime_type == "text/html":
                html_parts.append(_decode_part_data(data))
        for child in part.get("parts") or []:
            walk(child)

    walk(payload)

    return "".join(text_parts) or "".join(html_parts) or message.get("snippet", "")


def _build_outbound_mime(
    to_address: str,
    subject: str,
    html_body: str,
    from_address: str = "me",
    in_reply_to: str | None = None,
    references: str | None = None,
) -> str:
    """Build a base64url-encoded HTML MIME message for ``messages.send``."""
    message = MIMEMultipart("alternative")
    message["To"] = to_address
    message["From"] = from_address
    message["Subject"] = subject

    if in_reply_to:
        message["In-Reply-To"] = in_reply_to
    if references:
        message["References"] = references

    message.attach(MIMEText(html_body, "html", "utf-8"))

    raw_message = message.as_string()
    return base64.urlsafe_b64encode(raw_message.encode("utf-8")).decode("utf-8")


async def _gmail_request(
    method: str,
    path: str,
    user_token: str,
    *,
    span,
    params: dict[str, Any] | None = None,
    json: dict[str, Any] | None = None,
    not_found_message: str | None = None,
) -> dict[str, Any]:
    """Perform one Gmail API call and map HTTP failures to service errors."""
    url = f"{settings.GMAIL_API_BASE_URL}{path}"

    try:
        async with httpx.AsyncClient() as client:
            response = await client.request(
                method,
                url,
                headers={
                    "Authorization": f"Bearer {user_token}",
                    "Accept": "application/json"
                },
                params=params,
                json=json,
                timeout=settings.GMAIL_HTTP_TIMEOUT_SECONDS
            )
    except httpx.TimeoutException:
        logger.error("Gmail API timeout", extra={"path": path})
        span.set_status(Status(StatusCode.ERROR, "Timeout"))
        raise GmailTimeoutError()
    except httpx.RequestError as e:
        logger.error("Gmail API network error", extra={"path": path, "error": str(e)})
        span.set_status(Status(StatusCode.ERROR, "Network error"))
        raise GmailServiceError(
            message="Unable to connect to Gmail API. Please try again later.",
            status_code=503,
            error_code="gmail_unavailable"
        )

    if response.status_code == 404 and not_found_message:
        span.set_status(Status(StatusCode.ERROR, "Not found"))
        raise MessageNotFoundError(not_found_message)

    elif response.status_code == 401:
        logger.warning("Gmail API returned 401", extra={"path": path})
        span.set_status(Status(StatusCode.ERROR, "Unauthorized"))
        raise GmailUnauthorizedError()

    elif response.status_code == 429:
        logger.warning("Gmail API rate limit exceeded", extra={"path": path})
        span.set_status(Status(StatusCode.ERROR, "Rate limited"))
        raise GmailServiceError(
            message="Gmail API rate limit exceeded. Please try again later.",
            status_code=429,
            error_code="gmail_rate_limited"
        )

    elif response.status_code >= 400:
        error = _json_or_empty(response).get("error")
        error_message = (error.get("message") if isinstance(error, dict) else None) or "Unknown error"
        logger.error(
            "Gmail API error",
            extra={
                "path": path,
                "status_code": response.status_code,
                "error": error_message
            }
        )
        span.set_status(Status(StatusCode.ERROR, f"HTTP {response.status_code}"))
        raise GmailServiceError(
            message=f"Gmail API error: {error_message}",
            status_code=502 if response.status_code >= 500 else response.status_code
        )

    response.raise_for_status()
    if not response.content:
        span.set_status(Status(StatusCode.OK))
        return {}

    try:
        data = response.json()
    except ValueError:
        logger.error("Gmail API returned a non-JSON body", extra={"path": path})
        span.set_status(Status(StatusCode.ERROR, "Invalid response"))
        raise GmailServiceError(
            message="Invalid response from Gmail API",
            status_code=502,
            error_code="invalid_response"
        )

    span.set_status(Status(StatusCode.OK))
    return data


async def send_message(
    user_token: str,
    to_address: str,
    subject: str,
    html_body: str,
    thread_id: str | None = None,
) -> dict[str, Any]:
    """Send an HTML email from the connected mailbox.

    Returns:
        Gmail message resource, e.g. ``{"id": "18c...", "threadId": "18c...",
        "labelIds": ["SENT"]}``

    Raises:
        GmailServiceError: For API failures (including timeouts)
    """
    with tracer.start_as_current_span("gmail.send_message") as span:
        span.set_attributes(safe_span_attributes(
            recipient=to_address,
            body=html_body,
            operation="send"
        ))

        payload: dict[str, Any] = {"raw": _build_outbound_mime(to_address, subject, html_body)}
        if thread_id:
            payload["threadId"] = thread_id

        result = await _gmail_request("POST", "/messages/send", user_token, span=span, json=payload)

        if not result.get("id"):
            span.set_status(Status(StatusCode.ERROR, "Missing message id"))
            raise GmailServiceError(
                message="Gmail accepted the send but returned no message id",
                error_code="invalid_send_response"
            )

        logger.info(
            "Gmail message sent",
            extra={"message_id": result.get("id"), "thread_id": result.get("threadId")}
        )
        span.set_attribute("message_id", result["id"])
        return result


async def list_unread_messages(
    user_token: str,
    after: datetime,
    max_results: int | None = None,
) -> list[dict[str, Any]]:
    """List unread inbox message stubs (``{"id", "threadId"}``) received after ``after``."""
    with tracer.start_as_current_span("gmail.list_unread_messages") as span:
        query = f"is:inbox is:unread after:{int(after.timestamp())}"
        max_results = max_results or settings.POLL_MAX_RESULTS
        span.set_attributes(safe_span_attributes(query=query, max_results=max_results))

        result = await _gmail_request(
            "GET",
            "/messages",
            user_token,
            span=span,
            params={"q": query, "maxResults": max_results},
        )

        messages = result.get("messages") or []
        span.set_attribute("message_count", len(messages))
        return messages


async def get_message(user_token: str, message_id: str) -> dict[str, Any]:
    """Fetch a full message resource (headers, parts, snippet, internalDate)."""
    with tracer.start_as_current_span("gmail.get_message") as span:
        span.set_attributes(safe_span_attributes(provider_message_id=message_id))

        return await _gmail_request(
            "GET",
            f"/messages/{message_id}",
            user_token,
            span=span,
            params={"format": "full"},
            not_found_message=f"Message {message_id} not found",
        )


async def mark_as_read(user_token: str, message_id: str) -> None:
    """Remove the UNREAD label so the next poll cycle skips the message."""
    with tracer.start_as_current_span("gmail.mark_as_read") as span:
        span.set_attributes(safe_span_attributes(provider_message_id=message_id))

        await _gmail_request(
            "POST",
            f"/messages/{message_id}/modify",
            user_token,
            span=span,
            json={"removeLabelIds": ["UNREAD"]},
            not_found_message=f"Message {message_id} not found",
        )


async def get_profile(user_token: str) -> dict[str, Any]:
    """Fetch the mailbox profile; ``emailAddress`` is the connected address."""
    with tracer.start_as_current_span("gmail.get_profile") as span:
        profile = await _gmail_request("GET", "/profile", user_token, span=span)

        if not profile.get("emailAddress"):
            span.set_status(Status(StatusCode.ERROR, "Missing email address"))
            raise GmailServiceError(
                message="Gmail profile response did not include an email address",
                status_code=502,
                error_code="invalid_profile_response"
            )
        return profile
