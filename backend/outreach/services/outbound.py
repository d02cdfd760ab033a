"""Outbound send: policy checks, tracking, provider send and bookkeeping.

The order matters. Policy checks (daily limit, cooldown) run before any
provider call; the cooldown is committed only after Gmail accepted the
message and the message was recorded, so a failed send leaves the user free
to retry immediately.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from opentelemetry.trace import Status, StatusCode
from pydantic import BaseModel, EmailStr, Field, field_validator
from sqlmodel import Session

from outreach.auth.google_oauth import TokenRefreshError, refresh_access_token
from outreach.core.config import settings
from outreach.core.timeutils import utcnow
from outreach.core.tracing import get_tracer, mask_email, safe_span_attributes
from outreach.integrations import gmail_service
from outreach.integrations.gmail_service import GmailServiceError
from outreach.models.conversations import SenderType
from outreach.models.email_tracking import EmailTracking, TrackingStatus
from outreach.models.mailbox_accounts import MailboxAccount
from outreach.services import cooldown_ledger
from outreach.services.cooldown_ledger import Blocked, normalize_email
from outreach.services.message_recorder import append_message
from outreach.services.thread_store import get_or_create_thread
from outreach.services.tracking_links import generate_tracking_token, inject_tracking

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)


class OutboundError(Exception):
    """Base exception for rejected or failed sends."""

    def __init__(self, message: str, status_code: int = 400, error_code: str = "outbound_error"):
        self.message = message
        self.status_code = status_code
        self.error_code = error_code
        super().__init__(self.message)


class CooldownActiveError(OutboundError):
    """Raised when the recipient was e-mailed within the cooldown period."""

    def __init__(self, days_remaining: int, blocked_until: datetime):
        self.days_remaining = days_remaining
        self.blocked_until = blocked_until
        super().__init__(
            message=f"You already contacted this recruiter. Try again in {days_remaining} day(s).",
            status_code=429,
            error_code="cooldown_active"
        )


class DailyLimitExceededError(OutboundError):
    """Raised when the account reached its tier's daily send limit."""

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(
            message=f"Daily limit of {limit} emails reached. Upgrade your plan or try again tomorrow.",
            status_code=429,
            error_code="daily_limit_exceeded"
        )


class GmailNotConnectedError(OutboundError):
    def __init__(self):
        super().__init__(
            message="Gmail not connected. Please connect your Gmail account first.",
            status_code=400,
            error_code="gmail_not_connected"
        )


class ProviderError(OutboundError):
    """Raised when token refresh or the Gmail send failed; nothing was recorded."""

    def __init__(self, message: str, status_code: int = 502, error_code: str = "provider_error"):
        super().__init__(message=message, status_code=status_code, error_code=error_code)


class OutboundRequest(BaseModel):
    recipient: EmailStr
    subject: str = Field(min_length=1, max_length=998)
    body: str = Field(min_length=1)
    recruiter_name: str | None = None
    company_name: str | None = None

    @field_validator("subject", "body")
    @classmethod
    def not_blank(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("must not be blank")
        return v


@dataclass
class SendResult:
    tracking_token: str
    provider_message_id: str
    provider_thread_id: str | None
    thread_id: uuid.UUID
    message_number: int


def _check_daily_limit(account: MailboxAccount, now: datetime) -> None:
    if account.last_sent_date != now.date():
        account.daily_emails_sent = 0

    limit = settings.daily_limit_for(account.subscription_tier)
    if account.daily_emails_sent >= limit:
        logger.info(
            "Send blocked by daily limit",
            extra={"user_id": account.user_id, "tier": account.subscription_tier, "limit": limit}
        )
        raise DailyLimitExceededError(limit)


async def send_outbound(
    session: Session,
    account: MailboxAccount,
    request: OutboundRequest,
    now: datetime | None = None,
) -> SendResult:
    """Send one tracked outreach e-mail on behalf of ``account``.

    Raises:
        DailyLimitExceededError: If the tier's daily limit is reached
        CooldownActiveError: If the recipient is still in cooldown
        GmailNotConnectedError: If the account has no refresh token
        ProviderError: If token refresh or the Gmail send failed
    """
    now = now or utcnow()
    recipient = normalize_email(str(request.recipient))

    with tracer.start_as_current_span("outreach.send") as span:
        span.set_attributes(safe_span_attributes(
            user_id=account.user_id,
            recipient=recipient,
            operation="send"
        ))

        _check_daily_limit(account, now)

        decision = cooldown_ledger.check_and_reserve(session, account.user_id, recipient, now=now)
        if isinstance(decision, Blocked):
            span.set_status(Status(StatusCode.ERROR, "Cooldown active"))
            raise CooldownActiveError(decision.days_remaining, decision.blocked_until)

        if not account.google_refresh_token:
            raise GmailNotConnectedError()

        token = generate_tracking_token()
        html_body = inject_tracking(request.body, token)

        try:
            access_token = await refresh_access_token(account.google_refresh_token)
            sent = await gmail_service.send_message(access_token, recipient, request.subject, html_body)
        except (TokenRefreshError, GmailServiceError) as e:
            logger.error(
                "Outbound send failed",
                extra={
                    "user_id": account.user_id,
                    "recipient": mask_email(recipient),
                    "error_code": e.error_code,
                }
            )
            span.set_status(Status(StatusCode.ERROR, e.error_code))
            status_code = e.status_code if e.status_code in (401, 429, 503, 504) else 502
            raise ProviderError(e.message, status_code=status_code, error_code=e.error_code) from e

        provider_message_id = sent["id"]
        provider_thread_id = sent.get("threadId")

        tracking = EmailTracking(
            tracking_token=token,
            provider_message_id=provider_message_id,
            user_id=account.user_id,
            recipient=recipient,
            domain=recipient.split("@", 1)[1],
            subject=request.subject,
            status=TrackingStatus.SENT.value,
            sent_at=now,
            updated_at=now,
        )
        session.add(tracking)
        session.commit()

        thread = get_or_create_thread(
            session,
            account.user_id,
            recipient,
            recruiter_name=request.recruiter_name,
            company_name=request.company_name,
            subject=request.subject,
            now=now,
        )
        thread_id = thread.id
        result = append_message(
            session,
            thread_id,
            SenderType.USER,
            request.subject,
            request.body,
            now,
            provider_message_id,
            provider_thread_id=provider_thread_id,
            tracking_token=token,
        )

        cooldown_ledger.commit(session, account.user_id, recipient, now=now)

        if account.last_sent_date != now.date():
            account.daily_emails_sent = 0
        account.daily_emails_sent = (account.daily_emails_sent or 0) + 1
        account.total_emails_sent = (account.total_emails_sent or 0) + 1
        account.last_sent_date = now.date()
        account.updated_at = now
        session.add(account)
        session.commit()

        span.set_attribute("message_id", provider_message_id)
        span.set_status(Status(StatusCode.OK))
        logger.info(
            "Outreach e-mail sent",
            extra={
                "user_id": account.user_id,
                "recipient": mask_email(recipient),
                "thread_id": str(thread_id),
                "message_number": result.message.message_number,
            }
        )

        return SendResult(
            tracking_token=token,
            provider_message_id=provider_message_id,
            provider_thread_id=provider_thread_id,
            thread_id=thread_id,
            message_number=result.message.message_number,
        )
