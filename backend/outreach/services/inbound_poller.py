"""Inbound reconciliation poller.

Each run walks every mailbox account that has a refresh token, lists unread
inbox mail from the lookback window and records recruiter replies into the
matching conversation thread. Processed messages are marked read so the
next run skips them; the recorder's provider-id dedup makes a replayed run
harmless when marking read failed.

Failures are contained: one message never aborts its account and one account
never aborts the run. Only a missing OAuth client configuration aborts the
whole run, since no account could succeed.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable

from sqlmodel import Session, select

from outreach.auth.google_oauth import TokenRefreshError, ensure_oauth_configured, refresh_access_token
from outreach.core import db
from outreach.core.config import settings
from outreach.core.timeutils import utcnow
from outreach.core.tracing import get_tracer, mask_email
from outreach.integrations import gmail_service
from outreach.integrations.gmail_service import (
    GmailServiceError,
    extract_message_body,
    get_header_value,
    is_reply_subject,
    parse_email_address,
)
from outreach.models.conversations import ConversationMessage, ConversationThread, SenderType
from outreach.models.mailbox_accounts import MailboxAccount
from outreach.services.delivery_tracker import mark_replied
from outreach.services.message_recorder import Recorded, append_message
from outreach.services.thread_store import find_thread

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)


@dataclass
class PollSummary:
    processed: int = 0
    errors: int = 0
    accounts_checked: int = 0
    skipped: int = 0

    def as_dict(self) -> dict:
        return {
            "processed": self.processed,
            "errors": self.errors,
            "accounts_checked": self.accounts_checked,
            "skipped": self.skipped,
        }


def _internal_date(message: dict[str, Any], fallback: datetime) -> datetime:
    raw = message.get("internalDate")
    try:
        return datetime.fromtimestamp(int(raw) / 1000, tz=timezone.utc)
    except (TypeError, ValueError):
        return fallback


def _thread_has_provider_thread(session: Session, thread: ConversationThread, provider_thread_id: str | None) -> bool:
    if not provider_thread_id:
        return False
    statement = select(ConversationMessage.id).where(
        ConversationMessage.thread_id == thread.id,
        ConversationMessage.provider_thread_id == provider_thread_id,
    )
    return session.exec(statement).first() is not None


def is_reply(
    session: Session,
    thread: ConversationThread,
    subject: str,
    headers: list[dict],
    provider_thread_id: str | None,
    mode: str | None = None,
) -> bool:
    """Decide whether an inbound message answers the user's outreach."""
    mode = mode or settings.REPLY_DETECTION_MODE
    has_reply_headers = bool(
        get_header_value(headers, "In-Reply-To") or get_header_value(headers, "References")
    )

    if mode == "headers_only":
        return has_reply_headers

    looks_like_reply = is_reply_subject(subject) or has_reply_headers
    if mode == "provider_thread":
        return looks_like_reply and _thread_has_provider_thread(session, thread, provider_thread_id)
    return looks_like_reply


async def _process_message(
    session: Session,
    account: MailboxAccount,
    access_token: str,
    message_id: str,
    now: datetime,
) -> bool:
    """Handle one candidate message; True if a reply was recorded."""
    message = await gmail_service.get_message(access_token, message_id)
    headers = (message.get("payload") or {}).get("headers") or []

    from_header = get_header_value(headers, "From")
    subject = get_header_value(headers, "Subject")
    sender = parse_email_address(from_header)
    if not sender or not subject:
        logger.info("Skipping malformed message", extra={"provider_message_id": message_id})
        return False

    if sender == (account.email or "").strip().lower():
        logger.debug("Skipping self-sent message", extra={"provider_message_id": message_id})
        return False

    thread = find_thread(session, account.user_id, sender)
    if thread is None:
        logger.debug(
            "Skipping message from unknown sender",
            extra={"user_id": account.user_id, "sender": mask_email(sender)}
        )
        return False

    provider_thread_id = message.get("threadId")
    if not is_reply(session, thread, subject, headers, provider_thread_id):
        logger.debug(
            "Skipping non-reply message",
            extra={"user_id": account.user_id, "provider_message_id": message_id}
        )
        return False

    body = extract_message_body(message)
    received_at = _internal_date(message, now)

    result = append_message(
        session,
        thread.id,
        SenderType.RECRUITER,
        subject,
        body,
        received_at,
        message_id,
        provider_thread_id=provider_thread_id,
    )

    recorded = isinstance(result, Recorded)
    if recorded:
        mark_replied(session, account.user_id, sender, at=received_at, thread=thread)
        logger.info(
            "Recruiter reply recorded",
            extra={
                "user_id": account.user_id,
                "thread_id": str(thread.id),
                "sender": mask_email(sender),
            }
        )

    await gmail_service.mark_as_read(access_token, message_id)
    return recorded


async def poll_account(
    session: Session,
    account: MailboxAccount,
    summary: PollSummary,
    now: datetime,
) -> None:
    """Poll a single mailbox, updating ``summary`` in place."""
    summary.accounts_checked += 1
    user_id = account.user_id

    try:
        access_token = await refresh_access_token(account.google_refresh_token)
    except TokenRefreshError as e:
        summary.errors += 1
        logger.warning(
            "Token refresh failed, skipping account",
            extra={"user_id": user_id, "error_code": e.error_code}
        )
        return

    account.gmail_token_refreshed_at = now
    session.add(account)
    session.commit()

    after = now - timedelta(hours=settings.POLL_LOOKBACK_HOURS)
    try:
        candidates = await gmail_service.list_unread_messages(access_token, after)
    except GmailServiceError as e:
        summary.errors += 1
        logger.warning(
            "Listing unread messages failed",
            extra={"user_id": user_id, "error_code": e.error_code}
        )
        return

    for stub in candidates:
        message_id = stub.get("id")
        if not message_id:
            summary.skipped += 1
            continue
        try:
            if await _process_message(session, account, access_token, message_id, now):
                summary.processed += 1
            else:
                summary.skipped += 1
        except Exception as e:
            session.rollback()
            summary.errors += 1
            logger.error(
                "Failed to process inbound message",
                extra={"user_id": user_id, "provider_message_id": message_id, "error": str(e)}
            )


async def poll_replies(
    now: datetime | None = None,
    session_factory: Callable[[], Session] | None = None,
) -> PollSummary:
    """Run one reconciliation pass over every connected mailbox.

    Raises:
        ConfigurationError: If the Google OAuth client is not configured
    """
    now = now or utcnow()
    session_factory = session_factory or (lambda: Session(db.engine))

    ensure_oauth_configured()
    summary = PollSummary()

    with tracer.start_as_current_span("poller.poll_replies") as span:
        with session_factory() as session:
            accounts = session.exec(
                select(MailboxAccount).where(MailboxAccount.google_refresh_token.is_not(None))
            ).all()

            logger.info("Reply poll started", extra={"accounts": len(accounts)})

            for account in accounts:
                try:
                    await poll_account(session, account, summary, now)
                except Exception as e:
                    session.rollback()
                    summary.errors += 1
                    logger.error(
                        "Reply poll failed for account",
                        extra={"user_id": account.user_id, "error": str(e)}
                    )

        span.set_attributes(summary.as_dict())
        logger.info("Reply poll completed", extra=summary.as_dict())

    return summary
