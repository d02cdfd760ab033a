"""Message recorder: ordered, idempotent appends to a conversation thread.

``message_number`` is ``total_messages + 1`` at insert time. The counter is
claimed with a conditional update on the thread row
(``WHERE total_messages = :expected``) and committed in the same transaction
as the message insert, so concurrent appends to one thread never share a
number and the thread counters always add up. A lost race is retried.

The provider message id pre-check is only an optimisation; the unique
constraint on (thread_id, provider_message_id) decides duplicates.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from outreach.core.config import settings
from outreach.core.timeutils import utcnow
from outreach.models.conversations import (
    ConversationMessage,
    ConversationThread,
    MessageStatus,
    SenderType,
)
from outreach.services.thread_store import ThreadNotFoundError, activity_values

logger = logging.getLogger(__name__)


class CounterConflictError(Exception):
    """Raised when the thread counter could not be claimed within the retry budget."""

    def __init__(self, thread_id: uuid.UUID, attempts: int):
        self.message = f"Could not assign a message number in thread {thread_id} after {attempts} attempts"
        self.status_code = 409
        self.error_code = "counter_conflict"
        super().__init__(self.message)


@dataclass(frozen=True)
class Recorded:
    message: ConversationMessage
    duplicate: bool = False


@dataclass(frozen=True)
class Duplicate:
    message: ConversationMessage
    duplicate: bool = True


AppendResult = Recorded | Duplicate


def find_by_provider_id(
    session: Session,
    thread_id: uuid.UUID,
    provider_message_id: str,
) -> ConversationMessage | None:
    statement = select(ConversationMessage).where(
        ConversationMessage.thread_id == thread_id,
        ConversationMessage.provider_message_id == provider_message_id,
    )
    return session.exec(statement).first()


def list_messages(session: Session, thread_id: uuid.UUID) -> list[ConversationMessage]:
    statement = (
        select(ConversationMessage)
        .where(ConversationMessage.thread_id == thread_id)
        .order_by(ConversationMessage.message_number)
    )
    return list(session.exec(statement).all())


def _claim_message_number(
    session: Session,
    thread_id: uuid.UUID,
    sender: SenderType,
    subject: str | None,
    at: datetime,
) -> int | None:
    """Advance the thread counters by one; None if another writer got there first."""
    thread = session.get(ConversationThread, thread_id, populate_existing=True)
    if thread is None:
        raise ThreadNotFoundError(thread_id)

    expected = thread.total_messages or 0
    values = activity_values(sender, subject, at)
    values["total_messages"] = expected + 1
    if sender == SenderType.USER:
        values["user_messages_count"] = ConversationThread.user_messages_count + 1
    else:
        values["recruiter_messages_count"] = ConversationThread.recruiter_messages_count + 1

    result = session.exec(
        update(ConversationThread)
        .where(
            ConversationThread.id == thread_id,
            ConversationThread.total_messages == expected,
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        return None
    return expected + 1


def append_message(
    session: Session,
    thread_id: uuid.UUID,
    sender_type: SenderType | str,
    subject: str,
    body: str | None,
    sent_at: datetime,
    provider_message_id: str | None,
    provider_thread_id: str | None = None,
    status: MessageStatus | str | None = None,
    tracking_token: str | None = None,
) -> AppendResult:
    """Append one physical email to a thread.

    Returns ``Duplicate`` without writing anything when a message with the
    same provider id already exists in the thread.

    Raises:
        ThreadNotFoundError: If the thread does not exist
        CounterConflictError: If the counter stays contended past the retry budget
    """
    sender = SenderType(sender_type)
    if status is None:
        status = MessageStatus.SENT if sender == SenderType.USER else MessageStatus.DELIVERED
    body = body or ""

    if provider_message_id:
        existing = find_by_provider_id(session, thread_id, provider_message_id)
        if existing:
            logger.info(
                "Message already recorded, skipping",
                extra={"thread_id": str(thread_id), "provider_message_id": provider_message_id}
            )
            return Duplicate(existing)

    attempts = settings.MESSAGE_COUNTER_MAX_RETRIES
    for attempt in range(1, attempts + 1):
        message_number = _claim_message_number(session, thread_id, sender, subject, sent_at)
        if message_number is None:
            session.rollback()
            logger.info(
                "Thread counter contended, retrying",
                extra={"thread_id": str(thread_id), "attempt": attempt}
            )
            continue

        message = ConversationMessage(
            thread_id=thread_id,
            sender_type=sender.value,
            subject=subject,
            body_preview=body[:settings.BODY_PREVIEW_LENGTH],
            body_full=body,
            sent_at=sent_at,
            message_number=message_number,
            status=MessageStatus(status).value,
            provider_message_id=provider_message_id,
            provider_thread_id=provider_thread_id,
            tracking_token=tracking_token,
            created_at=utcnow(),
        )
        session.add(message)
        try:
            session.commit()
        except IntegrityError:
            session.rollback()
            if provider_message_id:
                existing = find_by_provider_id(session, thread_id, provider_message_id)
                if existing:
                    logger.info(
                        "Concurrent duplicate resolved by unique constraint",
                        extra={"thread_id": str(thread_id), "provider_message_id": provider_message_id}
                    )
                    return Duplicate(existing)
            logger.warning(
                "Message number collision, retrying",
                extra={"thread_id": str(thread_id), "message_number": message_number}
            )
            continue

        session.refresh(message)
        logger.info(
            "Message recorded",
            extra={
                "thread_id": str(thread_id),
                "sender_type": sender.value,
                "message_number": message_number,
            }
        )
        return Recorded(message)

    raise CounterConflictError(thread_id, attempts)
