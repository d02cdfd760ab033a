"""Conversation thread store: one thread per (user, recruiter email)."""

import logging
import uuid
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from outreach.core.timeutils import utcnow
from outreach.core.tracing import mask_email
from outreach.models.conversations import ConversationThread, SenderType, ThreadStatus
from outreach.services.cooldown_ledger import normalize_email

logger = logging.getLogger(__name__)


class ThreadNotFoundError(Exception):
    """Raised when a thread id does not exist."""

    def __init__(self, thread_id: uuid.UUID | str):
        self.message = f"Conversation thread {thread_id} not found"
        self.status_code = 404
        self.error_code = "thread_not_found"
        super().__init__(self.message)


def find_thread(session: Session, user_id: str, recruiter_email: str) -> ConversationThread | None:
    statement = select(ConversationThread).where(
        ConversationThread.user_id == user_id,
        ConversationThread.recruiter_email == normalize_email(recruiter_email),
    )
    return session.exec(statement).first()


def get_or_create_thread(
    session: Session,
    user_id: str,
    recruiter_email: str,
    *,
    recruiter_name: str | None = None,
    company_name: str | None = None,
    subject: str | None = None,
    now: datetime | None = None,
) -> ConversationThread:
    """Return the thread for the pair, creating an empty active one if absent.

    Creation behaves as an upsert: if a concurrent request inserts the same
    (user_id, recruiter_email) first, the unique constraint fires, the
    insert is rolled back and the winner's row is returned.
    """
    existing = find_thread(session, user_id, recruiter_email)
    if existing:
        return existing

    now = now or utcnow()
    thread = ConversationThread(
        user_id=user_id,
        recruiter_email=normalize_email(recruiter_email),
        recruiter_name=recruiter_name,
        company_name=company_name,
        subject_line=subject,
        status=ThreadStatus.ACTIVE.value,
        first_contact_at=now,
        last_activity_at=now,
        total_messages=0,
        user_messages_count=0,
        recruiter_messages_count=0,
        created_at=now,
        updated_at=now,
    )
    session.add(thread)
    try:
        session.commit()
    except IntegrityError:
        session.rollback()
        winner = find_thread(session, user_id, recruiter_email)
        if winner is None:
            raise
        logger.info(
            "Thread creation raced; using existing thread",
            extra={"user_id": user_id, "recruiter": mask_email(recruiter_email)}
        )
        return winner

    session.refresh(thread)
    logger.info(
        "Conversation thread created",
        extra={"user_id": user_id, "thread_id": str(thread.id), "recruiter": mask_email(recruiter_email)}
    )
    return thread


def activity_values(direction: SenderType | str, subject: str | None, at: datetime) -> dict:
    """Column values for a new message in ``direction``; the subject is last-write-wins."""
    values = {"last_activity_at": at, "updated_at": at}
    if SenderType(direction) == SenderType.USER:
        values["last_user_message_at"] = at
    else:
        values["last_recruiter_message_at"] = at
    if subject:
        values["subject_line"] = subject
    return values


def record_activity(
    session: Session,
    thread: ConversationThread,
    direction: SenderType | str,
    subject: str | None,
    at: datetime | None = None,
) -> ConversationThread:
    """Stamp activity on ``thread`` outside of a message append.

    ``append_message`` applies the same values inside its counter update.
    """
    for field, value in activity_values(direction, subject, at or utcnow()).items():
        setattr(thread, field, value)
    session.add(thread)
    session.commit()
    session.refresh(thread)
    return thread


def set_thread_status(session: Session, thread_id: uuid.UUID, status: ThreadStatus | str) -> ConversationThread:
    thread = session.get(ConversationThread, thread_id)
    if thread is None:
        raise ThreadNotFoundError(thread_id)
    thread.status = ThreadStatus(status).value
    thread.updated_at = utcnow()
    session.add(thread)
    session.commit()
    session.refresh(thread)
    return thread
