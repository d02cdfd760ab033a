"""Database models for recruiter conversation threads and their messages."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from sqlmodel import Field, SQLModel, Column, String, DateTime, UniqueConstraint


class SenderType(str, Enum):
    USER = "user"
    RECRUITER = "recruiter"


class ThreadStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    CLOSED = "closed"


class MessageStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    BOUNCED = "bounced"
    REPLIED = "replied"


class ConversationThread(SQLModel, table=True):
    """One conversation between a user and a recruiter email address.

    Counters are only changed through the message recorder, which keeps
    total_messages == user_messages_count + recruiter_messages_count and
    uses total_messages as the compare-and-swap guard for message numbers.
    """

    __tablename__ = "conversation_threads"
    __table_args__ = (
        UniqueConstraint("user_id", "recruiter_email", name="uq_thread_user_recruiter"),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)

    user_id: str = Field(index=True)
    recruiter_email: str = Field(index=True)
    recruiter_name: str | None = None
    company_name: str | None = None

    subject_line: str | None = None
    status: str = Field(
        default=ThreadStatus.ACTIVE.value, sa_column=Column(String, index=True, nullable=False)
    )

    first_contact_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    last_activity_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    last_user_message_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    last_recruiter_message_at: datetime | None = Field(
        default=None, sa_type=DateTime(timezone=True)
    )

    total_messages: int = Field(default=0)
    user_messages_count: int = Field(default=0)
    recruiter_messages_count: int = Field(default=0)

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), sa_type=DateTime(timezone=True)
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), sa_type=DateTime(timezone=True)
    )


class ConversationMessage(SQLModel, table=True):
    """A single physical email inside a thread, outbound or inbound.

    provider_message_id is the Gmail message id and the idempotency key for
    inbound polling; the unique constraint on (thread_id,
    provider_message_id) is the authoritative duplicate guard.
    """

    __tablename__ = "conversation_messages"
    __table_args__ = (
        UniqueConstraint("thread_id", "provider_message_id", name="uq_message_provider_id"),
        UniqueConstraint("thread_id", "message_number", name="uq_message_number"),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)
    thread_id: uuid.UUID = Field(foreign_key="conversation_threads.id", index=True)

    sender_type: str = Field(sa_column=Column(String, nullable=False))
    subject: str
    body_preview: str | None = None
    body_full: str | None = None

    sent_at: datetime = Field(sa_type=DateTime(timezone=True))
    message_number: int

    status: str = Field(
        default=MessageStatus.SENT.value, sa_column=Column(String, index=True, nullable=False)
    )
    opened_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    clicked_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    replied_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))

    provider_message_id: str | None = Field(default=None, index=True)
    provider_thread_id: str | None = None
    tracking_token: str | None = Field(default=None, index=True)

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), sa_type=DateTime(timezone=True)
    )
