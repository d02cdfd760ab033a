"""Database model for users with a connected Gmail mailbox."""

import uuid
from datetime import date, datetime, timezone
from enum import Enum
from sqlmodel import Field, SQLModel, Column, String, DateTime


class SubscriptionTier(str, Enum):
    FREE = "FREE"
    PRO = "PRO"
    PREMIUM = "PREMIUM"


class MailboxAccount(SQLModel, table=True):
    """A user's connected Gmail mailbox and send counters.

    The refresh token is written by the Gmail connect flow
    (``services.mailbox_connection``) and used both for outbound sends and
    for reply polling.
    Accounts without a refresh token are skipped by the poller.
    """

    __tablename__ = "mailbox_accounts"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)

    user_id: str = Field(index=True, unique=True)
    email: str
    name: str | None = None

    google_refresh_token: str | None = None
    gmail_token_refreshed_at: datetime | None = Field(
        default=None, sa_type=DateTime(timezone=True)
    )

    subscription_tier: str = Field(
        default=SubscriptionTier.FREE.value, sa_column=Column(String, nullable=False)
    )

    # Daily counter resets when last_sent_date is not today
    daily_emails_sent: int = Field(default=0)
    last_sent_date: date | None = None
    total_emails_sent: int = Field(default=0)

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), sa_type=DateTime(timezone=True)
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), sa_type=DateTime(timezone=True)
    )
