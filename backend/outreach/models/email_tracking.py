"""Database model for outbound delivery tracking."""

import uuid
from datetime import datetime, timezone
from enum import Enum
from sqlmodel import Field, SQLModel, Column, JSON, String, DateTime


class TrackingStatus(str, Enum):
    SENT = "sent"
    DELIVERED = "delivered"
    OPENED = "opened"
    CLICKED = "clicked"
    BOUNCED = "bounced"


class EmailTracking(SQLModel, table=True):
    """Lifecycle of one outbound email, keyed by its tracking token.

    The token is embedded in the pixel and click-through URLs of the sent
    body. provider_message_id links the record to the ConversationMessage
    created for the same send and to provider webhooks that only know the
    Gmail id.
    """

    __tablename__ = "email_tracking"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)

    tracking_token: str = Field(index=True, unique=True)
    provider_message_id: str | None = Field(default=None, index=True)

    user_id: str = Field(index=True)
    recipient: str = Field(index=True)
    domain: str | None = None
    subject: str

    status: str = Field(
        default=TrackingStatus.SENT.value, sa_column=Column(String, index=True, nullable=False)
    )

    sent_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), sa_type=DateTime(timezone=True)
    )
    delivered_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    opened_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    clicked_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    bounced_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))
    replied_at: datetime | None = Field(default=None, sa_type=DateTime(timezone=True))

    # Append-only list of {"url": ..., "clicked_at": iso8601}
    click_links: list[dict] = Field(default_factory=list, sa_column=Column(JSON))

    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), sa_type=DateTime(timezone=True)
    )
