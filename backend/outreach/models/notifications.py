"""Database model for in-app user notifications."""

import uuid
from datetime import datetime, timezone
from sqlmodel import Field, SQLModel, Column, JSON, DateTime


class UserNotification(SQLModel, table=True):
    """In-app notification shown in the dashboard bell."""

    __tablename__ = "user_notifications"

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)

    user_id: str = Field(index=True)
    title: str
    message: str
    type: str = Field(default="cooldown_expired", index=True)
    recruiter_emails: list[str] = Field(default_factory=list, sa_column=Column(JSON))
    is_read: bool = Field(default=False)

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), sa_type=DateTime(timezone=True)
    )
