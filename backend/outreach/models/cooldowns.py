"""Database model for the per-recipient send cooldown ledger."""

import uuid
from datetime import datetime, timezone
from sqlmodel import Field, SQLModel, DateTime, UniqueConstraint


class EmailCooldown(SQLModel, table=True):
    """Block-until timestamp for one (user, recruiter email) pair.

    recruiter_email is always stored lower-cased. email_count only grows:
    it counts every allowed send to the recipient since the record was
    created.
    """

    __tablename__ = "email_cooldowns"
    __table_args__ = (
        UniqueConstraint("user_id", "recruiter_email", name="uq_cooldown_user_recipient"),
    )

    id: uuid.UUID = Field(default_factory=uuid.uuid4, primary_key=True)

    user_id: str = Field(index=True)
    recruiter_email: str = Field(index=True)

    blocked_until: datetime = Field(sa_type=DateTime(timezone=True), index=True)
    email_count: int = Field(default=1)

    created_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), sa_type=DateTime(timezone=True)
    )
    updated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), sa_type=DateTime(timezone=True)
    )
