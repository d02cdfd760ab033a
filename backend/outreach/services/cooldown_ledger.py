"""Per-recipient send cooldown ledger.

A user may not e-mail the same recruiter address again until the recorded
``blocked_until`` has passed. The ledger is checked before a send and
committed only after the provider accepted the send and the message was
recorded, so a failed send never creates a cooldown.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta

from sqlalchemy import delete
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, select

from outreach.core.config import settings
from outreach.core.timeutils import ensure_utc, utcnow
from outreach.core.tracing import get_tracer, mask_email
from outreach.integrations.notifier import AvailabilityNotifier, NotificationError
from outreach.models.cooldowns import EmailCooldown
from outreach.models.mailbox_accounts import MailboxAccount

logger = logging.getLogger(__name__)
tracer = get_tracer(__name__)

SECONDS_PER_DAY = 24 * 60 * 60


def normalize_email(address: str) -> str:
    return address.strip().lower()


@dataclass(frozen=True)
class Allowed:
    allowed: bool = True


@dataclass(frozen=True)
class Blocked:
    days_remaining: int
    blocked_until: datetime
    allowed: bool = False


CooldownDecision = Allowed | Blocked


@dataclass
class CooldownInfo:
    is_blocked: bool
    blocked_until: datetime | None = None
    days_remaining: int = 0
    email_count: int = 0


@dataclass
class SweepSummary:
    recently_expired_count: int = 0
    notifications_sent: int = 0
    emails_sent: int = 0
    deleted_count: int = 0
    failed_users: list[str] = field(default_factory=list)

    def as_dict(self) -> dict:
        return {
            "recently_expired_count": self.recently_expired_count,
            "notifications_sent": self.notifications_sent,
            "emails_sent": self.emails_sent,
            "deleted_count": self.deleted_count,
        }


def days_remaining(blocked_until: datetime, now: datetime) -> int:
    seconds = (ensure_utc(blocked_until) - ensure_utc(now)).total_seconds()
    return max(0, math.ceil(seconds / SECONDS_PER_DAY))


def _get_record(session: Session, user_id: str, recipient: str) -> EmailCooldown | None:
    statement = select(EmailCooldown).where(
        EmailCooldown.user_id == user_id,
        EmailCooldown.recruiter_email == normalize_email(recipient),
    )
    return session.exec(statement).first()


def check_and_reserve(
    session: Session,
    user_id: str,
    recipient: str,
    now: datetime | None = None,
) -> CooldownDecision:
    """Decide whether ``user_id`` may e-mail ``recipient`` now.

    Nothing is written; a successful send must be followed by ``commit``.
    """
    now = now or utcnow()
    record = _get_record(session, user_id, recipient)

    if record is None or ensure_utc(now) >= ensure_utc(record.blocked_until):
        return Allowed()

    remaining = days_remaining(record.blocked_until, now)
    logger.info(
        "Send blocked by cooldown",
        extra={
            "user_id": user_id,
            "recipient": mask_email(record.recruiter_email),
            "days_remaining": remaining,
        }
    )
    return Blocked(days_remaining=remaining, blocked_until=ensure_utc(record.blocked_until))


def commit(
    session: Session,
    user_id: str,
    recipient: str,
    cooldown_days: int | None = None,
    now: datetime | None = None,
) -> EmailCooldown:
    """Start or extend the cooldown after a successful send."""
    now = now or utcnow()
    duration = timedelta(days=cooldown_days if cooldown_days is not None else settings.EMAIL_COOLDOWN_DAYS)
    blocked_until = now + duration
    recruiter_email = normalize_email(recipient)

    record = _get_record(session, user_id, recruiter_email)
    if record is None:
        record = EmailCooldown(
            user_id=user_id,
            recruiter_email=recruiter_email,
            blocked_until=blocked_until,
            email_count=1,
            created_at=now,
            updated_at=now,
        )
        session.add(record)
        try:
            session.commit()
        except IntegrityError:
            # A concurrent send created the row first; extend it instead
            session.rollback()
            record = _get_record(session, user_id, recruiter_email)
            if record is None:
                raise
            _extend(record, blocked_until, now)
            session.add(record)
            session.commit()
    else:
        _extend(record, blocked_until, now)
        session.add(record)
        session.commit()

    session.refresh(record)
    logger.info(
        "Cooldown committed",
        extra={
            "user_id": user_id,
            "recipient": mask_email(recruiter_email),
            "email_count": record.email_count,
        }
    )
    return record


def _extend(record: EmailCooldown, blocked_until: datetime, now: datetime) -> None:
    record.blocked_until = blocked_until
    record.email_count = (record.email_count or 0) + 1
    record.updated_at = now


def get_cooldown_info(
    session: Session,
    user_id: str,
    recipient: str,
    now: datetime | None = None,
) -> CooldownInfo:
    now = now or utcnow()
    record = _get_record(session, user_id, recipient)
    if record is None:
        return CooldownInfo(is_blocked=False)

    blocked_until = ensure_utc(record.blocked_until)
    is_blocked = ensure_utc(now) < blocked_until
    return CooldownInfo(
        is_blocked=is_blocked,
        blocked_until=blocked_until,
        days_remaining=days_remaining(blocked_until, now) if is_blocked else 0,
        email_count=record.email_count,
    )


async def sweep_expired_cooldowns(
    session: Session,
    notifier: AvailabilityNotifier | None = None,
    now: datetime | None = None,
) -> SweepSummary:
    """Notify users about recently expired cooldowns and purge old records.

    Step 1 groups cooldowns that expired within the notification window by
    user and sends one batched notification per user. Step 2 hard-deletes
    records that expired before the grace window. Notification failures are
    contained per user; step 2 always runs.
    """
    now = now or utcnow()
    notifier = notifier or AvailabilityNotifier()
    summary = SweepSummary()

    with tracer.start_as_current_span("cooldowns.sweep") as span:
        window_start = now - timedelta(hours=settings.COOLDOWN_NOTIFY_WINDOW_HOURS)
        purge_before = now - timedelta(days=settings.COOLDOWN_GRACE_DAYS)

        recently_expired = session.exec(
            select(EmailCooldown)
            .where(
                EmailCooldown.blocked_until < now,
                EmailCooldown.blocked_until >= window_start,
            )
            .order_by(EmailCooldown.user_id, EmailCooldown.blocked_until)
        ).all()
        summary.recently_expired_count = len(recently_expired)

        by_user: dict[str, list[str]] = {}
        for record in recently_expired:
            by_user.setdefault(record.user_id, []).append(record.recruiter_email)

        logger.info(
            "Cooldown sweep started",
            extra={"recently_expired": len(recently_expired), "users": len(by_user)}
        )

        accounts = {}
        if by_user:
            accounts = {
                account.user_id: account
                for account in session.exec(
                    select(MailboxAccount).where(MailboxAccount.user_id.in_(list(by_user)))
                ).all()
            }

        for user_id, recipients in by_user.items():
            try:
                notifier.notify_in_app(session, user_id, recipients)
                summary.notifications_sent += 1
            except Exception as e:
                session.rollback()
                summary.failed_users.append(user_id)
                logger.error(
                    "Failed to create availability notification",
                    extra={"user_id": user_id, "error": str(e)}
                )
                continue

            account = accounts.get(user_id)
            if notifier.email_enabled and account and account.email:
                try:
                    await notifier.notify_by_email(account.email, account.name, recipients)
                    summary.emails_sent += 1
                except NotificationError as e:
                    logger.error(
                        "Failed to send availability e-mail",
                        extra={"user_id": user_id, "error": e.message}
                    )

        result = session.exec(
            delete(EmailCooldown)
            .where(EmailCooldown.blocked_until < purge_before)
            .execution_options(synchronize_session=False)
        )
        session.commit()
        summary.deleted_count = result.rowcount or 0

        span.set_attributes(summary.as_dict())
        logger.info("Cooldown sweep completed", extra=summary.as_dict())

    return summary
