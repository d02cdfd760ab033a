"""Delivery event tracker for outbound mail.

Each ``EmailTracking`` record follows a forward-only status machine::

    sent -> delivered -> opened -> clicked
              (any) -> bounced   (terminal)

Events that would move a record backwards still record their own facts
(first open time, click list) but leave the status alone, so a webhook that
arrives late can never overwrite a more informative state. ``replied`` is not
part of this machine; it is set by the inbound reply path via
``mark_replied``.

Every accepted event is mirrored onto the ConversationMessage created for the
same send, so thread views need no join against tracking data.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, ValidationError
from sqlmodel import Session, or_, select

from outreach.core.timeutils import ensure_utc, utcnow
from outreach.models.conversations import ConversationMessage, ConversationThread, MessageStatus, SenderType
from outreach.models.email_tracking import EmailTracking, TrackingStatus

logger = logging.getLogger(__name__)


class TrackingEvent(str, Enum):
    DELIVERED = "delivered"
    OPEN = "open"
    CLICK = "click"
    BOUNCE = "bounce"


EVENT_STATUS = {
    TrackingEvent.DELIVERED: TrackingStatus.DELIVERED,
    TrackingEvent.OPEN: TrackingStatus.OPENED,
    TrackingEvent.CLICK: TrackingStatus.CLICKED,
    TrackingEvent.BOUNCE: TrackingStatus.BOUNCED,
}

STATUS_RANK = {
    TrackingStatus.SENT.value: 0,
    TrackingStatus.DELIVERED.value: 1,
    TrackingStatus.OPENED.value: 2,
    TrackingStatus.CLICKED.value: 3,
}

# Provider webhook type -> internal event; None means acknowledged without a transition
WEBHOOK_EVENTS: dict[str, TrackingEvent | None] = {
    "email.sent": TrackingEvent.DELIVERED,
    "email.delivered": TrackingEvent.DELIVERED,
    "email.delivery_delayed": None,
    "email.opened": TrackingEvent.OPEN,
    "email.clicked": TrackingEvent.CLICK,
    "email.bounced": TrackingEvent.BOUNCE,
    "email.complained": TrackingEvent.BOUNCE,
}


class WebhookClick(BaseModel):
    link: str | None = None


class WebhookData(BaseModel):
    tracking_id: str | None = None
    email_id: str | None = None
    to: str | list[str] | None = None
    subject: str | None = None
    click: WebhookClick | None = None

    @property
    def correlation_id(self) -> str | None:
        return self.tracking_id or self.email_id


class WebhookPayload(BaseModel):
    type: str
    created_at: datetime | None = None
    data: WebhookData = Field(default_factory=WebhookData)


@dataclass
class EventOutcome:
    """Result of applying one event; ``record`` is None when nothing matched."""
    record: EmailTracking | None
    status_changed: bool = False
    ignored_reason: str | None = None


def is_forward(current: str, new: TrackingStatus | str) -> bool:
    """True if moving from ``current`` to ``new`` is allowed by the status machine."""
    new = TrackingStatus(new).value
    if current == TrackingStatus.BOUNCED.value:
        return False
    if new == TrackingStatus.BOUNCED.value:
        return True
    return STATUS_RANK.get(new, 0) > STATUS_RANK.get(current, 0)


def _message_is_forward(current: str, new: TrackingStatus | str) -> bool:
    # replied is the most informative message state; only a bounce replaces it
    if current == MessageStatus.REPLIED.value:
        return TrackingStatus(new) == TrackingStatus.BOUNCED
    return is_forward(current, new)


def find_tracking(session: Session, key: str) -> EmailTracking | None:
    """Look a record up by tracking token, falling back to the provider message id."""
    record = session.exec(select(EmailTracking).where(EmailTracking.tracking_token == key)).first()
    if record is None:
        record = session.exec(
            select(EmailTracking).where(EmailTracking.provider_message_id == key)
        ).first()
    return record


def _correlated_message(session: Session, record: EmailTracking) -> ConversationMessage | None:
    conditions = [ConversationMessage.tracking_token == record.tracking_token]
    if record.provider_message_id:
        conditions.append(ConversationMessage.provider_message_id == record.provider_message_id)
    statement = select(ConversationMessage).where(
        ConversationMessage.sender_type == SenderType.USER.value,
        or_(*conditions),
    )
    return session.exec(statement).first()


def _propagate_to_message(
    session: Session,
    record: EmailTracking,
    event: TrackingEvent,
    at: datetime,
) -> None:
    message = _correlated_message(session, record)
    if message is None:
        return

    new_status = EVENT_STATUS[event]
    if _message_is_forward(message.status, new_status):
        message.status = MessageStatus(new_status.value).value
    if event == TrackingEvent.OPEN and message.opened_at is None:
        message.opened_at = record.opened_at or at
    if event == TrackingEvent.CLICK and message.clicked_at is None:
        message.clicked_at = record.clicked_at or at
    session.add(message)


def apply_event(
    session: Session,
    key: str,
    event: TrackingEvent | str,
    at: datetime | None = None,
    url: str | None = None,
) -> EventOutcome:
    """Apply one tracking event to the record identified by ``key`` and commit."""
    event = TrackingEvent(event)
    at = at or utcnow()

    record = find_tracking(session, key)
    if record is None:
        logger.info("Tracking event for unknown id", extra={"tracking_id": key, "event": event.value})
        return EventOutcome(record=None, ignored_reason="unknown_tracking_id")

    if event == TrackingEvent.DELIVERED and record.delivered_at is None:
        record.delivered_at = at
    elif event == TrackingEvent.OPEN and record.opened_at is None:
        # first open wins
        record.opened_at = at
    elif event == TrackingEvent.CLICK:
        record.click_links = [
            *(record.click_links or []),
            {"url": url or "", "clicked_at": ensure_utc(at).isoformat()},
        ]
        if record.clicked_at is None:
            record.clicked_at = at
    elif event == TrackingEvent.BOUNCE and record.bounced_at is None:
        record.bounced_at = at

    new_status = EVENT_STATUS[event]
    status_changed = is_forward(record.status, new_status)
    if status_changed:
        record.status = new_status.value
    else:
        logger.debug(
            "Status transition not forward, keeping current",
            extra={"tracking_id": record.tracking_token, "current": record.status, "event": event.value}
        )

    record.updated_at = utcnow()
    session.add(record)
    _propagate_to_message(session, record, event, at)
    session.commit()
    session.refresh(record)

    logger.info(
        "Tracking event recorded",
        extra={"tracking_id": record.tracking_token, "event": event.value, "status": record.status}
    )
    return EventOutcome(record=record, status_changed=status_changed)


def record_open(session: Session, token: str, at: datetime | None = None) -> EventOutcome:
    return apply_event(session, token, TrackingEvent.OPEN, at)


def record_click(session: Session, token: str, url: str | None, at: datetime | None = None) -> EventOutcome:
    return apply_event(session, token, TrackingEvent.CLICK, at, url=url)


def record_delivered(session: Session, token: str, at: datetime | None = None) -> EventOutcome:
    return apply_event(session, token, TrackingEvent.DELIVERED, at)


def record_bounce(session: Session, token: str, at: datetime | None = None) -> EventOutcome:
    return apply_event(session, token, TrackingEvent.BOUNCE, at)


def parse_webhook(raw: dict[str, Any]) -> WebhookPayload:
    """Validate a provider webhook body.

    Raises:
        ValueError: If the payload does not have the expected shape
    """
    try:
        return WebhookPayload.model_validate(raw)
    except ValidationError as e:
        raise ValueError(f"Malformed webhook payload: {e.error_count()} error(s)") from e


def handle_webhook(session: Session, payload: WebhookPayload) -> EventOutcome:
    """Map a provider delivery webhook onto the tracking status machine."""
    key = payload.data.correlation_id
    if not key:
        logger.info("Webhook without tracking id", extra={"type": payload.type})
        return EventOutcome(record=None, ignored_reason="missing_tracking_id")

    if payload.type not in WEBHOOK_EVENTS:
        logger.info("Unknown webhook type", extra={"type": payload.type, "tracking_id": key})
        return EventOutcome(record=None, ignored_reason="unknown_type")

    event = WEBHOOK_EVENTS[payload.type]
    if event is None:
        logger.info("Webhook acknowledged without transition", extra={"type": payload.type, "tracking_id": key})
        return EventOutcome(record=None, ignored_reason="no_transition")

    url = payload.data.click.link if payload.data.click else None
    return apply_event(session, key, event, payload.created_at, url=url)


def mark_replied(
    session: Session,
    user_id: str,
    recipient: str,
    at: datetime | None = None,
    thread: ConversationThread | None = None,
) -> EmailTracking | None:
    """Record that ``recipient`` replied to the user's latest tracked send.

    Sets replied_at on the newest tracking record for the pair (first reply
    wins) and marks the latest user message in the thread as ``replied``.
    Tracking status is left unchanged.
    """
    at = at or utcnow()
    recipient = recipient.strip().lower()

    record = session.exec(
        select(EmailTracking)
        .where(EmailTracking.user_id == user_id, EmailTracking.recipient == recipient)
        .order_by(EmailTracking.sent_at.desc())
    ).first()
    if record is not None and record.replied_at is None:
        record.replied_at = at
        session.add(record)

    if thread is not None:
        message = session.exec(
            select(ConversationMessage)
            .where(
                ConversationMessage.thread_id == thread.id,
                ConversationMessage.sender_type == SenderType.USER.value,
            )
            .order_by(ConversationMessage.message_number.desc())
        ).first()
        if message is not None and message.status != MessageStatus.BOUNCED.value:
            message.status = MessageStatus.REPLIED.value
            if message.replied_at is None:
                message.replied_at = at
            session.add(message)

    session.commit()
    return record
