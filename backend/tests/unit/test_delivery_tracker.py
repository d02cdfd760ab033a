"""Unit tests for the forward-only delivery tracking state machine."""

from datetime import timedelta

import pytest

from outreach.core.timeutils import ensure_utc
from outreach.models import ConversationMessage, EmailTracking, MessageStatus, SenderType, TrackingStatus
from outreach.services import delivery_tracker
from outreach.services.delivery_tracker import is_forward, parse_webhook
from outreach.services.message_recorder import append_message
from outreach.services.thread_store import get_or_create_thread

TOKEN = "tok-abc"


@pytest.fixture
def tracked(db_session, now) -> EmailTracking:
    record = EmailTracking(
        tracking_token=TOKEN,
        provider_message_id="gm-1",
        user_id="user-123",
        recipient="hr@acme.com",
        domain="acme.com",
        subject="Backend role",
        sent_at=now,
    )
    db_session.add(record)
    db_session.commit()
    db_session.refresh(record)
    return record


@pytest.fixture
def sent_message(db_session, tracked, now) -> ConversationMessage:
    thread = get_or_create_thread(db_session, "user-123", "hr@acme.com", now=now)
    result = append_message(
        db_session, thread.id, SenderType.USER, "Backend role", "Hi", now, "gm-1", tracking_token=TOKEN
    )
    return result.message


class TestIsForward:
    """Test status ranking."""

    @pytest.mark.unit
    def test_forward_transitions(self):
        assert is_forward("sent", TrackingStatus.DELIVERED)
        assert is_forward("delivered", TrackingStatus.OPENED)
        assert is_forward("sent", TrackingStatus.CLICKED)

    @pytest.mark.unit
    def test_backward_and_same_transitions(self):
        assert not is_forward("clicked", TrackingStatus.DELIVERED)
        assert not is_forward("opened", TrackingStatus.OPENED)

    @pytest.mark.unit
    def test_bounced_is_terminal(self):
        assert is_forward("clicked", TrackingStatus.BOUNCED)
        assert not is_forward("bounced", TrackingStatus.OPENED)
        assert not is_forward("bounced", TrackingStatus.BOUNCED)


@pytest.mark.unit
def test_first_open_wins(db_session, tracked, now):
    first = now + timedelta(hours=1)
    delivery_tracker.record_open(db_session, TOKEN, at=first)
    outcome = delivery_tracker.record_open(db_session, TOKEN, at=now + timedelta(hours=5))

    assert outcome.status_changed is False
    assert ensure_utc(outcome.record.opened_at) == first
    assert outcome.record.status == TrackingStatus.OPENED.value


@pytest.mark.unit
def test_clicks_are_appended(db_session, tracked, now):
    delivery_tracker.record_click(db_session, TOKEN, "https://a.example", at=now + timedelta(hours=1))
    outcome = delivery_tracker.record_click(db_session, TOKEN, "https://b.example", at=now + timedelta(hours=2))

    record = outcome.record
    assert [c["url"] for c in record.click_links] == ["https://a.example", "https://b.example"]
    assert ensure_utc(record.clicked_at) == now + timedelta(hours=1)
    assert record.status == TrackingStatus.CLICKED.value


@pytest.mark.unit
def test_late_delivered_does_not_revert_clicked(db_session, tracked, now):
    delivery_tracker.record_click(db_session, TOKEN, "https://a.example", at=now)
    outcome = delivery_tracker.record_delivered(db_session, TOKEN, at=now + timedelta(minutes=5))

    assert outcome.status_changed is False
    assert outcome.record.status == TrackingStatus.CLICKED.value
    assert outcome.record.delivered_at is not None


@pytest.mark.unit
def test_bounce_is_terminal(db_session, tracked, now):
    delivery_tracker.record_bounce(db_session, TOKEN, at=now)
    outcome = delivery_tracker.record_open(db_session, TOKEN, at=now + timedelta(hours=1))

    assert outcome.record.status == TrackingStatus.BOUNCED.value


@pytest.mark.unit
def test_unknown_token_is_ignored(db_session):
    outcome = delivery_tracker.record_open(db_session, "missing")
    assert outcome.record is None
    assert outcome.ignored_reason == "unknown_tracking_id"


@pytest.mark.unit
def test_events_propagate_to_message(db_session, sent_message, now):
    message_id = sent_message.id
    delivery_tracker.record_open(db_session, TOKEN, at=now + timedelta(hours=1))

    message = db_session.get(ConversationMessage, message_id, populate_existing=True)
    assert message.status == MessageStatus.OPENED.value
    assert ensure_utc(message.opened_at) == now + timedelta(hours=1)

    delivery_tracker.record_delivered(db_session, TOKEN, at=now + timedelta(hours=2))
    message = db_session.get(ConversationMessage, message_id, populate_existing=True)
    assert message.status == MessageStatus.OPENED.value


class TestHandleWebhook:
    """Test provider webhook mapping."""

    @pytest.mark.unit
    def test_delivered_by_tracking_id(self, db_session, tracked):
        payload = parse_webhook({
            "type": "email.delivered",
            "created_at": "2025-03-10T12:05:00Z",
            "data": {"tracking_id": TOKEN},
        })
        outcome = delivery_tracker.handle_webhook(db_session, payload)

        assert outcome.record.status == TrackingStatus.DELIVERED.value
        assert ensure_utc(outcome.record.delivered_at).minute == 5

    @pytest.mark.unit
    def test_falls_back_to_email_id(self, db_session, tracked):
        payload = parse_webhook({"type": "email.opened", "data": {"email_id": "gm-1"}})
        outcome = delivery_tracker.handle_webhook(db_session, payload)

        assert outcome.record is not None
        assert outcome.record.tracking_token == TOKEN
        assert outcome.record.status == TrackingStatus.OPENED.value

    @pytest.mark.unit
    def test_click_uses_link(self, db_session, tracked):
        payload = parse_webhook({
            "type": "email.clicked",
            "data": {"tracking_id": TOKEN, "click": {"link": "https://jobs.example"}},
        })
        outcome = delivery_tracker.handle_webhook(db_session, payload)

        assert outcome.record.click_links[0]["url"] == "https://jobs.example"

    @pytest.mark.unit
    @pytest.mark.parametrize("event_type", ["email.bounced", "email.complained"])
    def test_bounce_types(self, db_session, tracked, event_type):
        payload = parse_webhook({"type": event_type, "data": {"tracking_id": TOKEN}})
        outcome = delivery_tracker.handle_webhook(db_session, payload)

        assert outcome.record.status == TrackingStatus.BOUNCED.value

    @pytest.mark.unit
    def test_delivery_delayed_has_no_transition(self, db_session, tracked):
        payload = parse_webhook({"type": "email.delivery_delayed", "data": {"tracking_id": TOKEN}})
        outcome = delivery_tracker.handle_webhook(db_session, payload)

        assert outcome.record is None
        assert outcome.ignored_reason == "no_transition"

    @pytest.mark.unit
    def test_unknown_type_is_ignored(self, db_session, tracked):
        payload = parse_webhook({"type": "contact.created", "data": {"tracking_id": TOKEN}})
        assert delivery_tracker.handle_webhook(db_session, payload).ignored_reason == "unknown_type"

    @pytest.mark.unit
    def test_missing_id_is_ignored(self, db_session):
        payload = parse_webhook({"type": "email.opened", "data": {}})
        assert delivery_tracker.handle_webhook(db_session, payload).ignored_reason == "missing_tracking_id"

    @pytest.mark.unit
    def test_malformed_payload(self):
        with pytest.raises(ValueError):
            parse_webhook({"data": {"tracking_id": TOKEN}})


@pytest.mark.unit
def test_mark_replied(db_session, sent_message, now):
    message_id = sent_message.id
    thread = get_or_create_thread(db_session, "user-123", "hr@acme.com")
    reply_at = now + timedelta(days=1)

    record = delivery_tracker.mark_replied(db_session, "user-123", "HR@acme.com", at=reply_at, thread=thread)

    assert ensure_utc(record.replied_at) == reply_at
    assert record.status == TrackingStatus.SENT.value

    message = db_session.get(ConversationMessage, message_id, populate_existing=True)
    assert message.status == MessageStatus.REPLIED.value
    assert ensure_utc(message.replied_at) == reply_at


@pytest.mark.unit
def test_replied_message_keeps_status_on_late_open(db_session, sent_message, now):
    message_id = sent_message.id
    thread = get_or_create_thread(db_session, "user-123", "hr@acme.com")
    delivery_tracker.mark_replied(db_session, "user-123", "hr@acme.com", at=now, thread=thread)
    delivery_tracker.record_open(db_session, TOKEN, at=now + timedelta(hours=1))

    message = db_session.get(ConversationMessage, message_id, populate_existing=True)
    assert message.status == MessageStatus.REPLIED.value
    assert message.opened_at is not None
