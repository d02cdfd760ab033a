"""Unit tests for ordered, idempotent message appends."""

import uuid
from datetime import timedelta
from unittest.mock import patch

import pytest

from outreach.core.timeutils import ensure_utc
from outreach.models import ConversationThread, MessageStatus, SenderType
from outreach.services import message_recorder
from outreach.services.message_recorder import (
    CounterConflictError,
    Duplicate,
    Recorded,
    append_message,
    list_messages,
)
from outreach.services.thread_store import ThreadNotFoundError, get_or_create_thread


@pytest.fixture
def thread(db_session, now) -> ConversationThread:
    return get_or_create_thread(db_session, "user-123", "hr@acme.com", subject="Backend role", now=now)


def _reload(session, thread_id) -> ConversationThread:
    return session.get(ConversationThread, thread_id, populate_existing=True)


@pytest.mark.unit
def test_numbers_messages_in_order(db_session, thread, now):
    thread_id = thread.id
    first = append_message(db_session, thread_id, SenderType.USER, "Backend role", "Hi", now, "gm-1")
    second = append_message(
        db_session, thread_id, SenderType.RECRUITER, "Re: Backend role", "Thanks",
        now + timedelta(hours=1), "gm-2",
    )
    third = append_message(
        db_session, thread_id, SenderType.USER, "Re: Backend role", "Great",
        now + timedelta(hours=2), "gm-3",
    )

    assert isinstance(first, Recorded)
    assert [r.message.message_number for r in (first, second, third)] == [1, 2, 3]

    stored = _reload(db_session, thread_id)
    assert stored.total_messages == 3
    assert stored.user_messages_count == 2
    assert stored.recruiter_messages_count == 1
    assert stored.total_messages == stored.user_messages_count + stored.recruiter_messages_count
    assert [m.provider_message_id for m in list_messages(db_session, thread_id)] == ["gm-1", "gm-2", "gm-3"]


@pytest.mark.unit
def test_updates_activity_timestamps_and_subject(db_session, thread, now):
    thread_id = thread.id
    reply_at = now + timedelta(hours=3)
    append_message(db_session, thread_id, SenderType.RECRUITER, "Re: Backend role", "Sure", reply_at, "gm-1")

    stored = _reload(db_session, thread_id)
    assert ensure_utc(stored.last_recruiter_message_at) == reply_at
    assert ensure_utc(stored.last_activity_at) == reply_at
    assert stored.last_user_message_at is None
    assert stored.subject_line == "Re: Backend role"


@pytest.mark.unit
def test_default_status_by_sender(db_session, thread, now):
    user = append_message(db_session, thread.id, SenderType.USER, "s", "b", now, "gm-1")
    recruiter = append_message(db_session, thread.id, SenderType.RECRUITER, "Re: s", "b", now, "gm-2")

    assert user.message.status == MessageStatus.SENT.value
    assert recruiter.message.status == MessageStatus.DELIVERED.value


@pytest.mark.unit
def test_body_preview_is_truncated(db_session, thread, now):
    body = "x" * 500
    result = append_message(db_session, thread.id, SenderType.RECRUITER, "Re: s", body, now, "gm-1")

    assert len(result.message.body_preview) == 200
    assert result.message.body_full == body


@pytest.mark.unit
def test_duplicate_provider_id_is_not_recorded_twice(db_session, thread, now):
    thread_id = thread.id
    first = append_message(db_session, thread_id, SenderType.RECRUITER, "Re: s", "b", now, "gm-1")
    second = append_message(db_session, thread_id, SenderType.RECRUITER, "Re: s", "b", now, "gm-1")

    assert isinstance(second, Duplicate)
    assert second.duplicate is True
    assert second.message.id == first.message.id
    assert _reload(db_session, thread_id).total_messages == 1


@pytest.mark.unit
def test_duplicate_caught_by_unique_constraint(db_session, thread, now):
    """A concurrent insert that slipped past the pre-check still dedups."""
    thread_id = thread.id
    append_message(db_session, thread_id, SenderType.RECRUITER, "Re: s", "b", now, "gm-1")

    original = message_recorder.find_by_provider_id
    calls = {"n": 0}

    def stale_lookup(session, tid, provider_id):
        calls["n"] += 1
        return None if calls["n"] == 1 else original(session, tid, provider_id)

    with patch("outreach.services.message_recorder.find_by_provider_id", side_effect=stale_lookup):
        result = append_message(db_session, thread_id, SenderType.RECRUITER, "Re: s", "b", now, "gm-1")

    assert isinstance(result, Duplicate)
    stored = _reload(db_session, thread_id)
    assert stored.total_messages == 1
    assert stored.recruiter_messages_count == 1


@pytest.mark.unit
def test_lost_counter_race_is_retried(db_session, thread, now):
    original = message_recorder._claim_message_number
    calls = {"n": 0}

    def contended(*args, **kwargs):
        calls["n"] += 1
        if calls["n"] == 1:
            return None
        return original(*args, **kwargs)

    with patch("outreach.services.message_recorder._claim_message_number", side_effect=contended):
        result = append_message(db_session, thread.id, SenderType.USER, "s", "b", now, "gm-1")

    assert isinstance(result, Recorded)
    assert result.message.message_number == 1
    assert calls["n"] == 2


@pytest.mark.unit
def test_counter_conflict_after_retry_budget(db_session, thread, now):
    with patch("outreach.services.message_recorder._claim_message_number", return_value=None):
        with pytest.raises(CounterConflictError) as exc_info:
            append_message(db_session, thread.id, SenderType.USER, "s", "b", now, "gm-1")

    assert exc_info.value.error_code == "counter_conflict"


@pytest.mark.unit
def test_unknown_thread(db_session, now):
    with pytest.raises(ThreadNotFoundError):
        append_message(db_session, uuid.uuid4(), SenderType.USER, "s", "b", now, "gm-1")
