"""Tests for subscription and webhook models."""

from datetime import timedelta

import pytest
from pydantic import ValidationError

from app.models import Subscription, WebhookEnvelope, WebhookEvent

from conftest import T0, text_event

INTERVAL = timedelta(hours=1)


def test_new_subscription_sets_both_timestamps():
    record = Subscription.new(T0)
    assert record.start_time == T0
    assert record.last_sent_time == T0


def test_last_sent_before_start_is_rejected():
    with pytest.raises(ValidationError):
        Subscription(start_time=T0, last_sent_time=T0 - timedelta(seconds=1))


def test_serialized_with_camel_case_keys():
    data = Subscription.new(T0).to_json()
    assert set(data) == {"startTime", "lastSentTime"}
    assert Subscription.model_validate(data) == Subscription.new(T0)


def test_not_due_one_millisecond_before_interval():
    record = Subscription.new(T0)
    assert not record.is_due(T0 + INTERVAL - timedelta(milliseconds=1), INTERVAL)


def test_due_exactly_at_interval_and_after():
    record = Subscription.new(T0)
    assert record.is_due(T0 + INTERVAL, INTERVAL)
    assert record.is_due(T0 + timedelta(minutes=61), INTERVAL)


def test_advanced_keeps_start_time():
    later = T0 + timedelta(minutes=61)
    record = Subscription.new(T0).advanced(later)
    assert record.start_time == T0
    assert record.last_sent_time == later


def test_text_event_exposes_text_and_user():
    event = WebhookEvent.model_validate(text_event("U1", "start"))
    assert event.text == "start"
    assert event.user_id == "U1"
    assert event.reply_token == "reply-token"


def test_non_text_message_has_no_text():
    raw = text_event("U1", "start")
    raw["message"] = {"type": "sticker", "id": "2", "packageId": "1", "stickerId": "1"}
    assert WebhookEvent.model_validate(raw).text is None


def test_follow_event_has_no_text():
    event = WebhookEvent.model_validate({"type": "follow", "replyToken": "r", "source": {"type": "user", "userId": "U1"}})
    assert event.text is None


def test_missing_user_id():
    event = WebhookEvent.model_validate(text_event(None, "start"))
    assert event.user_id is None


def test_envelope_requires_events():
    with pytest.raises(ValidationError):
        WebhookEnvelope.model_validate({"destination": "Ubot"})
