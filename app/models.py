"""Pydantic v2 models for data boundaries.

Subscription is the only persisted entity. Webhook models mirror the
LINE Messaging API webhook format and ignore unknown fields.
"""

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


class Subscription(BaseModel):
    """Subscription record stored under {prefix}:{subscriber_id}.

    Serialized with the camelCase field names startTime / lastSentTime.
    """

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    start_time: datetime = Field(..., alias="startTime", description="First opt-in instant")
    last_sent_time: datetime = Field(..., alias="lastSentTime", description="Last delivery attempt instant")

    @model_validator(mode="after")
    def validate_order(self) -> "Subscription":
        """Ensure lastSentTime is never before startTime."""
        if self.last_sent_time < self.start_time:
            raise ValueError("lastSentTime must not be earlier than startTime")
        return self

    @classmethod
    def new(cls, now: datetime) -> "Subscription":
        """Fresh subscription: both timestamps set to now."""
        return cls(start_time=now, last_sent_time=now)

    def is_due(self, now: datetime, interval: timedelta) -> bool:
        """True when at least one interval has elapsed since the last delivery."""
        return now - self.last_sent_time >= interval

    def advanced(self, sent_at: datetime) -> "Subscription":
        """Copy with lastSentTime moved to sent_at."""
        return Subscription(start_time=self.start_time, last_sent_time=sent_at)

    def to_json(self) -> dict[str, Any]:
        """JSON-compatible dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)


class EventType(str, Enum):
    """Webhook event types that carry commands."""

    MESSAGE = "message"


class MessageType(str, Enum):
    """Message content types."""

    TEXT = "text"


class EventSource(BaseModel):
    """Event source (user, group or room)."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: str = Field(default="user", description="Source type")
    user_id: str | None = Field(default=None, alias="userId", description="Sender user ID")


class EventMessage(BaseModel):
    """Message object of a message event."""

    model_config = ConfigDict(extra="ignore")

    type: str = Field(..., description="Message type (text, image, sticker, ...)")
    id: str | None = Field(default=None, description="Message ID")
    text: str | None = Field(default=None, description="Text content for text messages")


class WebhookEvent(BaseModel):
    """One webhook event."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: str = Field(..., description="Event type")
    source: EventSource | None = Field(default=None, description="Event source")
    reply_token: str | None = Field(default=None, alias="replyToken", description="Single-use reply token")
    message: EventMessage | None = Field(default=None, description="Message (message events only)")
    timestamp: int | None = Field(default=None, description="Event time in epoch milliseconds")
    webhook_event_id: str | None = Field(default=None, alias="webhookEventId", description="Event ID")

    @property
    def user_id(self) -> str | None:
        """Sender user ID, if resolvable."""
        if self.source is None:
            return None
        return self.source.user_id or None

    @property
    def text(self) -> str | None:
        """Text content if this is a text message event."""
        if self.type != EventType.MESSAGE.value or self.message is None:
            return None
        if self.message.type != MessageType.TEXT.value:
            return None
        return self.message.text


class WebhookEnvelope(BaseModel):
    """Webhook request body.

    Events are kept raw and validated one by one so a single malformed
    event does not reject the whole batch.
    """

    model_config = ConfigDict(extra="ignore")

    destination: str | None = Field(default=None, description="Bot user ID receiving the events")
    events: list[Any] = Field(..., description="Raw event objects")


class SweepReport(BaseModel):
    """Outcome of one sweep tick."""

    ran: bool = Field(default=True, description="False if the tick was skipped")
    scanned: int = 0
    due: int = 0
    delivered: int = 0
    failed: int = 0
    skipped: int = Field(default=0, description="Delivered but record changed or removed before write-back")
