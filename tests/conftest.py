"""Shared fixtures: fake Redis, fake LINE channel, controllable clock."""

import hmac
import json
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone

import fakeredis
import pytest

from app.channels.line import compute_signature
from app.config import Settings
from app.core.commands import CommandInterpreter
from app.core.subscribers import SubscriberStore
from app.core.sweep import SweepScheduler
from app.errors import DeliveryError
from app.storage.redis import RedisStorage

T0 = datetime(2026, 1, 1, 9, 0, tzinfo=timezone.utc)
SECRET = "test-secret"


class FakeClock:
    """Clock whose time only moves when told to."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakeChannel:
    """In-memory LINE gateway recording every call."""

    def __init__(self, secret: str = SECRET) -> None:
        self.secret = secret
        self.replies: list[tuple[str, str]] = []
        self.pushes: list[tuple[str, str]] = []
        self.multicasts: list[tuple[list[str], str]] = []
        self.fail_push_to: set[str] = set()
        self.fail_replies = False
        self.fail_multicast = False
        self.on_push: Callable[[str], Awaitable[None]] | None = None
        self.on_reply: Callable[[str], Awaitable[None]] | None = None

    def verify_signature(self, body: bytes, signature: str | None) -> bool:
        if not signature:
            return False
        return hmac.compare_digest(compute_signature(self.secret, body).encode("ascii"), signature.encode("utf-8"))

    async def reply(self, reply_token: str, text: str) -> None:
        if self.on_reply is not None:
            await self.on_reply(reply_token)
        if self.fail_replies:
            raise DeliveryError("reply failed", status_code=400)
        self.replies.append((reply_token, text))

    async def push(self, to: str, text: str) -> None:
        if self.on_push is not None:
            await self.on_push(to)
        if to in self.fail_push_to:
            raise DeliveryError("push failed", status_code=500, retryable=True)
        self.pushes.append((to, text))

    async def multicast(self, to: list[str], text: str) -> None:
        if self.fail_multicast:
            raise DeliveryError("multicast failed", status_code=500, retryable=True)
        self.multicasts.append((list(to), text))

    @property
    def pushed_to(self) -> list[str]:
        return [to for to, _ in self.pushes]


def make_settings(**overrides) -> Settings:
    values = {
        "line_channel_access_token": "test-token",
        "line_channel_secret": SECRET,
        "notification_interval_seconds": 3600,
        "sweep_interval_seconds": 60,
        "delivery_timeout_seconds": 1.0,
        "reply_timeout_seconds": 1.0,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


def text_event(user_id: str | None, text: str, reply_token: str = "reply-token") -> dict:
    source = {"type": "user"}
    if user_id is not None:
        source["userId"] = user_id
    return {
        "type": "message",
        "replyToken": reply_token,
        "source": source,
        "timestamp": 1767258000000,
        "mode": "active",
        "message": {"type": "text", "id": "1", "text": text},
    }


def envelope(*events: dict) -> bytes:
    return json.dumps({"destination": "Ubot", "events": list(events)}).encode("utf-8")


def sign(body: bytes, secret: str = SECRET) -> str:
    return compute_signature(secret, body)


@pytest.fixture
def settings() -> Settings:
    return make_settings()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def storage():
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield RedisStorage(client=client)
    await client.aclose()


@pytest.fixture
def store(storage: RedisStorage) -> SubscriberStore:
    return SubscriberStore(storage, "subscribers")


@pytest.fixture
def channel() -> FakeChannel:
    return FakeChannel()


@pytest.fixture
def interpreter(store: SubscriberStore, clock: FakeClock) -> CommandInterpreter:
    return CommandInterpreter(store, clock)


@pytest.fixture
def scheduler(store, channel, storage, settings, clock) -> SweepScheduler:
    return SweepScheduler(store, channel, storage, settings, clock)
