"""Tests for the LINE Messaging API adapter."""

import json

import httpx
import pytest

from app.channels.line import MAX_TEXT_LENGTH, LineChannel, compute_signature
from app.errors import DeliveryError

from conftest import SECRET, make_settings


class Recorder:
    """httpx.MockTransport handler returning queued status codes."""

    def __init__(self, *statuses: int) -> None:
        self.statuses = list(statuses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if self.statuses else 200
        return httpx.Response(status, json={})

    def bodies(self) -> list[dict]:
        return [json.loads(request.content) for request in self.requests]


def make_channel(recorder: Recorder, **overrides) -> LineChannel:
    return LineChannel(make_settings(**overrides), transport=httpx.MockTransport(recorder))


def test_valid_signature():
    channel = make_channel(Recorder())
    body = b'{"events":[]}'
    assert channel.verify_signature(body, compute_signature(SECRET, body))


@pytest.mark.parametrize("signature", [None, "", "bogus", compute_signature("other", b'{"events":[]}')])
def test_invalid_signature(signature):
    channel = make_channel(Recorder())
    assert not channel.verify_signature(b'{"events":[]}', signature)


def test_missing_secret_rejects_everything():
    channel = make_channel(Recorder(), line_channel_secret="")
    body = b'{"events":[]}'
    assert not channel.verify_signature(body, compute_signature("", body))


async def test_reply_payload_and_auth():
    recorder = Recorder()
    channel = make_channel(recorder)

    await channel.reply("token-1", "hello")
    await channel.close()

    request = recorder.requests[0]
    assert request.url.path == "/v2/bot/message/reply"
    assert request.headers["Authorization"] == "Bearer test-token"
    assert recorder.bodies() == [{"replyToken": "token-1", "messages": [{"type": "text", "text": "hello"}]}]


async def test_reply_is_not_retried():
    recorder = Recorder(500)
    channel = make_channel(recorder)

    with pytest.raises(DeliveryError) as exc_info:
        await channel.reply("token-1", "hello")

    assert exc_info.value.status_code == 500
    assert len(recorder.requests) == 1


async def test_push_client_error_is_not_retried():
    recorder = Recorder(400)
    channel = make_channel(recorder)

    with pytest.raises(DeliveryError) as exc_info:
        await channel.push("U1", "hi")

    assert exc_info.value.retryable is False
    assert len(recorder.requests) == 1


async def test_push_retries_server_error_with_same_retry_key():
    recorder = Recorder(503, 200)
    channel = make_channel(recorder)

    await channel.push("U1", "hi")

    assert len(recorder.requests) == 2
    keys = {request.headers["X-Line-Retry-Key"] for request in recorder.requests}
    assert len(keys) == 1
    assert recorder.bodies()[1] == {"to": "U1", "messages": [{"type": "text", "text": "hi"}]}


async def test_push_conflict_on_retry_key_counts_as_accepted():
    recorder = Recorder(409)
    channel = make_channel(recorder)

    await channel.push("U1", "hi")

    assert len(recorder.requests) == 1


async def test_transport_error_is_delivery_error():
    def handler(request):
        raise httpx.ConnectError("refused")

    channel = LineChannel(make_settings(), transport=httpx.MockTransport(handler))

    with pytest.raises(DeliveryError) as exc_info:
        await channel.reply("token-1", "hi")
    assert exc_info.value.retryable is True


async def test_multicast_chunks_recipients():
    recorder = Recorder()
    channel = make_channel(recorder, multicast_chunk_size=2)

    await channel.multicast(["U1", "U2", "U3", "U4", "U5"], "hi")

    assert [body["to"] for body in recorder.bodies()] == [["U1", "U2"], ["U3", "U4"], ["U5"]]
    assert all(request.url.path == "/v2/bot/message/multicast" for request in recorder.requests)


async def test_multicast_stops_at_failing_chunk():
    recorder = Recorder(200, 400)
    channel = make_channel(recorder, multicast_chunk_size=2)

    with pytest.raises(DeliveryError):
        await channel.multicast(["U1", "U2", "U3", "U4", "U5"], "hi")

    assert len(recorder.requests) == 2


async def test_long_text_is_truncated():
    recorder = Recorder()
    channel = make_channel(recorder)

    await channel.push("U1", "x" * (MAX_TEXT_LENGTH + 100))

    text = recorder.bodies()[0]["messages"][0]["text"]
    assert len(text) == MAX_TEXT_LENGTH
    assert text.endswith("...")
