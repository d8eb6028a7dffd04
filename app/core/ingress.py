"""Webhook ingress: authenticate, decode, fan out events.

Batch policy: every event in the envelope runs as its own task and all
tasks are awaited. A failing event (invalid shape, store error, reply
error or timeout) does not stop its siblings; the batch is then reported
as failed so the route answers 500 instead of a partial 200.
"""

import asyncio
import json
import logging

from pydantic import BaseModel, ValidationError

from app.channels.base import ChannelProtocol
from app.channels.line import get_line_channel
from app.config import get_settings
from app.core.commands import CommandInterpreter
from app.core.subscribers import get_subscriber_store
from app.errors import AuthenticationError, DeliveryError, MalformedPayloadError
from app.models import WebhookEnvelope, WebhookEvent

logger = logging.getLogger(__name__)


class BatchResult(BaseModel):
    """Per-request outcome of event processing."""

    processed: int = 0
    failed: int = 0

    @property
    def ok(self) -> bool:
        return self.failed == 0


class WebhookIngress:
    """Stateless per-request webhook handler."""

    def __init__(
        self,
        channel: ChannelProtocol,
        interpreter: CommandInterpreter,
        reply_timeout: float = 5.0,
    ) -> None:
        self.channel = channel
        self.interpreter = interpreter
        self.reply_timeout = reply_timeout

    def parse_envelope(self, body: bytes) -> WebhookEnvelope:
        """Decode the request body.

        Raises:
            MalformedPayloadError: If body is not JSON or has no events list
        """
        try:
            return WebhookEnvelope.model_validate(json.loads(body))
        except (ValueError, ValidationError) as e:
            raise MalformedPayloadError(f"Invalid webhook body: {e}") from e

    async def handle(self, body: bytes, signature: str | None) -> BatchResult:
        """Authenticate and process one webhook request.

        Raises:
            AuthenticationError: Signature missing or invalid
            MalformedPayloadError: Body is not a valid envelope
        """
        if not self.channel.verify_signature(body, signature):
            raise AuthenticationError("Signature verification failed")

        envelope = self.parse_envelope(body)

        results = await asyncio.gather(
            *(self._handle_event(raw) for raw in envelope.events),
            return_exceptions=True,
        )

        batch = BatchResult()
        for index, result in enumerate(results):
            if isinstance(result, BaseException):
                batch.failed += 1
                logger.error(f"Webhook event #{index} failed: {type(result).__name__}: {result}")
            else:
                batch.processed += 1
        return batch

    async def _handle_event(self, raw: object) -> None:
        """Validate one event, apply it, and send the reply."""
        event = WebhookEvent.model_validate(raw)

        reply_text = await self.interpreter.handle(event)
        if reply_text is None:
            return
        if not event.reply_token:
            logger.warning(f"No reply token for event from user {event.user_id}")
            return

        try:
            async with asyncio.timeout(self.reply_timeout):
                await self.channel.reply(event.reply_token, reply_text)
        except TimeoutError as e:
            raise DeliveryError(f"Reply timed out after {self.reply_timeout}s", retryable=True) from e


_webhook_ingress: WebhookIngress | None = None


def get_webhook_ingress() -> WebhookIngress:
    """Get webhook ingress instance (lazy initialization)."""
    global _webhook_ingress
    if _webhook_ingress is None:
        _webhook_ingress = WebhookIngress(
            channel=get_line_channel(),
            interpreter=CommandInterpreter(get_subscriber_store()),
            reply_timeout=get_settings().reply_timeout_seconds,
        )
    return _webhook_ingress
