"""LINE Messaging API channel adapter.

Signature check: base64(HMAC-SHA256(channel_secret, raw_body)) in the
X-Line-Signature header.
Outbound: reply (single attempt), push and multicast (retried with a stable
X-Line-Retry-Key so a retried request is not delivered twice).
"""

import base64
import hashlib
import hmac
import logging
from uuid import uuid4

import httpx
from tenacity import (
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from app.config import Settings, get_settings
from app.errors import DeliveryError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Line-Signature"
MAX_TEXT_LENGTH = 5000


def _is_retryable(error: BaseException) -> bool:
    return isinstance(error, DeliveryError) and error.retryable


def compute_signature(channel_secret: str, body: bytes) -> str:
    """Compute the X-Line-Signature value for a body."""
    digest = hmac.new(channel_secret.encode("utf-8"), body, hashlib.sha256).digest()
    return base64.b64encode(digest).decode("ascii")


def text_messages(text: str) -> list[dict[str, str]]:
    """Wrap text into a LINE message list (truncated to the 5000 char limit)."""
    if len(text) > MAX_TEXT_LENGTH:
        text = text[: MAX_TEXT_LENGTH - 3] + "..."
    return [{"type": "text", "text": text}]


class LineChannel:
    """LINE Messaging API adapter."""

    def __init__(
        self,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize LINE channel.

        Args:
            settings: Settings (defaults to get_settings())
            transport: Optional httpx transport (tests use httpx.MockTransport)
        """
        settings = settings or get_settings()
        self.access_token = settings.line_channel_access_token
        self.channel_secret = settings.line_channel_secret
        self.base_url = settings.line_api_base_url
        self.chunk_size = settings.multicast_chunk_size
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self) -> httpx.AsyncClient:
        """Get or create httpx client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                headers={
                    "Authorization": f"Bearer {self.access_token}",
                    "Content-Type": "application/json",
                },
                timeout=30.0,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close httpx client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def verify_signature(self, body: bytes, signature: str | None) -> bool:
        """Verify X-Line-Signature against the raw body.

        Always False when the header or the channel secret is missing.
        """
        if not signature or not self.channel_secret:
            return False
        expected = compute_signature(self.channel_secret, body)
        return hmac.compare_digest(expected.encode("ascii"), signature.encode("utf-8"))

    async def _post(self, path: str, payload: dict, retry_key: str | None = None) -> None:
        """POST to the LINE API and map failures to DeliveryError.

        Raises:
            DeliveryError: retryable for transport errors, 429 and 5xx
        """
        client = self._get_client()
        headers = {"X-Line-Retry-Key": retry_key} if retry_key else None

        try:
            response = await client.post(path, json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise DeliveryError(f"LINE API {path} timed out", retryable=True) from e
        except httpx.HTTPError as e:
            raise DeliveryError(f"LINE API {path} transport error: {e}", retryable=True) from e

        status = response.status_code
        # 409 with a retry key: the original request was already accepted
        if status == 409 and retry_key:
            logger.info(f"LINE API {path} already accepted retry_key={retry_key}")
            return
        if status >= 400:
            raise DeliveryError(
                f"LINE API {path} returned {status}: {response.text[:200]}",
                status_code=status,
                retryable=status == 429 or status >= 500,
            )

    @retry(
        retry=retry_if_exception(_is_retryable),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=5),
        reraise=True,
    )
    async def _post_with_retry(self, path: str, payload: dict, retry_key: str) -> None:
        await self._post(path, payload, retry_key)

    async def reply(self, reply_token: str, text: str) -> None:
        """Reply to an event. Reply tokens are single use, so no retry."""
        await self._post(
            "/v2/bot/message/reply",
            {"replyToken": reply_token, "messages": text_messages(text)},
        )

    async def push(self, to: str, text: str) -> None:
        """Push text to one user."""
        await self._post_with_retry(
            "/v2/bot/message/push",
            {"to": to, "messages": text_messages(text)},
            str(uuid4()),
        )

    async def multicast(self, to: list[str], text: str) -> None:
        """Multicast text, one request per chunk of at most chunk_size users.

        Chunks before a failing one have already been delivered.
        """
        messages = text_messages(text)
        for start in range(0, len(to), self.chunk_size):
            chunk = to[start : start + self.chunk_size]
            await self._post_with_retry(
                "/v2/bot/message/multicast",
                {"to": chunk, "messages": messages},
                str(uuid4()),
            )


# Lazy initialization pattern
_line_channel: LineChannel | None = None


def get_line_channel() -> LineChannel:
    """Get LINE channel instance (lazy initialization)."""
    global _line_channel
    if _line_channel is None:
        _line_channel = LineChannel()
    return _line_channel
