"""Subscriber store: one Redis key per opted-in subscriber.

Key: {prefix}:{subscriber_id}
Value: {"startTime": ..., "lastSentTime": ...}

A key exists if and only if the subscriber is opted in.
"""

import logging
from collections.abc import AsyncIterator
from datetime import datetime

from pydantic import ValidationError
from redis.exceptions import RedisError

from app.config import get_settings
from app.errors import StoreError
from app.models import Subscription
from app.storage.redis import RedisStorage, redis_storage

logger = logging.getLogger(__name__)


class SubscriberStore:
    """Subscription records keyed by subscriber identity."""

    def __init__(self, storage: RedisStorage, prefix: str = "subscribers") -> None:
        self.storage = storage
        self.prefix = prefix

    def _key(self, subscriber_id: str) -> str:
        return f"{self.prefix}:{subscriber_id}"

    async def put(self, subscriber_id: str, record: Subscription) -> None:
        """Upsert a record, replacing any existing one."""
        try:
            await self.storage.set_json(self._key(subscriber_id), record.to_json())
        except RedisError as e:
            raise StoreError(f"put failed for {subscriber_id}") from e

    async def get(self, subscriber_id: str) -> Subscription | None:
        """Load one record, or None if the subscriber is not opted in."""
        try:
            data = await self.storage.get_json(self._key(subscriber_id))
        except RedisError as e:
            raise StoreError(f"get failed for {subscriber_id}") from e
        if data is None:
            return None
        return Subscription.model_validate(data)

    async def delete(self, subscriber_id: str) -> None:
        """Remove a record. Absence is not an error."""
        try:
            await self.storage.delete(self._key(subscriber_id))
        except RedisError as e:
            raise StoreError(f"delete failed for {subscriber_id}") from e

    async def scan(self) -> AsyncIterator[tuple[str, Subscription]]:
        """Yield (subscriber_id, record) for every stored subscription.

        No ordering. Each call starts a fresh scan. Records that fail
        validation are logged and skipped.
        """
        prefix_len = len(self.prefix) + 1
        seen: set[str] = set()
        try:
            async for key, raw in self.storage.scan_json(f"{self.prefix}:*"):
                subscriber_id = key[prefix_len:]
                # SCAN can repeat keys
                if subscriber_id in seen:
                    continue
                seen.add(subscriber_id)
                try:
                    record = Subscription.model_validate_json(raw)
                except ValidationError:
                    logger.error(f"Skipping unreadable subscription record key={key}")
                    continue
                yield subscriber_id, record
        except RedisError as e:
            raise StoreError("scan failed") from e

    async def advance(self, subscriber_id: str, expected: Subscription, sent_at: datetime) -> bool:
        """Set lastSentTime to sent_at if the record is still exactly `expected`.

        Guards the sweep write-back against a concurrent stop (record gone)
        or start (record replaced).

        Returns:
            True if written, False if the record changed or was removed
        """

        def _update(current: dict | None) -> dict | None:
            if current is None:
                return None
            try:
                if Subscription.model_validate(current) != expected:
                    return None
            except ValidationError:
                return None
            return expected.advanced(sent_at).to_json()

        try:
            return await self.storage.update_json(self._key(subscriber_id), _update)
        except RedisError as e:
            raise StoreError(f"advance failed for {subscriber_id}") from e


_subscriber_store: SubscriberStore | None = None


def get_subscriber_store() -> SubscriberStore:
    """Get subscriber store instance (lazy initialization)."""
    global _subscriber_store
    if _subscriber_store is None:
        _subscriber_store = SubscriberStore(redis_storage, get_settings().subscriber_key_prefix)
    return _subscriber_store
