"""Redis connection pool and utilities.

Redis holds subscription records and the sweep lock. The lock is only
released or renewed by its owner (compare-and-act under WATCH/MULTI).
"""

import json
from collections.abc import AsyncIterator, Callable
from typing import Any

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import WatchError

from app.config import get_settings


class RedisStorage:
    """Redis storage with connection pool."""

    def __init__(self, client: Redis | None = None) -> None:
        """Initialize storage.

        Args:
            client: Pre-built client (tests pass a fake); otherwise connect() builds one
        """
        self._pool: ConnectionPool | None = None
        self._client: Redis | None = client

    async def connect(self) -> None:
        """Create connection pool and connect to Redis."""
        if self._client is not None:
            return
        settings = get_settings()
        self._pool = ConnectionPool.from_url(
            settings.redis_url,
            encoding="utf-8",
            decode_responses=True,
            max_connections=50,
        )
        self._client = Redis(connection_pool=self._pool)

    async def disconnect(self) -> None:
        """Close connection pool."""
        if self._client:
            await self._client.aclose()
            self._client = None
        if self._pool:
            await self._pool.disconnect()
            self._pool = None

    @property
    def client(self) -> Redis:
        """Get Redis client. Raises if not connected."""
        if self._client is None:
            raise RuntimeError("Redis not connected. Call connect() first.")
        return self._client

    async def set_json(self, key: str, value: Any, ex: int | None = None) -> bool:
        """Set JSON value with optional expiration."""
        json_str = json.dumps(value, default=str)
        return await self.client.set(key, json_str, ex=ex)

    async def get_json(self, key: str) -> Any | None:
        """Get JSON value."""
        value = await self.client.get(key)
        if value is None:
            return None
        return json.loads(value)

    async def setnx(self, key: str, value: str, ex: int | None = None) -> bool:
        """Set if not exists with optional expiration."""
        return bool(await self.client.set(key, value, nx=True, ex=ex))

    async def delete(self, *keys: str) -> int:
        """Delete keys."""
        return await self.client.delete(*keys)

    async def scan_json(self, pattern: str, count: int = 100) -> AsyncIterator[tuple[str, str]]:
        """Scan keys matching pattern and yield (key, raw value) pairs.

        Values are fetched per SCAN page with MGET. Keys deleted between
        SCAN and MGET are skipped. SCAN may return a key more than once.

        Args:
            pattern: Key pattern (e.g., "subscribers:*")
            count: Number of keys to scan per iteration
        """
        cursor = 0
        while True:
            cursor, keys = await self.client.scan(cursor, match=pattern, count=count)
            if keys:
                values = await self.client.mget(keys)
                for key, value in zip(keys, values):
                    if value is not None:
                        yield key, value
            if cursor == 0:
                break

    async def update_json(self, key: str, update: Callable[[Any | None], Any | None]) -> bool:
        """Optimistic read-modify-write of one JSON key (WATCH/MULTI).

        Args:
            key: Redis key
            update: Receives the current decoded value (None if absent) and
                returns the new value, or None to leave the key untouched

        Returns:
            True if the new value was written, False if update() declined
            or the key changed concurrently
        """
        async with self.client.pipeline(transaction=True) as pipe:
            await pipe.watch(key)
            raw = await pipe.get(key)
            current = json.loads(raw) if raw is not None else None
            new_value = update(current)
            if new_value is None:
                await pipe.unwatch()
                return False
            pipe.multi()
            pipe.set(key, json.dumps(new_value, default=str))
            try:
                await pipe.execute()
            except WatchError:
                return False
        return True

    async def delete_if_value(self, key: str, value: str) -> bool:
        """Delete key only while it still holds value (WATCH/MULTI).

        Returns:
            True if deleted, False if the key holds something else or changed
        """
        async with self.client.pipeline(transaction=True) as pipe:
            await pipe.watch(key)
            if await pipe.get(key) != value:
                await pipe.unwatch()
                return False
            pipe.multi()
            pipe.delete(key)
            try:
                await pipe.execute()
            except WatchError:
                return False
        return True

    async def expire_if_value(self, key: str, value: str, seconds: int) -> bool:
        """Reset the TTL of key only while it still holds value (WATCH/MULTI).

        Returns:
            True if the TTL was reset, False if the key holds something else or changed
        """
        async with self.client.pipeline(transaction=True) as pipe:
            await pipe.watch(key)
            if await pipe.get(key) != value:
                await pipe.unwatch()
                return False
            pipe.multi()
            pipe.expire(key, seconds)
            try:
                await pipe.execute()
            except WatchError:
                return False
        return True


# Global Redis storage instance
redis_storage = RedisStorage()
