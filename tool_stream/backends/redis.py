"""Redis implementations of the store and notification bus.

Values are JSON-encoded. Counters are plain Redis integers, which read back
as JSON numbers, so ``get`` works on them too.
"""

import json
import logging
from typing import Any, Optional

import redis.asyncio as redis_client
from redis.exceptions import RedisError

from tool_stream.broadcast import NotificationBus
from tool_stream.exceptions import StoreError
from tool_stream.store import KeyValueStore

logger = logging.getLogger(__name__)


def _connect(client: Optional[redis_client.Redis], url: Optional[str]) -> redis_client.Redis:
    if client is not None:
        return client
    if not url:
        raise ValueError("Pass a redis client or a redis:// url")
    return redis_client.from_url(url, decode_responses=True)


class RedisStore(KeyValueStore):
    """KeyValueStore on Redis.

    Args:
        client: An existing ``redis.asyncio.Redis`` client.
        url: Used to build a client when none is given.
    """

    def __init__(self, client: Optional[redis_client.Redis] = None, url: Optional[str] = None):
        self._redis = _connect(client, url)

    async def get(self, key: str) -> Optional[Any]:
        try:
            raw = await self._redis.get(key)
        except RedisError as e:
            raise StoreError(f"Failed to get '{key}': {e}") from e
        if raw is None:
            return None
        return json.loads(raw)

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        try:
            await self._redis.set(key, json.dumps(value, default=str), ex=ttl)
        except RedisError as e:
            raise StoreError(f"Failed to set '{key}': {e}") from e

    async def add(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        try:
            created = await self._redis.set(key, json.dumps(value, default=str), ex=ttl, nx=True)
        except RedisError as e:
            raise StoreError(f"Failed to add '{key}': {e}") from e
        return bool(created)

    async def increment(
        self,
        key: str,
        by: int = 1,
        initial: int = 0,
        ttl: Optional[int] = None,
    ) -> int:
        try:
            async with self._redis.pipeline(transaction=True) as pipe:
                # SET NX seeds a missing counter with its initial value and TTL
                pipe.set(key, initial, ex=ttl, nx=True)
                pipe.incrby(key, by)
                results = await pipe.execute()
        except RedisError as e:
            raise StoreError(f"Failed to increment '{key}': {e}") from e
        return int(results[-1])

    async def expire(self, keys: list[str], ttl: int) -> int:
        if not keys:
            return 0
        try:
            async with self._redis.pipeline(transaction=False) as pipe:
                for key in keys:
                    pipe.expire(key, ttl)
                results = await pipe.execute()
        except RedisError as e:
            raise StoreError(f"Failed to refresh TTL of {len(keys)} keys: {e}") from e
        return sum(1 for refreshed in results if refreshed)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        try:
            return int(await self._redis.delete(*keys))
        except RedisError as e:
            raise StoreError(f"Failed to delete {len(keys)} keys: {e}") from e

    async def close(self) -> None:
        await self._redis.aclose()


class RedisBus(NotificationBus):
    """Publishes JSON payloads on Redis pub/sub channels."""

    def __init__(self, client: Optional[redis_client.Redis] = None, url: Optional[str] = None):
        self._redis = _connect(client, url)

    async def publish(self, channel: str, payload: dict) -> None:
        receivers = await self._redis.publish(channel, json.dumps(payload, default=str))
        logger.debug(f"Published {payload.get('action')} to {channel} ({receivers} receivers)")

    async def close(self) -> None:
        await self._redis.aclose()
