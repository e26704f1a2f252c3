"""Key-value store interface used for execution state, counters and results.

The coordinator relies on three properties of a store:

1. read-your-writes per key,
2. ``increment`` is a single atomic increment-and-read,
3. ``add`` is an atomic set-if-absent.

``MemoryStore`` gives all three within one event loop; the Redis backend in
``tool_stream.backends.redis`` gives them across processes.
"""

import asyncio
import copy
import logging
import time
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)


class KeyValueStore:
    """Base class for TTL-capable key-value stores."""

    async def get(self, key: str) -> Optional[Any]:
        """Return the value for ``key`` or None if missing or expired."""
        raise NotImplementedError("Subclasses must implement get()")

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        """Store ``value`` under ``key``, expiring after ``ttl`` seconds."""
        raise NotImplementedError("Subclasses must implement set()")

    async def add(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        """Store ``value`` only if ``key`` is absent.

        Returns:
            True if this call created the key.
        """
        raise NotImplementedError("Subclasses must implement add()")

    async def increment(
        self,
        key: str,
        by: int = 1,
        initial: int = 0,
        ttl: Optional[int] = None,
    ) -> int:
        """Atomically add ``by`` to an integer counter and return the new value.

        A missing counter starts at ``initial``, so the first call returns
        ``initial + by``. ``ttl`` applies when the counter is created.
        """
        raise NotImplementedError("Subclasses must implement increment()")

    async def expire(self, keys: list[str], ttl: int) -> int:
        """Reset the TTL of existing keys to ``ttl`` seconds.

        Missing keys are left missing. Returns how many keys were refreshed.
        """
        raise NotImplementedError("Subclasses must implement expire()")

    async def delete(self, *keys: str) -> int:
        """Delete keys; returns how many existed."""
        raise NotImplementedError("Subclasses must implement delete()")

    async def close(self) -> None:
        pass


class MemoryStore(KeyValueStore):
    """In-process store guarded by an asyncio lock.

    Values are deep-copied on the way in and out so callers never share
    mutable state with the store. Expired keys are dropped lazily on access.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._lock = asyncio.Lock()
        self._data: dict[str, Any] = {}
        self._expiry: dict[str, Optional[float]] = {}

    def _expire_at(self, ttl: Optional[int]) -> Optional[float]:
        return self._clock() + ttl if ttl else None

    def _live(self, key: str) -> bool:
        if key not in self._data:
            return False
        expires = self._expiry.get(key)
        if expires is not None and expires <= self._clock():
            del self._data[key]
            self._expiry.pop(key, None)
            logger.debug(f"Expired key {key}")
            return False
        return True

    async def get(self, key: str) -> Optional[Any]:
        async with self._lock:
            if not self._live(key):
                return None
            return copy.deepcopy(self._data[key])

    async def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        async with self._lock:
            self._data[key] = copy.deepcopy(value)
            self._expiry[key] = self._expire_at(ttl)

    async def add(self, key: str, value: Any, ttl: Optional[int] = None) -> bool:
        async with self._lock:
            if self._live(key):
                return False
            self._data[key] = copy.deepcopy(value)
            self._expiry[key] = self._expire_at(ttl)
            return True

    async def increment(
        self,
        key: str,
        by: int = 1,
        initial: int = 0,
        ttl: Optional[int] = None,
    ) -> int:
        async with self._lock:
            if not self._live(key):
                self._data[key] = initial
                self._expiry[key] = self._expire_at(ttl)
            value = int(self._data[key]) + by
            self._data[key] = value
            return value

    async def expire(self, keys: list[str], ttl: int) -> int:
        async with self._lock:
            refreshed = 0
            for key in keys:
                if self._live(key):
                    self._expiry[key] = self._expire_at(ttl)
                    refreshed += 1
            return refreshed

    async def delete(self, *keys: str) -> int:
        async with self._lock:
            removed = 0
            for key in keys:
                if self._live(key):
                    removed += 1
                self._data.pop(key, None)
                self._expiry.pop(key, None)
            return removed

    def __len__(self) -> int:
        return sum(1 for key in list(self._data) if self._live(key))
