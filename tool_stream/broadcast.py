"""Best-effort progress notifications for live UIs.

Nothing here is needed for correctness: a failed publish is logged and
dropped, and subscribers get no ordering or delivery guarantee.
"""

import asyncio
import logging
from collections.abc import AsyncIterator
from datetime import datetime, timezone
from typing import Any, Optional

logger = logging.getLogger(__name__)


class NotificationBus:
    async def publish(self, channel: str, payload: dict) -> None:
        """Publish ``payload`` to ``channel``. At most once, no ordering."""
        raise NotImplementedError


class MemoryBus(NotificationBus):
    """In-process fan-out bus.

    Each subscriber gets its own bounded queue; when a queue is full the
    oldest payload is dropped so a slow reader never blocks publishers.

    Usage:
        bus = MemoryBus()
        async for payload in bus.subscribe("chat_progress_42"):
            ...
    """

    def __init__(self, max_queue_size: int = 1000):
        self._max_queue_size = max_queue_size
        self._subscribers: dict[str, list[asyncio.Queue]] = {}
        self.published: list[tuple[str, dict]] = []

    async def publish(self, channel: str, payload: dict) -> None:
        self.published.append((channel, payload))
        for queue in self._subscribers.get(channel, []):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(payload)

    def open(self, channel: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers.setdefault(channel, []).append(queue)
        return queue

    def close(self, channel: str, queue: asyncio.Queue) -> None:
        queues = self._subscribers.get(channel, [])
        if queue in queues:
            queues.remove(queue)
        if not queues:
            self._subscribers.pop(channel, None)

    async def subscribe(self, channel: str) -> AsyncIterator[dict]:
        queue = self.open(channel)
        try:
            while True:
                yield await queue.get()
        finally:
            self.close(channel, queue)


class Broadcaster:
    """Tool progress notifications for one message's channel."""

    def __init__(self, bus: Optional[NotificationBus], record_id: str):
        self.bus = bus
        self.record_id = record_id

    @property
    def channel(self) -> str:
        return f"chat_progress_{self.record_id}"

    async def _send(self, action: str, **fields: Any) -> bool:
        if self.bus is None:
            return False
        payload = {
            "action": action,
            "message_id": self.record_id,
            **fields,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            await self.bus.publish(self.channel, payload)
            return True
        except Exception as e:
            logger.error(f"Broadcast '{action}' on {self.channel} failed: {e}")
            return False

    async def tool_detected(self, execution_id: str, tool_index: int, tool_name: str, status: str) -> bool:
        return await self._send(
            "tool_detected",
            execution_id=execution_id,
            tool_index=tool_index,
            tool_name=tool_name,
            status=status,
        )

    async def tool_update(self, execution_id: str, tool_index: int, status: str) -> bool:
        return await self._send(
            "incremental_tool_update",
            execution_id=execution_id,
            tool_index=tool_index,
            status=status,
        )

    async def flow_update(self, execution_id: str, status: str, detail: str = "") -> bool:
        return await self._send(
            "flow_update",
            execution_id=execution_id,
            tool_index=None,
            status=status,
            detail=detail,
        )
