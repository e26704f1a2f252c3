"""Strategies for handing a dispatched tool call to execution.

Both strategies call back into ``ExecutionCoordinator.execute_tool`` exactly
once per dispatched index; they differ only in where that happens.
"""

import asyncio
import logging
from typing import TYPE_CHECKING, Optional

from tool_stream.exceptions import DispatchError
from tool_stream.execution import ToolCall

if TYPE_CHECKING:
    from tool_stream.coordinator import ExecutionCoordinator

logger = logging.getLogger(__name__)


class Dispatcher:
    async def submit(
        self,
        coordinator: "ExecutionCoordinator",
        execution_id: str,
        tool_index: int,
        tool_call: ToolCall,
    ) -> None:
        """Arrange for the tool to run.

        Raises:
            DispatchError: If the call can't be accepted.
        """
        raise NotImplementedError

    async def close(self) -> None:
        pass


class InlineDispatcher(Dispatcher):
    """Runs each tool to completion inside ``dispatch_tool``."""

    async def submit(self, coordinator, execution_id, tool_index, tool_call) -> None:
        await coordinator.execute_tool(execution_id, tool_index, tool_call)


class QueuedDispatcher(Dispatcher):
    """Hands tools to a pool of worker tasks draining an asyncio queue.

    Workers start on the first submit so the dispatcher can be built outside
    a running event loop.

    Args:
        workers: Number of worker tasks.
        maxsize: Queue capacity; 0 means unbounded. A full queue rejects the
            call instead of blocking the stream.
    """

    def __init__(self, workers: int = 4, maxsize: int = 0):
        self.workers = workers
        self.maxsize = maxsize
        self._queue: Optional[asyncio.Queue] = None
        self._tasks: list[asyncio.Task] = []
        self._closed = False

    def _ensure_started(self) -> asyncio.Queue:
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self.maxsize)
            self._tasks = [
                asyncio.create_task(self._worker(n), name=f"tool-worker-{n}")
                for n in range(self.workers)
            ]
            logger.info(f"Started {self.workers} tool workers")
        return self._queue

    async def submit(self, coordinator, execution_id, tool_index, tool_call) -> None:
        if self._closed:
            raise DispatchError("Dispatcher is closed")
        queue = self._ensure_started()
        try:
            queue.put_nowait((coordinator, execution_id, tool_index, tool_call))
        except asyncio.QueueFull as e:
            raise DispatchError(f"Tool queue is full ({self.maxsize} pending)") from e
        logger.debug(f"Queued tool {tool_index} of execution {execution_id}")

    async def _worker(self, number: int) -> None:
        queue = self._queue
        while True:
            coordinator, execution_id, tool_index, tool_call = await queue.get()
            try:
                await coordinator.execute_tool(execution_id, tool_index, tool_call)
            except Exception as e:
                # execute_tool records tool failures itself; this is a bug guard
                logger.error(f"Worker {number} crashed on tool {tool_index} of {execution_id}: {e}")
            finally:
                queue.task_done()

    async def join(self) -> None:
        """Wait until every queued tool has been processed."""
        if self._queue is not None:
            await self._queue.join()

    async def close(self) -> None:
        self._closed = True
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        self._queue = None
