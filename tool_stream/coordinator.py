"""Coordination of tool calls that arrive while an LLM is still streaming.

An *execution* covers every tool call of one LLM turn. Calls are dispatched
one by one as the stream yields them, without knowing how many will follow;
the waiter decides completion by comparing two counters kept in the
key-value store:

    completed_count >= dispatched_count  (and tool_count reached, once known)

Store layout per execution (``{prefix}:{execution_id}:...``):

    state             status, tool_count, started_at, per-tool snapshots
    next_index        index allocation counter
    fallback_index    used when next_index is unavailable
    dispatched        dispatched counter
    completed         completed counter
    slot:{i}          set-if-absent claim on tool index i
    tool_{i}_result   ToolResult of tool i
"""

import asyncio
import logging
import secrets
import time
from typing import Callable, Iterable, Optional, Union

from tool_stream.broadcast import Broadcaster, NotificationBus
from tool_stream.deploy import DeploymentTrigger
from tool_stream.dispatch import Dispatcher, InlineDispatcher
from tool_stream.exceptions import DispatchError, IndexAllocationError, StoreError
from tool_stream.execution import (
    TIMEOUT_ERROR,
    ExecutionState,
    ExecutionStatus,
    ToolCall,
    ToolResult,
    ToolSnapshot,
    ToolStatus,
)
from tool_stream.flow_log import FlowLog, FlowRecordStore
from tool_stream.hooks import (
    BatchCompleteEventData,
    BatchTimeoutEventData,
    BeforeDispatchEventData,
    HookRegistry,
    ToolCompletedEventData,
    ToolFailedEventData,
    ToolQueuedEventData,
    ToolStartedEventData,
)
from tool_stream.settings import CoordinatorSettings
from tool_stream.store import KeyValueStore
from tool_stream.tools import ToolExecutor

logger = logging.getLogger(__name__)

TIMESTAMP_INDEX_SPACE = 10000
TIMESTAMP_ATTEMPTS = 100
COUNTER_SUFFIXES = ("next_index", "fallback_index", "dispatched", "completed")


class ExecutionCoordinator:
    """Dispatches streamed tool calls and tracks them to completion.

    Args:
        record_id: Record (chat message) whose conversation flow shows the tools.
        store: Shared key-value store for state, counters and results.
        flow_store: Storage of the record's conversation flow.
        executor: Runs individual tool calls.
        bus: Optional notification bus for live UI updates.
        dispatcher: Inline (default) or queued execution strategy.
        hooks: Lifecycle hooks; an empty registry is created if omitted.
        deployment_trigger: Told when every tool of a batch succeeded.
        settings: TTLs, timeouts and retry limits.
    """

    def __init__(
        self,
        record_id: str,
        store: KeyValueStore,
        flow_store: FlowRecordStore,
        executor: ToolExecutor,
        *,
        bus: Optional[NotificationBus] = None,
        dispatcher: Optional[Dispatcher] = None,
        hooks: Optional[HookRegistry] = None,
        deployment_trigger: Optional[DeploymentTrigger] = None,
        settings: Optional[CoordinatorSettings] = None,
    ):
        self.record_id = str(record_id)
        self.settings = settings or CoordinatorSettings()
        self.store = store
        self.executor = executor
        self.flow = FlowLog(flow_store, self.record_id, max_retries=self.settings.flow_write_retries)
        self.broadcaster = Broadcaster(bus, self.record_id)
        self.dispatcher = dispatcher or InlineDispatcher()
        self.hooks = hooks or HookRegistry()
        self.deployment_trigger = deployment_trigger

        self._signals: dict[str, asyncio.Event] = {}
        self._state_locks: dict[str, asyncio.Lock] = {}
        self._indices: dict[str, set[int]] = {}
        self._forget_handles: dict[str, asyncio.TimerHandle] = {}

    # ------------------------------------------------------------------
    # Keys and state
    # ------------------------------------------------------------------

    def _key(self, execution_id: str, suffix: str) -> str:
        return self.settings.key(execution_id, suffix)

    def _result_key(self, execution_id: str, index: int) -> str:
        return self._key(execution_id, f"tool_{index}_result")

    def _signal(self, execution_id: str) -> None:
        event = self._signals.get(execution_id)
        if event is not None:
            event.set()

    async def _write_state(self, state: ExecutionState) -> None:
        data = state.to_dict()
        # counters live in their own keys
        data.pop("dispatched_count", None)
        data.pop("completed_count", None)
        await self.store.set(self._key(state.execution_id, "state"), data, ttl=self.settings.state_ttl)
        await self._refresh_ttl(state)

    async def _refresh_ttl(self, state: ExecutionState) -> None:
        # counters and slot claims expire together with the state
        execution_id = state.execution_id
        indices = self._indices.get(execution_id, set()) | {int(index) for index in state.tools}
        keys = [self._key(execution_id, suffix) for suffix in COUNTER_SUFFIXES]
        keys.extend(self._key(execution_id, f"slot:{index}") for index in sorted(indices))
        await self.store.expire(keys, self.settings.state_ttl)

    async def _update_state(
        self,
        execution_id: str,
        change: Callable[[ExecutionState], None],
    ) -> Optional[ExecutionState]:
        lock = self._state_locks.setdefault(execution_id, asyncio.Lock())
        async with lock:
            data = await self.store.get(self._key(execution_id, "state"))
            if data is None:
                self._state_locks.pop(execution_id, None)
                return None
            state = ExecutionState.from_dict(data)
            change(state)
            await self._write_state(state)
            return state

    async def get_execution_state(self, execution_id: str) -> Optional[ExecutionState]:
        """Snapshot of an execution, or None once it's released or expired."""
        # completed is read before dispatched so a snapshot can't show more
        # completions than dispatches
        completed = await self.store.get(self._key(execution_id, "completed"))
        dispatched = await self.store.get(self._key(execution_id, "dispatched"))
        data = await self.store.get(self._key(execution_id, "state"))
        if data is None:
            return None
        state = ExecutionState.from_dict(data)
        state.completed_count = int(completed or 0)
        state.dispatched_count = int(dispatched or 0)
        return state

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize_execution(self) -> str:
        """Start an execution whose tool count is not known yet."""
        execution_id = f"{self.record_id}_{secrets.token_hex(8)}"
        ttl = self.settings.state_ttl

        await self._write_state(ExecutionState(execution_id=execution_id))
        await self.store.set(self._key(execution_id, "dispatched"), 0, ttl=ttl)
        await self.store.set(self._key(execution_id, "completed"), 0, ttl=ttl)
        self._signals[execution_id] = asyncio.Event()

        await self.flow.add_tools_entry(execution_id)
        await self.broadcaster.flow_update(
            execution_id, ExecutionStatus.STREAMING.value, "Tools section initialized"
        )

        logger.info(f"Initialized execution {execution_id} for incremental dispatch")
        return execution_id

    async def finalize_tool_count(self, execution_id: str, final_count: int) -> None:
        """Record that the stream produced ``final_count`` calls in total."""

        def change(state: ExecutionState) -> None:
            state.tool_count = final_count
            state.status = ExecutionStatus.WAITING_COMPLETION.value

        if await self._update_state(execution_id, change) is None:
            logger.warning(f"Cannot finalize tool count, no state for execution {execution_id}")
            return
        logger.info(f"Finalized tool count: {final_count} for execution {execution_id}")
        self._signal(execution_id)

    # ------------------------------------------------------------------
    # Index allocation
    # ------------------------------------------------------------------

    async def _counter_index(self, execution_id: str) -> Optional[int]:
        key = self._key(execution_id, "next_index")
        attempts = self.settings.increment_retries
        for attempt in range(1, attempts + 1):
            try:
                value = await self.store.increment(key, 1, initial=0, ttl=self.settings.state_ttl)
                return value - 1
            except StoreError as e:
                logger.warning(f"Index counter attempt {attempt}/{attempts} failed for {execution_id}: {e}")
                if attempt < attempts:
                    await asyncio.sleep(0.05)
        return None

    async def _fallback_index(self, execution_id: str) -> Optional[int]:
        try:
            value = await self.store.increment(
                self._key(execution_id, "fallback_index"), 1, initial=0, ttl=self.settings.state_ttl
            )
        except StoreError as e:
            logger.error(f"Fallback counter failed for execution {execution_id}: {e}")
            return None
        return value - 1

    async def _claim(self, execution_id: str, index: int) -> bool:
        claimed = await self.store.add(
            self._key(execution_id, f"slot:{index}"), time.time(), ttl=self.settings.state_ttl
        )
        if claimed:
            self._indices.setdefault(execution_id, set()).add(index)
        return claimed

    async def _allocate_index(self, execution_id: str) -> int:
        index = await self._counter_index(execution_id)

        if index is not None:
            if await self._claim(execution_id, index):
                return index
            logger.error(f"*** INDEX CONFLICT *** Tool index {index} already taken in execution {execution_id}")
            for candidate in range(index + 1, index + 1 + self.settings.probe_limit):
                if await self._claim(execution_id, candidate):
                    logger.warning(f"Using alternative index {candidate} for execution {execution_id}")
                    return candidate
        else:
            logger.error(f"Index counter unavailable for execution {execution_id}, trying fallback counter")
            index = await self._fallback_index(execution_id)
            if index is not None and await self._claim(execution_id, index):
                logger.warning(f"Using fallback index {index} for execution {execution_id}")
                return index

        candidate = int(time.time() * 1000) % TIMESTAMP_INDEX_SPACE
        for _ in range(TIMESTAMP_ATTEMPTS):
            if await self._claim(execution_id, candidate):
                logger.error(f"Using timestamp-based index {candidate} for execution {execution_id}")
                return candidate
            candidate = (candidate + 1) % TIMESTAMP_INDEX_SPACE
        raise IndexAllocationError(f"No free tool index for execution {execution_id}")

    # ------------------------------------------------------------------
    # Dispatch and execution
    # ------------------------------------------------------------------

    async def dispatch_tool(self, execution_id: str, tool_call: Union[ToolCall, dict]) -> int:
        """Register a tool call as it arrives and hand it off for execution.

        Safe to call concurrently for the same execution; every call gets its
        own index.

        Returns:
            The tool index, used to correlate the result later.

        Raises:
            MalformedToolCall: If the call has no usable name or arguments.
        """
        call = ToolCall.from_payload(tool_call)
        index = await self._allocate_index(execution_id)
        logger.info(f"Dispatching tool {index}: {call.name} in execution {execution_id}")

        hook_response = await self.hooks.trigger(
            "before_dispatch",
            BeforeDispatchEventData(execution_id=execution_id, tool_index=index, tool_call=call),
        )
        if hook_response and hook_response.arguments is not None:
            call = ToolCall(name=call.name, arguments=hook_response.arguments, id=call.id)

        await self.flow.record_tool(execution_id, index, call, ToolStatus.QUEUED.value)
        await self.store.increment(self._key(execution_id, "dispatched"), ttl=self.settings.state_ttl)
        await self._update_state(
            execution_id,
            lambda state: state.tools.__setitem__(str(index), ToolSnapshot(name=call.name, id=call.id)),
        )
        await self.broadcaster.tool_detected(execution_id, index, call.name, ToolStatus.QUEUED.value)
        await self.hooks.trigger(
            "tool_queued",
            ToolQueuedEventData(execution_id=execution_id, tool_index=index, tool_name=call.name),
        )

        if hook_response and hook_response.action == "skip" and hook_response.cached_result is not None:
            logger.info(f"Tool {index} answered from cache, not executed")
            await self._set_tool_status(execution_id, index, ToolStatus.RUNNING.value)
            await self._complete_tool(
                execution_id, index, call, ToolResult.success(index, hook_response.cached_result), time.time()
            )
            return index

        try:
            await self.dispatcher.submit(self, execution_id, index, call)
        except DispatchError as e:
            logger.error(f"Failed to dispatch tool {index} ({call.name}): {e}")
            await self._complete_tool(
                execution_id, index, call, ToolResult.failure(index, f"Failed to dispatch: {e}"), time.time()
            )
        return index

    async def dispatch_all(self, execution_id: str, tool_calls: Iterable[Union[ToolCall, dict]]) -> dict:
        """Dispatch a batch of calls and return without waiting for them."""
        indices = [await self.dispatch_tool(execution_id, call) for call in tool_calls]
        logger.info(f"Dispatched {len(indices)} tools in execution {execution_id}")
        return {
            "execution_id": execution_id,
            "tool_count": len(indices),
            "status": "dispatched",
            "indices": indices,
        }

    async def execute_tool(self, execution_id: str, index: int, tool_call: ToolCall) -> ToolResult:
        """Run one dispatched tool and record its outcome.

        Called exactly once per index by the dispatcher. Tool errors are
        recorded as error results, never raised.
        """
        started = time.time()
        await self._set_tool_status(execution_id, index, ToolStatus.RUNNING.value)
        await self.hooks.trigger(
            "tool_started",
            ToolStartedEventData(execution_id=execution_id, tool_index=index, tool_name=tool_call.name),
        )

        try:
            value = await self.executor.execute(tool_call.name, tool_call.arguments)
        except Exception as e:
            logger.error(f"Failed {tool_call.name} ({index}): {e}")
            result = ToolResult.failure(index, str(e) or e.__class__.__name__)
            await self._complete_tool(execution_id, index, tool_call, result, started, error=e)
            return result

        logger.info(f"Tool {tool_call.name} ({index}) completed successfully")
        result = ToolResult.success(index, value)
        await self._complete_tool(execution_id, index, tool_call, result, started)
        return result

    async def _complete_tool(
        self,
        execution_id: str,
        index: int,
        tool_call: ToolCall,
        result: ToolResult,
        started: float,
        error: Optional[Exception] = None,
    ) -> None:
        await self.store.set(self._result_key(execution_id, index), result.to_dict(), ttl=self.settings.result_ttl)
        await self.store.increment(self._key(execution_id, "completed"), ttl=self.settings.state_ttl)

        status = ToolStatus.COMPLETE.value if result.status == "success" else ToolStatus.ERROR.value
        await self._set_tool_status(execution_id, index, status, result.error)

        elapsed_ms = (time.time() - started) * 1000
        if status == ToolStatus.COMPLETE.value:
            await self.hooks.trigger(
                "tool_completed",
                ToolCompletedEventData(
                    execution_id=execution_id,
                    tool_index=index,
                    tool_name=tool_call.name,
                    result=result.result,
                    execution_time_ms=elapsed_ms,
                ),
            )
        else:
            await self.hooks.trigger(
                "tool_failed",
                ToolFailedEventData(
                    execution_id=execution_id,
                    tool_index=index,
                    tool_name=tool_call.name,
                    error=error or Exception(result.error),
                    error_message=result.error or "",
                    execution_time_ms=elapsed_ms,
                ),
            )

        logger.info(f"Tool {index} marked as {status}" + (f" with error: {result.error}" if result.error else ""))
        self._signal(execution_id)

    async def _set_tool_status(
        self,
        execution_id: str,
        index: int,
        status: str,
        error: Optional[str] = None,
    ) -> None:
        def change(state: ExecutionState) -> None:
            snapshot = state.tools.get(str(index))
            if snapshot is None:
                return
            if ToolStatus(snapshot.status).is_final and not ToolStatus(status).is_final:
                return
            snapshot.status = status
            now = time.time()
            if status == ToolStatus.RUNNING.value:
                snapshot.started_at = snapshot.started_at or now
            elif ToolStatus(status).is_final:
                snapshot.completed_at = now
            if error:
                snapshot.error = error

        await self._update_state(execution_id, change)
        await self.flow.update_tool_status(execution_id, index, status, error)
        await self.broadcaster.tool_update(execution_id, index, status)

    # ------------------------------------------------------------------
    # Waiting and results
    # ------------------------------------------------------------------

    async def await_all_dispatched(self, execution_id: str, timeout: Optional[float] = None) -> list[ToolResult]:
        """Wait until every dispatched tool has a result.

        Wakes on each in-process completion and re-reads the store every
        ``poll_interval`` for completions recorded elsewhere.

        Returns:
            Results ordered by tool index. On timeout, tools without a result
            get a synthesized timeout error. If the execution state vanished
            from the store, whatever results remain.
        """
        timeout = self.settings.timeout if timeout is None else timeout
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline = started + timeout
        event = self._signals.setdefault(execution_id, asyncio.Event())

        logger.info(f"Waiting for incrementally dispatched tools in execution {execution_id}")

        while True:
            event.clear()
            state = await self.get_execution_state(execution_id)

            if state is None:
                logger.error(f"Lost state for execution {execution_id}")
                results = await self._collect_partial_results(execution_id)
                self._forget(execution_id)
                return results

            logger.debug(f"Status: {state.completed_count}/{state.dispatched_count} tools completed")

            if state.all_completed:
                logger.info(f"All {state.dispatched_count} tools completed for execution {execution_id}")
                return await self._finish(execution_id, state, (loop.time() - started) * 1000)

            remaining = deadline - loop.time()
            if remaining <= 0:
                logger.warning(f"Timeout after {timeout}s, marking incomplete tools as failed")
                self._forget_later(execution_id)
                return await self._handle_timeout(execution_id, state, timeout)

            try:
                await asyncio.wait_for(event.wait(), timeout=min(self.settings.poll_interval, remaining))
            except asyncio.TimeoutError:
                pass

    def _result_indices(self, state: ExecutionState) -> list[int]:
        known = {int(index) for index in state.tools}
        if len(known) >= state.dispatched_count:
            return sorted(known)
        return sorted(known | set(range(state.dispatched_count)))

    async def _read_result(self, execution_id: str, index: int) -> Optional[ToolResult]:
        data = await self.store.get(self._result_key(execution_id, index))
        return ToolResult.from_dict(data) if data else None

    async def _collect(self, execution_id: str, indices: list[int]) -> list[ToolResult]:
        stored = await asyncio.gather(*(self._read_result(execution_id, index) for index in indices))
        return [result or ToolResult.pending(index) for index, result in zip(indices, stored)]

    async def _collect_partial_results(self, execution_id: str) -> list[ToolResult]:
        dispatched = await self.store.get(self._key(execution_id, "dispatched"))
        indices = self._indices.get(execution_id, set()) | set(range(int(dispatched or 0)))
        return await self._collect(execution_id, sorted(indices))

    async def collect_results_for_execution(self, execution_id: str) -> list[ToolResult]:
        """Results stored so far, ordered by index, without waiting."""
        state = await self.get_execution_state(execution_id)
        if state is None:
            return []
        stored = await asyncio.gather(
            *(self._read_result(execution_id, index) for index in self._result_indices(state))
        )
        return [result for result in stored if result is not None]

    async def tools_still_running(self, execution_id: str) -> bool:
        state = await self.get_execution_state(execution_id)
        if state is None:
            return False
        return state.dispatched_count > 0 and state.completed_count < state.dispatched_count

    async def _finish(self, execution_id: str, state: ExecutionState, elapsed_ms: float) -> list[ToolResult]:
        indices = self._result_indices(state)
        results = await self._collect(execution_id, indices)
        all_successful = bool(results) and all(result.ok for result in results)

        await self._update_state(
            execution_id,
            lambda s: setattr(s, "status", ExecutionStatus.COMPLETE.value),
        )
        await self.flow.finalize_entry(execution_id, state.dispatched_count)
        await self.broadcaster.flow_update(execution_id, ExecutionStatus.COMPLETE.value, "All tools completed")

        if all_successful:
            logger.info(f"All tools successful for execution {execution_id}")
            await self._notify_deployment(execution_id)
        await self.hooks.trigger(
            "batch_complete",
            BatchCompleteEventData(
                execution_id=execution_id,
                dispatched_count=state.dispatched_count,
                results=results,
                all_successful=all_successful,
                total_time_ms=elapsed_ms,
            ),
        )

        await self._release(execution_id, indices)
        return results

    async def _handle_timeout(self, execution_id: str, state: ExecutionState, timeout: float) -> list[ToolResult]:
        indices = self._result_indices(state)
        timed_out = []
        for index in indices:
            # set-if-absent: a result that landed meanwhile is kept
            if await self.store.add(
                self._result_key(execution_id, index),
                ToolResult.timeout(index).to_dict(),
                ttl=self.settings.result_ttl,
            ):
                timed_out.append(index)

        def change(s: ExecutionState) -> None:
            s.status = ExecutionStatus.TIMEOUT.value
            for index in timed_out:
                snapshot = s.tools.get(str(index))
                if snapshot is not None and not ToolStatus(snapshot.status).is_final:
                    snapshot.status = ToolStatus.TIMEOUT.value
                    snapshot.error = TIMEOUT_ERROR
                    snapshot.completed_at = time.time()

        await self._update_state(execution_id, change)
        await self.flow.mark_timeout(execution_id, timed_out)
        for index in timed_out:
            await self.broadcaster.tool_update(execution_id, index, ToolStatus.TIMEOUT.value)
        await self.broadcaster.flow_update(execution_id, ExecutionStatus.TIMEOUT.value, "Tool execution timeout")

        await self.hooks.trigger(
            "batch_timeout",
            BatchTimeoutEventData(
                execution_id=execution_id,
                dispatched_count=state.dispatched_count,
                timed_out_indices=timed_out,
                timeout=timeout,
            ),
        )
        return await self._collect(execution_id, indices)

    async def _notify_deployment(self, execution_id: str) -> None:
        if self.deployment_trigger is None:
            return
        try:
            await self.deployment_trigger.notify_batch_success(execution_id)
        except Exception as e:
            logger.error(f"Deployment trigger failed for execution {execution_id}: {e}")

    async def _release(self, execution_id: str, indices: list[int]) -> None:
        keys = [self._key(execution_id, suffix) for suffix in ("state",) + COUNTER_SUFFIXES]
        for index in sorted(set(indices) | self._indices.get(execution_id, set())):
            keys.append(self._key(execution_id, f"slot:{index}"))
            keys.append(self._result_key(execution_id, index))
        await self.store.delete(*keys)
        self._forget(execution_id)
        logger.debug(f"Released {len(keys)} keys of execution {execution_id}")

    def _forget(self, execution_id: str) -> None:
        self._signals.pop(execution_id, None)
        self._state_locks.pop(execution_id, None)
        self._indices.pop(execution_id, None)
        handle = self._forget_handles.pop(execution_id, None)
        if handle is not None:
            handle.cancel()

    def _forget_later(self, execution_id: str) -> None:
        """Stop waking waiters now; drop the rest once the state expires.

        Late completions of a timed-out execution still update its state
        until then.
        """
        self._signals.pop(execution_id, None)
        handle = self._forget_handles.pop(execution_id, None)
        if handle is not None:
            handle.cancel()
        loop = asyncio.get_running_loop()
        self._forget_handles[execution_id] = loop.call_later(self.settings.state_ttl, self._forget, execution_id)

    async def close(self) -> None:
        for handle in self._forget_handles.values():
            handle.cancel()
        self._forget_handles.clear()
        await self.dispatcher.close()
