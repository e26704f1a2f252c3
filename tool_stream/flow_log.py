"""Reconciliation of tool state into a message's conversation flow.

The conversation flow is an ordered list of UI entries owned by a record
(a chat message). Other parts of the conversation pipeline write to the same
list, so every change here reloads the record, edits a deep copy and writes the
whole list back guarded by the record version. A version mismatch means
somebody else wrote in between; the edit is replayed on the fresh copy.
"""

import asyncio
import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from tool_stream.exceptions import FlowConflictError, RecordNotFound
from tool_stream.execution import ToolCall, ToolStatus

logger = logging.getLogger(__name__)

FINAL_STATUSES = {ToolStatus.COMPLETE.value, ToolStatus.ERROR.value, ToolStatus.TIMEOUT.value}
INTERMEDIATE_STATUSES = {ToolStatus.QUEUED.value, ToolStatus.RUNNING.value}


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _isonow() -> str:
    return _now().isoformat()


@dataclass
class FlowRecord:
    record_id: str
    flow: list = field(default_factory=list)
    version: int = 0
    updated_at: datetime = field(default_factory=_now)


class FlowRecordStore:
    """Whole-document storage for conversation flows."""

    async def reload(self, record_id: str) -> FlowRecord:
        """Return a fresh copy of the record.

        Raises:
            RecordNotFound: If the record doesn't exist.
        """
        raise NotImplementedError("Subclasses must implement reload()")

    async def replace_flow(
        self,
        record_id: str,
        flow: list,
        updated_at: datetime,
        expected_version: Optional[int] = None,
    ) -> FlowRecord:
        """Replace the whole flow and bump the version.

        Raises:
            FlowConflictError: If ``expected_version`` is given and stale.
            RecordNotFound: If the record doesn't exist.
        """
        raise NotImplementedError("Subclasses must implement replace_flow()")


class MemoryFlowRecordStore(FlowRecordStore):
    def __init__(self):
        self._records: dict[str, FlowRecord] = {}
        self._lock = asyncio.Lock()

    async def create(self, record_id: str, flow: Optional[list] = None) -> FlowRecord:
        async with self._lock:
            record = FlowRecord(record_id=record_id, flow=copy.deepcopy(flow or []))
            self._records[record_id] = record
            return copy.deepcopy(record)

    async def reload(self, record_id: str) -> FlowRecord:
        async with self._lock:
            if record_id not in self._records:
                raise RecordNotFound(f"Flow record '{record_id}' not found")
            return copy.deepcopy(self._records[record_id])

    async def replace_flow(
        self,
        record_id: str,
        flow: list,
        updated_at: datetime,
        expected_version: Optional[int] = None,
    ) -> FlowRecord:
        async with self._lock:
            record = self._records.get(record_id)
            if record is None:
                raise RecordNotFound(f"Flow record '{record_id}' not found")
            if expected_version is not None and record.version != expected_version:
                raise FlowConflictError(
                    f"Flow record '{record_id}' is at version {record.version}, expected {expected_version}"
                )
            record.flow = copy.deepcopy(flow)
            record.version += 1
            record.updated_at = updated_at
            return copy.deepcopy(record)


def find_tools_entry(flow: list, execution_id: str) -> Optional[dict]:
    """Most recent tools entry for ``execution_id``, scanning from the end."""
    for item in reversed(flow):
        if isinstance(item, dict) and item.get("type") == "tools" and item.get("execution_id") == execution_id:
            return item
    return None


class FlowLog:
    """Tool-related edits to one record's conversation flow."""

    def __init__(self, records: FlowRecordStore, record_id: str, max_retries: int = 10):
        self.records = records
        self.record_id = record_id
        self.max_retries = max_retries

    async def _update(self, change: Callable[[list], bool], description: str) -> bool:
        """Apply ``change`` to a copy of the flow and write it back.

        ``change`` returns False when there is nothing to write. Returns True
        if a new version was stored.
        """
        for attempt in range(1, self.max_retries + 1):
            record = await self.records.reload(self.record_id)
            flow = copy.deepcopy(record.flow)
            if not change(flow):
                return False
            try:
                await self.records.replace_flow(
                    self.record_id,
                    flow,
                    updated_at=_now(),
                    expected_version=record.version,
                )
                return True
            except FlowConflictError as e:
                if attempt == self.max_retries:
                    logger.error(
                        f"Giving up on flow update '{description}' for record {self.record_id} "
                        f"after {attempt} attempts: {e}"
                    )
                    return False
                logger.warning(f"Flow conflict on '{description}', retry {attempt}/{self.max_retries}")
                await asyncio.sleep(min(0.01 * (2**attempt), 2.0))
        return False

    async def _update_entry(
        self,
        execution_id: str,
        change: Callable[[dict], bool],
        description: str,
    ) -> bool:
        def apply(flow: list) -> bool:
            entry = find_tools_entry(flow, execution_id)
            if entry is None:
                logger.warning(f"No tools entry for execution {execution_id} in record {self.record_id}")
                return False
            return change(entry)

        return await self._update(apply, description)

    async def find_tools_entry(self, execution_id: str) -> Optional[dict]:
        record = await self.records.reload(self.record_id)
        return find_tools_entry(record.flow, execution_id)

    async def add_tools_entry(self, execution_id: str) -> bool:
        """Append an empty tools entry that fills in as calls arrive."""

        def apply(flow: list) -> bool:
            if find_tools_entry(flow, execution_id) is not None:
                return False
            flow.append({
                "type": "tools",
                "status": "streaming",
                "expanded": True,
                "execution_id": execution_id,
                "tools": [],
                "timestamp": _isonow(),
            })
            return True

        return await self._update(apply, "add tools entry")

    async def record_tool(
        self,
        execution_id: str,
        index: int,
        tool_call: ToolCall,
        status: str = ToolStatus.QUEUED.value,
    ) -> bool:
        """Put a tool at ``index``, padding the array with None holes."""

        def apply(entry: dict) -> bool:
            tools = entry.setdefault("tools", [])
            while len(tools) <= index:
                tools.append(None)
            tools[index] = {
                "id": tool_call.id,
                "name": tool_call.name,
                "arguments": copy.deepcopy(tool_call.arguments),
                "file_path": tool_call.file_path,
                "status": status,
                "index": index,
                "added_at": _isonow(),
            }
            return True

        return await self._update_entry(execution_id, apply, f"record tool {index}")

    async def update_tool_status(
        self,
        execution_id: str,
        index: int,
        status: str,
        error: Optional[str] = None,
    ) -> bool:
        """Move a tool to ``status``.

        Re-applying the current status is a no-op, and queued/running never
        replace a final status.
        """

        def apply(entry: dict) -> bool:
            tools = entry.get("tools") or []
            if index >= len(tools) or tools[index] is None:
                logger.warning(f"Tool {index} not found in execution {execution_id}")
                return False
            tool = tools[index]
            current = tool.get("status")
            if current in FINAL_STATUSES and status in INTERMEDIATE_STATUSES:
                logger.info(f"Tool {index} already '{current}', not moving back to '{status}'")
                return False
            if current == status and (error is None or tool.get("error") == error):
                return False

            tool["status"] = status
            if status == ToolStatus.RUNNING.value and not tool.get("started_at"):
                tool["started_at"] = _isonow()
            if status in FINAL_STATUSES:
                tool["completed_at"] = _isonow()
            if error:
                tool["error"] = error
            return True

        return await self._update_entry(execution_id, apply, f"tool {index} -> {status}")

    async def finalize_entry(self, execution_id: str, final_count: int) -> bool:
        def apply(entry: dict) -> bool:
            if entry.get("status") == "complete" and entry.get("final_count") == final_count:
                return False
            entry["status"] = "complete"
            entry["expanded"] = False
            entry["final_count"] = final_count
            entry["completed_at"] = _isonow()
            return True

        return await self._update_entry(execution_id, apply, "finalize")

    async def mark_timeout(self, execution_id: str, indices: list[int]) -> bool:
        """Mark the entry timed out and the given unfinished tools with it."""

        def apply(entry: dict) -> bool:
            changed = entry.get("status") != "timeout"
            entry["status"] = "timeout"
            entry["expanded"] = False
            tools = entry.get("tools") or []
            for index in indices:
                if index >= len(tools) or tools[index] is None:
                    continue
                tool = tools[index]
                if tool.get("status") in (ToolStatus.COMPLETE.value, ToolStatus.ERROR.value):
                    continue
                if tool.get("status") != ToolStatus.TIMEOUT.value:
                    tool["status"] = ToolStatus.TIMEOUT.value
                    tool["error"] = "Execution timeout"
                    tool["completed_at"] = _isonow()
                    changed = True
            return changed

        return await self._update_entry(execution_id, apply, "timeout")
