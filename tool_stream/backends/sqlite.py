"""SQLite storage for conversation flows, using aiosqlite.

One row per record; ``version`` is bumped on every write and guards
``replace_flow`` with ``UPDATE ... WHERE version = ?``.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Optional

import aiosqlite

from tool_stream.exceptions import FlowConflictError, RecordNotFound
from tool_stream.flow_log import FlowRecord, FlowRecordStore

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS flow_records (
    record_id TEXT PRIMARY KEY,
    flow TEXT NOT NULL,
    version INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL
)
"""


class SQLiteFlowRecordStore(FlowRecordStore):
    """Flow records in a SQLite database file.

    Args:
        path: Database file path, or ``":memory:"``.
    """

    def __init__(self, path: str):
        self.path = str(path)
        self._connection: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()

    async def _connect(self) -> aiosqlite.Connection:
        if self._connection is None:
            self._connection = await aiosqlite.connect(self.path)
            self._connection.row_factory = aiosqlite.Row
            await self._connection.execute(SCHEMA)
            await self._connection.commit()
            logger.info(f"Opened flow record database {self.path}")
        return self._connection

    async def create(self, record_id: str, flow: Optional[list] = None) -> FlowRecord:
        connection = await self._connect()
        updated_at = datetime.now(timezone.utc)
        async with self._lock:
            await connection.execute(
                "INSERT INTO flow_records (record_id, flow, version, updated_at) VALUES (?, ?, 0, ?)",
                (record_id, json.dumps(flow or []), updated_at.isoformat()),
            )
            await connection.commit()
        return FlowRecord(record_id=record_id, flow=flow or [], version=0, updated_at=updated_at)

    async def reload(self, record_id: str) -> FlowRecord:
        connection = await self._connect()
        async with connection.execute(
            "SELECT record_id, flow, version, updated_at FROM flow_records WHERE record_id = ?",
            (record_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            raise RecordNotFound(f"Flow record '{record_id}' not found")
        return FlowRecord(
            record_id=row["record_id"],
            flow=json.loads(row["flow"]),
            version=row["version"],
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    async def replace_flow(
        self,
        record_id: str,
        flow: list,
        updated_at: datetime,
        expected_version: Optional[int] = None,
    ) -> FlowRecord:
        connection = await self._connect()
        query = "UPDATE flow_records SET flow = ?, version = version + 1, updated_at = ? WHERE record_id = ?"
        params = [json.dumps(flow, default=str), updated_at.isoformat(), record_id]
        if expected_version is not None:
            query += " AND version = ?"
            params.append(expected_version)

        async with self._lock:
            cursor = await connection.execute(query, params)
            changed = cursor.rowcount
            await cursor.close()
            await connection.commit()

        if changed == 0:
            current = await self.reload(record_id)
            raise FlowConflictError(
                f"Flow record '{record_id}' is at version {current.version}, expected {expected_version}"
            )
        return await self.reload(record_id)

    async def close(self) -> None:
        if self._connection is not None:
            await self._connection.close()
            self._connection = None
