"""Tests for the SQLite flow record store."""

from datetime import datetime, timezone

import pytest
import pytest_asyncio

from tool_stream.backends.sqlite import SQLiteFlowRecordStore
from tool_stream.exceptions import FlowConflictError, RecordNotFound
from tool_stream.execution import ToolCall
from tool_stream.flow_log import FlowLog


@pytest_asyncio.fixture
async def store(tmp_path):
    store = SQLiteFlowRecordStore(tmp_path / "flows.db")
    yield store
    await store.close()


class TestSQLiteFlowRecordStore:
    @pytest.mark.asyncio
    async def test_create_and_reload(self, store):
        await store.create("42", [{"type": "text", "content": "hi"}])
        record = await store.reload("42")
        assert record.flow == [{"type": "text", "content": "hi"}]
        assert record.version == 0
        assert isinstance(record.updated_at, datetime)

    @pytest.mark.asyncio
    async def test_missing_record(self, store):
        with pytest.raises(RecordNotFound):
            await store.reload("404")

    @pytest.mark.asyncio
    async def test_replace_bumps_version(self, store):
        await store.create("42")
        record = await store.replace_flow("42", [{"type": "tools"}], datetime.now(timezone.utc), expected_version=0)
        assert record.version == 1
        assert record.flow == [{"type": "tools"}]

    @pytest.mark.asyncio
    async def test_stale_version_conflicts(self, store):
        await store.create("42")
        await store.replace_flow("42", [], datetime.now(timezone.utc), expected_version=0)
        with pytest.raises(FlowConflictError):
            await store.replace_flow("42", [{"type": "text"}], datetime.now(timezone.utc), expected_version=0)
        assert (await store.reload("42")).flow == []

    @pytest.mark.asyncio
    async def test_replace_missing_record(self, store):
        with pytest.raises(RecordNotFound):
            await store.replace_flow("404", [], datetime.now(timezone.utc))

    @pytest.mark.asyncio
    async def test_flow_log_on_sqlite(self, store):
        await store.create("42")
        log = FlowLog(store, "42")
        await log.add_tools_entry("42_abc")
        await log.record_tool("42_abc", 1, ToolCall(name="os-write", arguments={"file_path": "a.txt"}))
        await log.update_tool_status("42_abc", 1, "complete")

        entry = await log.find_tools_entry("42_abc")
        assert entry["tools"][0] is None
        assert entry["tools"][1]["status"] == "complete"
        assert (await store.reload("42")).version == 3
