"""Shared-state backends for running coordinators across processes."""

from tool_stream.backends.redis import RedisBus, RedisStore
from tool_stream.backends.sqlite import SQLiteFlowRecordStore

__all__ = ["RedisBus", "RedisStore", "SQLiteFlowRecordStore"]
