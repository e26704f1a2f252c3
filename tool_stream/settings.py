"""Runtime configuration for the coordinator and its backends."""

import os
from typing import Optional

from pydantic import BaseModel, Field

ENV_PREFIX = "TOOL_STREAM_"


class CoordinatorSettings(BaseModel):
    """Tunables shared by the coordinator, dispatchers and backends.

    TTLs are in seconds. ``state_ttl`` has to outlive a slow LLM turn, since an
    expired execution state ends any wait with partial results.
    """

    key_prefix: str = Field(default="streaming_tools", description="Namespace for all store keys")
    state_ttl: int = Field(default=600, gt=0, description="TTL of execution state and counters")
    result_ttl: int = Field(default=300, gt=0, description="TTL of per-tool results")
    timeout: float = Field(default=180.0, gt=0, description="Batch completion timeout")
    poll_interval: float = Field(default=0.5, gt=0, description="Store re-read interval while waiting")
    probe_limit: int = Field(default=50, ge=0, description="Slots probed after an index conflict")
    increment_retries: int = Field(default=3, ge=1, description="Attempts at the index counter")
    flow_write_retries: int = Field(default=10, ge=1, description="Compare-and-swap attempts on the flow log")
    workers: int = Field(default=4, ge=1, description="Worker tasks for queued dispatch")
    queue_maxsize: int = Field(default=0, ge=0, description="Queued dispatch capacity (0 = unbounded)")
    redis_url: Optional[str] = Field(default=None, description="redis:// URL for the Redis backends")
    deploy_webhook_url: Optional[str] = Field(default=None, description="Endpoint told about successful batches")

    @classmethod
    def from_env(cls, environ: Optional[dict] = None, **overrides) -> "CoordinatorSettings":
        """Build settings from ``TOOL_STREAM_*`` environment variables.

        ``TOOL_STREAM_POLL_INTERVAL=0.2`` sets ``poll_interval``; explicit
        keyword overrides win over the environment.
        """
        environ = os.environ if environ is None else environ
        values = {}
        for name in cls.model_fields:
            raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None and raw != "":
                values[name] = raw
        values.update(overrides)
        return cls.model_validate(values)

    def key(self, execution_id: str, suffix: Optional[str] = None) -> str:
        parts = [self.key_prefix, execution_id]
        if suffix:
            parts.append(suffix)
        return ":".join(parts)
