import json
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Optional

from tool_stream.exceptions import MalformedToolCall

TIMEOUT_ERROR = "Tool execution timeout"
NO_RESULT_ERROR = "No result available"


class ExecutionStatus(str, Enum):
    STREAMING = "streaming"
    WAITING_COMPLETION = "waiting_completion"
    COMPLETE = "complete"
    TIMEOUT = "timeout"


class ToolStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETE = "complete"
    ERROR = "error"
    TIMEOUT = "timeout"

    @property
    def is_final(self) -> bool:
        return self in (ToolStatus.COMPLETE, ToolStatus.ERROR, ToolStatus.TIMEOUT)


@dataclass
class ToolCall:
    """Canonical shape of one tool call coming out of an LLM stream.

    Adaptors normalize provider payloads into this; the coordinator never
    looks at any other spelling.
    """

    name: str
    arguments: dict = field(default_factory=dict)
    id: Optional[str] = None  # upstream tool_use id, echoed back in results

    @classmethod
    def from_payload(cls, payload: Any) -> "ToolCall":
        """Build a ToolCall from a canonical ``{id, name, arguments}`` dict.

        ``arguments`` may be a JSON object string. Raises MalformedToolCall
        when the name is missing or the arguments can't be read as a mapping.
        """
        if isinstance(payload, ToolCall):
            return payload
        if not isinstance(payload, dict):
            raise MalformedToolCall(f"Tool call must be a mapping, got {type(payload).__name__}")

        name = payload.get("name")
        if not isinstance(name, str) or not name.strip():
            raise MalformedToolCall(f"Tool call has no name: {payload!r}")

        arguments = payload.get("arguments")
        if arguments is None:
            arguments = {}
        elif isinstance(arguments, str):
            try:
                arguments = json.loads(arguments) if arguments.strip() else {}
            except json.JSONDecodeError as e:
                raise MalformedToolCall(f"Arguments for '{name}' are not valid JSON: {e}") from e
        if not isinstance(arguments, dict):
            raise MalformedToolCall(f"Arguments for '{name}' must be an object")

        tool_id = payload.get("id")
        return cls(name=name, arguments=arguments, id=str(tool_id) if tool_id is not None else None)

    @property
    def file_path(self) -> Optional[str]:
        value = self.arguments.get("file_path")
        return value if isinstance(value, str) else None

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}


@dataclass
class ToolResult:
    index: int
    status: str  # "success" | "error" | "pending"
    result: Any = None
    error: Optional[str] = None
    completed_at: Optional[float] = None
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.status == "success" and self.error is None

    @classmethod
    def success(cls, index: int, result: Any) -> "ToolResult":
        return cls(index=index, status="success", result=result, completed_at=time.time())

    @classmethod
    def failure(cls, index: int, error: str) -> "ToolResult":
        return cls(index=index, status="error", error=error, completed_at=time.time())

    @classmethod
    def timeout(cls, index: int) -> "ToolResult":
        return cls(
            index=index,
            status="error",
            error=TIMEOUT_ERROR,
            completed_at=time.time(),
            timed_out=True,
        )

    @classmethod
    def pending(cls, index: int) -> "ToolResult":
        return cls(index=index, status="pending", error=NO_RESULT_ERROR)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ToolResult":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class ToolSnapshot:
    name: str
    status: str = ToolStatus.QUEUED.value
    id: Optional[str] = None
    dispatched_at: float = field(default_factory=time.time)
    started_at: Optional[float] = None
    completed_at: Optional[float] = None
    error: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> "ToolSnapshot":
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


@dataclass
class ExecutionState:
    execution_id: str
    status: str = ExecutionStatus.STREAMING.value
    dispatched_count: int = 0
    completed_count: int = 0
    tool_count: Optional[int] = None  # unknown until the stream ends
    started_at: float = field(default_factory=time.time)
    tools: dict[str, ToolSnapshot] = field(default_factory=dict)

    @property
    def all_completed(self) -> bool:
        if self.tool_count == 0:
            return True
        if self.tool_count is not None and self.dispatched_count < self.tool_count:
            return False
        return self.dispatched_count > 0 and self.completed_count >= self.dispatched_count

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ExecutionState":
        tools = {
            str(index): ToolSnapshot.from_dict(snapshot)
            for index, snapshot in (data.get("tools") or {}).items()
            if snapshot
        }
        fields = {k: v for k, v in data.items() if k in cls.__dataclass_fields__ and k != "tools"}
        return cls(tools=tools, **fields)
