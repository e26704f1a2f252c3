class ToolStreamError(Exception):
    """Base exception for tool-stream errors."""


class MalformedToolCall(ToolStreamError):
    """Raised when a tool call has no usable name or arguments."""


class ToolNotFound(ToolStreamError):
    """Raised when the model calls a tool that isn't registered."""


class ToolValidationError(ToolStreamError):
    """Raised when tool arguments fail Pydantic validation."""


class ToolExecutionError(ToolStreamError):
    """Raised when a tool fails or reports a failed result."""


class DispatchError(ToolStreamError):
    """Raised when a tool call cannot be handed off for execution."""


class IndexAllocationError(ToolStreamError):
    """Raised when no free tool index can be claimed for an execution."""


class FlowConflictError(ToolStreamError):
    """Raised when a flow record changed between reload and write."""


class StoreError(ToolStreamError):
    """Raised when the key-value store backend fails."""


class RecordNotFound(ToolStreamError):
    """Raised when a flow record doesn't exist."""
