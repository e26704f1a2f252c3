"""Hook system for tool-stream.

Lets callers observe and steer tool executions without touching the
coordinator. Follows Flask's before_request/after_request pattern.

Architecture:
- HookRegistry is the CORE implementation
- Decorator (@hooks.on) and Middleware are convenience wrappers
- Everything goes through HookRegistry
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


class HookEvent(str, Enum):
    """Available hook points in a tool execution."""

    BEFORE_DISPATCH = "before_dispatch"
    TOOL_QUEUED = "tool_queued"

    TOOL_STARTED = "tool_started"
    TOOL_COMPLETED = "tool_completed"
    TOOL_FAILED = "tool_failed"

    BATCH_COMPLETE = "batch_complete"
    BATCH_TIMEOUT = "batch_timeout"


# ============================================================================
# Hook Event Data Classes
# ============================================================================


@dataclass
class BeforeDispatchEventData:
    """Called once an index is allocated, before the tool is handed off."""

    execution_id: str
    tool_index: int
    tool_call: Any  # ToolCall instance
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class ToolQueuedEventData:
    """Called after the tool is recorded as queued."""

    execution_id: str
    tool_index: int
    tool_name: str


@dataclass
class ToolStartedEventData:
    """Called when a worker starts running the tool."""

    execution_id: str
    tool_index: int
    tool_name: str


@dataclass
class ToolCompletedEventData:
    """Called after a tool returns successfully."""

    execution_id: str
    tool_index: int
    tool_name: str
    result: Any
    execution_time_ms: float


@dataclass
class ToolFailedEventData:
    """Called after a tool raises or reports failure."""

    execution_id: str
    tool_index: int
    tool_name: str
    error: Exception
    error_message: str
    execution_time_ms: float


@dataclass
class BatchCompleteEventData:
    """Called once every dispatched tool of an execution has finished."""

    execution_id: str
    dispatched_count: int
    results: List[Any]  # List of ToolResult objects
    all_successful: bool
    total_time_ms: float
    timestamp: datetime = field(default_factory=datetime.now)


@dataclass
class BatchTimeoutEventData:
    """Called when the wait for an execution times out."""

    execution_id: str
    dispatched_count: int
    timed_out_indices: List[int]
    timeout: float
    timestamp: datetime = field(default_factory=datetime.now)


# ============================================================================
# Hook Response
# ============================================================================


@dataclass
class HookResponse:
    """What a hook can return to influence execution."""

    action: Optional[str] = None  # 'skip' is honoured by before_dispatch
    cached_result: Any = None  # Result recorded instead of running the tool
    arguments: Optional[Dict[str, Any]] = None  # Replacement tool arguments

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> Optional["HookResponse"]:
        """Convert dict to HookResponse."""
        if data is None:
            return None
        if isinstance(data, HookResponse):
            return data
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})


# ============================================================================
# Hook Registry
# ============================================================================


class HookRegistry:
    """Central registry for all hooks.

    Supports both decorator-style and direct registration.

    Usage:
        hooks = HookRegistry()

        @hooks.on('tool_completed')
        async def log_tool(event):
            print(f"Tool {event.tool_index}: {event.tool_name}")

        # Or direct registration
        async def my_hook(event):
            pass
        hooks.register_handler('batch_complete', my_hook)
    """

    def __init__(self):
        self._handlers: Dict[str, List[Callable]] = {
            event.value: [] for event in HookEvent
        }

    def on(self, hook_name: str):
        """Decorator for registering hook handlers.

        Args:
            hook_name: Name of the hook (e.g., 'tool_completed')

        Returns:
            Decorator function
        """

        def decorator(func: Callable) -> Callable:
            self.register_handler(hook_name, func)
            return func

        return decorator

    def register_handler(self, hook_name: str, handler: Callable) -> None:
        """Register a hook handler.

        Args:
            hook_name: Name of the hook
            handler: Async function to call

        Raises:
            ValueError: If hook_name is not valid
        """
        if hook_name not in self._handlers:
            valid_hooks = [e.value for e in HookEvent]
            raise ValueError(
                f"Invalid hook name '{hook_name}'. Valid hooks: {valid_hooks}"
            )
        self._handlers[hook_name].append(handler)

    async def trigger(
        self,
        hook_name: str,
        event_data: Any,
    ) -> Optional[HookResponse]:
        """Execute all handlers for a hook.

        Args:
            hook_name: Name of the hook
            event_data: Event data to pass to handlers

        Returns:
            First non-None response from any handler, or None
        """
        handlers = self._handlers.get(hook_name, [])

        for handler in handlers:
            try:
                result = await handler(event_data)
                if result is not None:
                    return HookResponse.from_dict(result)
            except Exception as e:
                # Log but don't fail execution
                logger.warning(f"Hook '{hook_name}' raised exception: {e}")

        return None

    def has_handlers(self, hook_name: str) -> bool:
        """Check if hook has any registered handlers."""
        return len(self._handlers.get(hook_name, [])) > 0

    def register_middleware(self, middleware: "Middleware") -> None:
        """Register every overridden hook method of a middleware instance."""
        for hook_name in self._handlers:
            handler = getattr(middleware, hook_name, None)
            if handler is not None and asyncio.iscoroutinefunction(handler):
                self.register_handler(hook_name, handler)

    def clear(self) -> None:
        """Clear all handlers (useful for testing)."""
        for hook_name in self._handlers:
            self._handlers[hook_name] = []


# ============================================================================
# Middleware Base Class (Optional, for stateful handlers)
# ============================================================================


class Middleware:
    """Base class for middleware (stateful hook handlers).

    Override methods for hooks you want to handle.

    Usage:
        class Timing(Middleware):
            async def tool_completed(self, event):
                print(f"{event.tool_name}: {event.execution_time_ms:.0f}ms")

        hooks = HookRegistry()
        hooks.register_middleware(Timing())
    """

    async def before_dispatch(self, event: BeforeDispatchEventData) -> Optional[Dict]:
        pass

    async def tool_queued(self, event: ToolQueuedEventData) -> Optional[Dict]:
        pass

    async def tool_started(self, event: ToolStartedEventData) -> Optional[Dict]:
        pass

    async def tool_completed(self, event: ToolCompletedEventData) -> Optional[Dict]:
        pass

    async def tool_failed(self, event: ToolFailedEventData) -> Optional[Dict]:
        pass

    async def batch_complete(self, event: BatchCompleteEventData) -> Optional[Dict]:
        pass

    async def batch_timeout(self, event: BatchTimeoutEventData) -> Optional[Dict]:
        pass
