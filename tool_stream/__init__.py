from tool_stream.adaptors.anthropic import AnthropicAdaptor
from tool_stream.adaptors.openai import OpenAIAdaptor

from tool_stream.broadcast import Broadcaster, MemoryBus, NotificationBus
from tool_stream.coordinator import ExecutionCoordinator
from tool_stream.deploy import DeploymentTrigger, WebhookDeploymentTrigger
from tool_stream.dispatch import Dispatcher, InlineDispatcher, QueuedDispatcher
from tool_stream.exceptions import (
    DispatchError,
    FlowConflictError,
    IndexAllocationError,
    MalformedToolCall,
    RecordNotFound,
    StoreError,
    ToolExecutionError,
    ToolNotFound,
    ToolStreamError,
    ToolValidationError,
)
from tool_stream.execution import (
    ExecutionState,
    ExecutionStatus,
    ToolCall,
    ToolResult,
    ToolSnapshot,
    ToolStatus,
)
from tool_stream.flow_log import FlowLog, FlowRecord, FlowRecordStore, MemoryFlowRecordStore
from tool_stream.hooks import (
    BatchCompleteEventData,
    BatchTimeoutEventData,
    BeforeDispatchEventData,
    HookEvent,
    HookRegistry,
    HookResponse,
    Middleware,
    ToolCompletedEventData,
    ToolFailedEventData,
    ToolQueuedEventData,
    ToolStartedEventData,
)
from tool_stream.model import ModelAdaptor
from tool_stream.runner import ToolTurnRunner, TurnResult
from tool_stream.settings import CoordinatorSettings
from tool_stream.store import KeyValueStore, MemoryStore
from tool_stream.tools import RegistryToolExecutor, Tool, ToolExecutor, ToolInput

__all__ = [
    # Core
    "ExecutionCoordinator",
    "ToolTurnRunner",
    "TurnResult",
    "CoordinatorSettings",
    "ExecutionState",
    "ExecutionStatus",
    "ToolCall",
    "ToolResult",
    "ToolSnapshot",
    "ToolStatus",
    # Tools
    "Tool",
    "ToolInput",
    "ToolExecutor",
    "RegistryToolExecutor",
    # Dispatch
    "Dispatcher",
    "InlineDispatcher",
    "QueuedDispatcher",
    # Storage and notifications
    "KeyValueStore",
    "MemoryStore",
    "FlowLog",
    "FlowRecord",
    "FlowRecordStore",
    "MemoryFlowRecordStore",
    "Broadcaster",
    "NotificationBus",
    "MemoryBus",
    "DeploymentTrigger",
    "WebhookDeploymentTrigger",
    # Adaptors
    "ModelAdaptor",
    "OpenAIAdaptor",
    "AnthropicAdaptor",
    # Hooks
    "HookRegistry",
    "HookEvent",
    "HookResponse",
    "Middleware",
    # Hook Event Data
    "BeforeDispatchEventData",
    "ToolQueuedEventData",
    "ToolStartedEventData",
    "ToolCompletedEventData",
    "ToolFailedEventData",
    "BatchCompleteEventData",
    "BatchTimeoutEventData",
    # Exceptions
    "ToolStreamError",
    "MalformedToolCall",
    "ToolNotFound",
    "ToolValidationError",
    "ToolExecutionError",
    "DispatchError",
    "IndexAllocationError",
    "FlowConflictError",
    "StoreError",
    "RecordNotFound",
]
