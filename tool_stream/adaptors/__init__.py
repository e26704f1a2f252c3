"""Model adaptors for tool-stream.

Each adaptor turns a provider's streaming API into a sequence of ToolCall
objects and formats ordered tool results for the follow-up request.
"""

from tool_stream.adaptors.anthropic import AnthropicAdaptor, ToolUseAccumulator
from tool_stream.adaptors.openai import OpenAIAdaptor, ToolCallDeltaAccumulator

__all__ = [
    "AnthropicAdaptor",
    "OpenAIAdaptor",
    "ToolCallDeltaAccumulator",
    "ToolUseAccumulator",
]
