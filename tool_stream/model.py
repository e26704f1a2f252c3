import json
from typing import AsyncIterator

from tool_stream.execution import ToolCall, ToolResult
from tool_stream.tools import Tool


class ModelAdaptor:
    def stream_tool_calls(
        self,
        messages: list[dict],
        tools: list[Tool],
        **kwargs,
    ) -> AsyncIterator[ToolCall]:
        """Stream a model turn, yielding each tool call once its arguments are complete."""
        raise NotImplementedError

    def format_tool_results(
        self,
        calls: list[ToolCall],
        results: list[ToolResult],
    ) -> list[dict]:
        """Turn ordered results into messages for the next model request."""
        raise NotImplementedError


def result_content(result: ToolResult) -> str:
    """Text sent back to the model for one result."""
    if not result.ok:
        return f"Error: {result.error}"
    if isinstance(result.result, str):
        return result.result
    if isinstance(result.result, dict) and isinstance(result.result.get("content"), str):
        return result.result["content"]
    return json.dumps(result.result, default=str)
