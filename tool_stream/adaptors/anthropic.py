"""Anthropic API adaptor for tool-stream."""

import logging
import os
from typing import Any, AsyncIterator, Optional

from anthropic import AsyncAnthropic

from tool_stream.exceptions import MalformedToolCall
from tool_stream.execution import ToolCall, ToolResult
from tool_stream.model import ModelAdaptor, result_content
from tool_stream.tools import Tool

logger = logging.getLogger(__name__)


def _field(obj: Any, name: str) -> Any:
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


class ToolUseAccumulator:
    """Rebuilds tool_use blocks from raw Messages API stream events.

    ``feed`` returns a ToolCall when a tool_use block closes, else None.
    Events can be SDK objects or plain dicts.
    """

    def __init__(self):
        self._blocks: dict[int, dict] = {}

    def feed(self, event: Any) -> Optional[ToolCall]:
        event_type = _field(event, "type")
        index = _field(event, "index")

        if event_type == "content_block_start":
            block = _field(event, "content_block")
            if _field(block, "type") == "tool_use":
                self._blocks[index] = {
                    "id": _field(block, "id"),
                    "name": _field(block, "name"),
                    "json": "",
                }
                logger.debug(f"Tool use block {index} started: {_field(block, 'name')}")

        elif event_type == "content_block_delta":
            delta = _field(event, "delta")
            if _field(delta, "type") == "input_json_delta" and index in self._blocks:
                self._blocks[index]["json"] += _field(delta, "partial_json") or ""

        elif event_type == "content_block_stop" and index in self._blocks:
            block = self._blocks.pop(index)
            return ToolCall.from_payload({
                "id": block["id"],
                "name": block["name"],
                "arguments": block["json"],
            })

        return None

    @property
    def pending(self) -> int:
        """Tool blocks started but not yet closed."""
        return len(self._blocks)


class AnthropicAdaptor(ModelAdaptor):
    """Anthropic model adaptor using the official SDK.

    Args:
        api_key: Anthropic API key. Falls back to ANTHROPIC_API_KEY environment variable.
        model: Model name (default: claude-sonnet-4-5-20250929).
        max_tokens: Maximum tokens in the response (default: 4096).
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "claude-sonnet-4-5-20250929",
        max_tokens: int = 4096,
    ):
        self.api_key = api_key or os.environ.get("ANTHROPIC_API_KEY")
        if not self.api_key:
            raise ValueError(
                "Anthropic API key not provided. "
                "Pass api_key argument or set ANTHROPIC_API_KEY environment variable."
            )

        self.model = model
        self.max_tokens = max_tokens
        self.client = AsyncAnthropic(api_key=self.api_key)

    async def stream_tool_calls(
        self,
        messages: list[dict],
        tools: list[Tool],
        **kwargs,
    ) -> AsyncIterator[ToolCall]:
        create_kwargs = {
            "model": self.model,
            "max_tokens": kwargs.get("max_tokens", self.max_tokens),
            "messages": messages,
            "stream": True,
        }
        if kwargs.get("system"):
            create_kwargs["system"] = kwargs["system"]
        if tools:
            create_kwargs["tools"] = [self._convert_tool(tool) for tool in tools]

        accumulator = ToolUseAccumulator()
        stream = await self.client.messages.create(**create_kwargs)
        async for event in stream:
            try:
                call = accumulator.feed(event)
            except MalformedToolCall as e:
                logger.error(f"Skipping malformed tool call from stream: {e}")
                continue
            if call is not None:
                yield call

        if accumulator.pending:
            logger.warning(f"Stream ended with {accumulator.pending} unfinished tool blocks")

    def format_tool_results(self, calls: list[ToolCall], results: list[ToolResult]) -> list[dict]:
        blocks = []
        for call, result in zip(calls, results):
            block = {
                "type": "tool_result",
                "tool_use_id": call.id,
                "content": result_content(result),
            }
            if not result.ok:
                block["is_error"] = True
            blocks.append(block)
        return [{"role": "user", "content": blocks}] if blocks else []

    def _convert_tool(self, tool: Tool) -> dict:
        return {
            "name": tool.name,
            "description": tool.description,
            "input_schema": tool.schema(),
        }
