"""OpenAI API adaptor for tool-stream."""

import json
import logging
import os
from typing import AsyncIterator, Optional

import httpx

from tool_stream.exceptions import MalformedToolCall
from tool_stream.execution import ToolCall, ToolResult
from tool_stream.model import ModelAdaptor, result_content
from tool_stream.tools import Tool

logger = logging.getLogger(__name__)


class ToolCallDeltaAccumulator:
    """Joins streamed ``delta.tool_calls`` fragments into whole tool calls.

    OpenAI streams each call's arguments in pieces keyed by ``index``. A call
    is complete once a later index starts or the choice reports a
    ``finish_reason``.
    """

    def __init__(self):
        self._calls: dict[int, dict] = {}
        self._emitted: set[int] = set()

    def feed(self, chunk: dict) -> list[ToolCall]:
        """Consume one parsed SSE chunk; return calls completed by it."""
        ready = []
        for choice in chunk.get("choices") or []:
            delta = choice.get("delta") or {}
            for fragment in delta.get("tool_calls") or []:
                index = fragment.get("index", 0)
                if index not in self._calls:
                    # a new call starts, so every earlier one is complete
                    ready.extend(self._flush(below=index))
                    self._calls[index] = {"id": None, "name": "", "arguments": ""}
                call = self._calls[index]
                if fragment.get("id"):
                    call["id"] = fragment["id"]
                function = fragment.get("function") or {}
                if function.get("name"):
                    call["name"] += function["name"]
                if function.get("arguments"):
                    call["arguments"] += function["arguments"]
            if choice.get("finish_reason"):
                ready.extend(self.finish())
        return ready

    def finish(self) -> list[ToolCall]:
        """Flush every call still open."""
        return self._flush()

    def _flush(self, below: Optional[int] = None) -> list[ToolCall]:
        ready = []
        for index in sorted(self._calls):
            if index in self._emitted or (below is not None and index >= below):
                continue
            self._emitted.add(index)
            try:
                ready.append(ToolCall.from_payload(self._calls[index]))
            except MalformedToolCall as e:
                logger.error(f"Skipping malformed tool call {index} from stream: {e}")
        return ready


class OpenAIAdaptor(ModelAdaptor):
    """OpenAI-compatible streaming adaptor.

    Supports OpenAI API and compatible endpoints (local models, proxies, etc.).

    Args:
        api_key: OpenAI API key. Falls back to OPENAI_API_KEY environment variable.
        model: Model name (default: gpt-5-mini).
        base_url: Base URL for the API (default: https://api.openai.com/v1).
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gpt-5-mini",
        base_url: Optional[str] = None,
    ):
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY")
        if not self.api_key:
            raise ValueError(
                "OpenAI API key not provided. "
                "Pass api_key argument or set OPENAI_API_KEY environment variable."
            )

        self.model = model
        self.base_url = base_url or "https://api.openai.com/v1"

    async def stream_tool_calls(
        self,
        messages: list[dict],
        tools: list[Tool],
        **kwargs,
    ) -> AsyncIterator[ToolCall]:
        """Stream a chat completion and yield tool calls as they complete.

        Raises:
            ValueError: If the API answers with an error status.
            httpx.HTTPError: If the request fails.
        """
        payload = {
            "model": self.model,
            "messages": messages,
            "stream": True,
        }
        if tools:
            payload["tools"] = [self._convert_tool(tool) for tool in tools]
            payload["tool_choice"] = kwargs.get("tool_choice", "auto")

        accumulator = ToolCallDeltaAccumulator()

        async with httpx.AsyncClient() as client:
            async with client.stream(
                "POST",
                f"{self.base_url}/chat/completions",
                json=payload,
                headers={
                    "Authorization": f"Bearer {self.api_key}",
                    "Content-Type": "application/json",
                },
                timeout=kwargs.get("timeout", 60.0),
            ) as response:
                if response.status_code != 200:
                    body = await response.aread()
                    raise ValueError(f"OpenAI API error ({response.status_code}): {body.decode(errors='replace')}")

                async for line in response.aiter_lines():
                    chunk = self._parse_line(line)
                    if chunk is None:
                        continue
                    for call in accumulator.feed(chunk):
                        yield call

        for call in accumulator.finish():
            yield call

    def _parse_line(self, line: str) -> Optional[dict]:
        """Decode one SSE line; None for keep-alives, comments and [DONE]."""
        line = line.strip()
        if not line.startswith("data:"):
            return None
        data = line[len("data:"):].strip()
        if not data or data == "[DONE]":
            return None
        try:
            return json.loads(data)
        except json.JSONDecodeError:
            logger.warning(f"Ignoring undecodable stream chunk: {data[:100]}")
            return None

    def format_tool_results(self, calls: list[ToolCall], results: list[ToolResult]) -> list[dict]:
        return [
            {
                "role": "tool",
                "tool_call_id": call.id,
                "content": result_content(result),
            }
            for call, result in zip(calls, results)
        ]

    def _convert_tool(self, tool: Tool) -> dict:
        return {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.schema(),
            },
        }
