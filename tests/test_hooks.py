"""Tests for hook system."""

import pytest

from tool_stream.hooks import (
    BatchCompleteEventData,
    BeforeDispatchEventData,
    HookEvent,
    HookRegistry,
    HookResponse,
    Middleware,
    ToolCompletedEventData,
    ToolQueuedEventData,
)
from tool_stream.execution import ToolCall


class TestHookRegistryBasic:
    @pytest.mark.asyncio
    async def test_hook_registration_and_triggering(self):
        """Test basic hook registration and triggering."""
        registry = HookRegistry()

        events = []

        @registry.on("tool_queued")
        async def capture_event(event):
            events.append(event)

        event = ToolQueuedEventData(execution_id="42_abc", tool_index=0, tool_name="search")
        await registry.trigger("tool_queued", event)

        assert len(events) == 1
        assert events[0].tool_name == "search"

    @pytest.mark.asyncio
    async def test_hook_with_response(self):
        """Test hook that returns response to influence dispatch."""
        registry = HookRegistry()

        @registry.on("before_dispatch")
        async def use_cache(event):
            if event.tool_call.name == "search":
                return {"action": "skip", "cached_result": "cached"}
            return None

        event = BeforeDispatchEventData(
            execution_id="42_abc",
            tool_index=0,
            tool_call=ToolCall(name="search"),
        )

        response = await registry.trigger("before_dispatch", event)

        assert response is not None
        assert response.action == "skip"
        assert response.cached_result == "cached"

    @pytest.mark.asyncio
    async def test_multiple_handlers(self):
        """Test multiple handlers for same hook."""
        registry = HookRegistry()

        calls = []

        @registry.on("tool_queued")
        async def handler1(event):
            calls.append("h1")

        @registry.on("tool_queued")
        async def handler2(event):
            calls.append("h2")

        await registry.trigger("tool_queued", ToolQueuedEventData("42_abc", 0, "search"))

        assert calls == ["h1", "h2"]

    @pytest.mark.asyncio
    async def test_first_response_wins(self):
        registry = HookRegistry()

        @registry.on("before_dispatch")
        async def first(event):
            return {"arguments": {"query": "rewritten"}}

        @registry.on("before_dispatch")
        async def second(event):
            return {"action": "skip", "cached_result": 1}

        response = await registry.trigger(
            "before_dispatch", BeforeDispatchEventData("42_abc", 0, ToolCall(name="search"))
        )
        assert response.arguments == {"query": "rewritten"}
        assert response.action is None

    @pytest.mark.asyncio
    async def test_hook_exception_does_not_crash(self):
        """Test that hook exception doesn't crash execution."""
        registry = HookRegistry()

        @registry.on("tool_queued")
        async def bad_hook(event):
            raise ValueError("Intentional error")

        @registry.on("tool_queued")
        async def good_hook(event):
            return None

        # Should not raise, just log warning
        response = await registry.trigger("tool_queued", ToolQueuedEventData("42_abc", 0, "search"))

        assert response is None

    def test_invalid_hook_name_raises(self):
        """Test that invalid hook name raises error."""
        registry = HookRegistry()

        with pytest.raises(ValueError) as exc_info:
            registry.register_handler("invalid_hook_name", lambda e: None)

        assert "Invalid hook name" in str(exc_info.value)

    def test_has_handlers(self):
        registry = HookRegistry()
        assert not registry.has_handlers("batch_complete")

        @registry.on("batch_complete")
        async def handler(event):
            pass

        assert registry.has_handlers("batch_complete")

    def test_clear(self):
        registry = HookRegistry()

        @registry.on("batch_complete")
        async def handler(event):
            pass

        registry.clear()
        assert not registry.has_handlers("batch_complete")


class TestHookResponse:
    def test_from_dict(self):
        response = HookResponse.from_dict({"action": "skip", "cached_result": {"content": "x"}})
        assert response.action == "skip"
        assert response.cached_result == {"content": "x"}

    def test_from_dict_none(self):
        assert HookResponse.from_dict(None) is None

    def test_from_dict_passes_response_through(self):
        response = HookResponse(action="skip")
        assert HookResponse.from_dict(response) is response

    def test_from_dict_ignores_unknown_fields(self):
        response = HookResponse.from_dict({"action": "skip", "delay_ms": 100})
        assert response.action == "skip"
        assert not hasattr(response, "delay_ms")


class TestMiddleware:
    @pytest.mark.asyncio
    async def test_middleware_class(self):
        class Timing(Middleware):
            def __init__(self):
                self.completed = []

            async def tool_completed(self, event):
                self.completed.append((event.tool_name, event.execution_time_ms))

        timing = Timing()
        registry = HookRegistry()
        registry.register_middleware(timing)

        await registry.trigger(
            "tool_completed",
            ToolCompletedEventData("42_abc", 0, "search", result="ok", execution_time_ms=12.5),
        )

        assert timing.completed == [("search", 12.5)]

    def test_middleware_registers_every_hook(self):
        registry = HookRegistry()
        registry.register_middleware(Middleware())
        for event in HookEvent:
            assert registry.has_handlers(event.value)

    @pytest.mark.asyncio
    async def test_default_middleware_methods_return_none(self):
        registry = HookRegistry()
        registry.register_middleware(Middleware())
        response = await registry.trigger(
            "batch_complete",
            BatchCompleteEventData("42_abc", 0, results=[], all_successful=False, total_time_ms=0),
        )
        assert response is None


class TestHookEventEnum:
    def test_all_hook_events_exist(self):
        assert [event.value for event in HookEvent] == [
            "before_dispatch",
            "tool_queued",
            "tool_started",
            "tool_completed",
            "tool_failed",
            "batch_complete",
            "batch_timeout",
        ]
