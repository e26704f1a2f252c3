import logging
from dataclasses import dataclass, field
from typing import AsyncIterable, Optional

from tool_stream.coordinator import ExecutionCoordinator
from tool_stream.exceptions import MalformedToolCall
from tool_stream.execution import ToolCall, ToolResult

logger = logging.getLogger(__name__)


@dataclass
class TurnResult:
    execution_id: str
    calls: list[ToolCall] = field(default_factory=list)  # ordered like results
    results: list[ToolResult] = field(default_factory=list)
    timed_out: bool = False

    @property
    def all_successful(self) -> bool:
        return bool(self.results) and all(result.ok for result in self.results)


class ToolTurnRunner:
    """Runs the tool calls of one model turn while the model is still streaming.

    Usage:
        runner = ToolTurnRunner(coordinator)
        turn = await runner.run_turn(adaptor.stream_tool_calls(messages, tools))
        messages.extend(adaptor.format_tool_results(turn.calls, turn.results))
    """

    def __init__(self, coordinator: ExecutionCoordinator, timeout: Optional[float] = None):
        self.coordinator = coordinator
        self.timeout = timeout

    async def run_turn(self, tool_calls: AsyncIterable[ToolCall]) -> TurnResult:
        execution_id = await self.coordinator.initialize_execution()
        dispatched: dict[int, ToolCall] = {}

        async for call in tool_calls:
            try:
                index = await self.coordinator.dispatch_tool(execution_id, call)
            except MalformedToolCall as e:
                logger.error(f"Dropping malformed tool call in execution {execution_id}: {e}")
                continue
            dispatched[index] = call

        await self.coordinator.finalize_tool_count(execution_id, len(dispatched))
        results = await self.coordinator.await_all_dispatched(execution_id, timeout=self.timeout)

        calls = []
        for result in results:
            call = dispatched.get(result.index)
            if call is None:
                # dispatched by another worker under the same execution
                call = ToolCall(name="unknown")
            calls.append(call)

        turn = TurnResult(
            execution_id=execution_id,
            calls=calls,
            results=results,
            timed_out=any(result.timed_out for result in results),
        )
        logger.info(
            f"Turn {execution_id}: {len(results)} tools, "
            f"{'all successful' if turn.all_successful else 'with failures'}"
        )
        return turn
