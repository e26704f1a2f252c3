"""Run one streamed Anthropic turn with incremental tool dispatch.

Requires ANTHROPIC_API_KEY. Tools start running while the model is still
streaming the rest of its answer.
"""

import asyncio
import logging

from pydantic import Field

from tool_stream import (
    AnthropicAdaptor,
    CoordinatorSettings,
    ExecutionCoordinator,
    HookRegistry,
    MemoryBus,
    MemoryFlowRecordStore,
    MemoryStore,
    QueuedDispatcher,
    RegistryToolExecutor,
    Tool,
    ToolInput,
    ToolTurnRunner,
)


class CityInput(ToolInput):
    city: str = Field(description="City name")


class GetPopulation(Tool):
    name = "get_population"
    description = "Returns the approximate population of a city"
    input_model = CityInput

    async def execute(self, city: str) -> str:
        await asyncio.sleep(0.5)
        populations = {"tokyo": "14M", "paris": "2.1M", "new york": "8.3M"}
        return populations.get(city.lower(), "unknown")


hooks = HookRegistry()


@hooks.on("tool_completed")
async def on_tool_completed(event):
    print(f"[hook] tool {event.tool_index} {event.tool_name} -> {event.result} ({event.execution_time_ms:.0f}ms)")


async def main():
    flow_store = MemoryFlowRecordStore()
    await flow_store.create("demo")

    tools = [GetPopulation()]
    coordinator = ExecutionCoordinator(
        "demo",
        MemoryStore(),
        flow_store,
        RegistryToolExecutor(tools),
        bus=MemoryBus(),
        dispatcher=QueuedDispatcher(workers=4),
        hooks=hooks,
        settings=CoordinatorSettings.from_env(),
    )
    adaptor = AnthropicAdaptor()
    messages = [{"role": "user", "content": "What's the population of Tokyo and Paris? Use the tool for each."}]

    try:
        turn = await ToolTurnRunner(coordinator).run_turn(adaptor.stream_tool_calls(messages, tools))
    finally:
        await coordinator.close()

    for message in adaptor.format_tool_results(turn.calls, turn.results):
        print(message)
    print("flow:", (await flow_store.reload("demo")).flow)


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    asyncio.run(main())
