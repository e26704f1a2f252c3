import logging
from typing import Any, Optional

from pydantic import BaseModel, ValidationError

from tool_stream.exceptions import ToolExecutionError, ToolNotFound, ToolValidationError

logger = logging.getLogger(__name__)


class ToolInput(BaseModel):
    """Subclass this for tool-specific input validation."""


class Tool:
    name: str
    description: str
    input_model: type[BaseModel]
    aliases: tuple[str, ...] = ()

    def schema(self) -> dict:
        """Return JSON schema from Pydantic model."""
        return self.input_model.model_json_schema()

    async def execute(self, **kwargs) -> Any:
        """Execute tool. Always async; sync tools wrap sync code.

        Pydantic validates inputs before this is called.
        """
        raise NotImplementedError


class ToolExecutor:
    async def execute(self, tool_name: str, arguments: dict) -> Any:
        """Run one tool call and return its result.

        Any exception counts as a tool failure.
        """
        raise NotImplementedError


def _reported_error(result: Any) -> Optional[str]:
    """Error message a tool reported in its result instead of raising."""
    if not isinstance(result, dict):
        return None
    if result.get("error"):
        return str(result["error"])
    if result.get("success") is False:
        return "Tool execution failed"
    return None


class RegistryToolExecutor(ToolExecutor):
    """Executes registered Tool instances by name (or alias).

    Args:
        tools: Tools to register. Later tools win on name clashes.
    """

    def __init__(self, tools: list[Tool]):
        self._tools: dict[str, Tool] = {}
        for tool in tools:
            self.register(tool)

    def register(self, tool: Tool) -> None:
        for name in (tool.name, *tool.aliases):
            if name in self._tools:
                logger.warning(f"Tool name '{name}' registered twice; keeping the last one")
            self._tools[name] = tool

    @property
    def tools(self) -> list[Tool]:
        unique = []
        for tool in self._tools.values():
            if tool not in unique:
                unique.append(tool)
        return unique

    def find(self, name: str) -> Tool:
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFound(f"Tool '{name}' not found")
        return tool

    async def execute(self, tool_name: str, arguments: dict) -> Any:
        tool = self.find(tool_name)
        try:
            validated = tool.input_model(**arguments)
        except ValidationError as e:
            raise ToolValidationError(f"Invalid arguments for '{tool_name}': {e}") from e

        result = await tool.execute(**validated.model_dump())

        error = _reported_error(result)
        if error:
            raise ToolExecutionError(error)
        if result is None:
            return {"success": True, "content": f"Tool {tool_name} completed"}
        return result
