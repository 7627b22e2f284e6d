"""
Tool registry for managing available tools.
"""

import asyncio
from typing import Any, Iterable

import structlog

from ..errors import ToolValidationError
from ..llm.base import ToolDefinition
from .base import Tool, ToolResult

logger = structlog.get_logger()

DEFAULT_TOOL_TIMEOUT = 120.0


def strip_null_values(value: Any) -> Any:
    """Recursively drop null-valued keys.

    Models routinely send ``null`` for optional parameters they mean to omit.
    """
    if isinstance(value, dict):
        return {k: strip_null_values(v) for k, v in value.items() if v is not None}
    if isinstance(value, list):
        return [strip_null_values(v) for v in value]
    return value


class ToolRegistry:
    """Registry for managing tools."""

    def __init__(self, default_timeout: float = DEFAULT_TOOL_TIMEOUT):
        self.default_timeout = default_timeout
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """Register a tool."""
        self._tools[tool.name] = tool
        logger.debug("Tool registered", tool_name=tool.name)

    def register_all(self, tools: Iterable[Tool]) -> None:
        for tool in tools:
            self.register(tool)

    def unregister(self, name: str) -> None:
        """Unregister a tool."""
        if name in self._tools:
            del self._tools[name]
            logger.debug("Tool unregistered", tool_name=name)

    def get(self, name: str) -> Tool | None:
        """Get a tool by name."""
        return self._tools.get(name)

    def list_tools(self) -> list[str]:
        """List all registered tool names."""
        return list(self._tools.keys())

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def subset(self, names: Iterable[str]) -> "ToolRegistry":
        """A new registry holding only the named tools that exist here."""
        registry = ToolRegistry(default_timeout=self.default_timeout)
        for name in names:
            tool = self._tools.get(name)
            if tool is not None:
                registry.register(tool)
        return registry

    def get_definitions(self) -> list[ToolDefinition]:
        """Get all tool definitions for LLM."""
        return [
            ToolDefinition(
                name=tool.name,
                description=tool.description,
                parameters=tool.get_parameters_schema(),
            )
            for tool in self._tools.values()
        ]

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        timeout: float | None = None,
    ) -> ToolResult:
        """Execute a tool by name.

        Never raises for tool-level problems: unknown tools, invalid
        arguments, timeouts and handler exceptions all come back as a failed
        ToolResult.
        """
        tool = self.get(name)
        if tool is None:
            return ToolResult(
                success=False,
                error=f"Tool '{name}' not found",
            )

        try:
            kwargs = tool.validate(strip_null_values(arguments))
        except ToolValidationError as e:
            logger.warning("Tool validation failed", tool_name=name, field=e.field)
            return ToolResult(success=False, error=str(e))

        limit = timeout or tool.timeout or self.default_timeout

        try:
            logger.info("Executing tool", tool_name=name, arguments=kwargs)
            result = await asyncio.wait_for(tool.execute(**kwargs), timeout=limit)
            logger.info("Tool executed", tool_name=name, success=result.success)
            return result
        except asyncio.TimeoutError:
            logger.error("Tool timed out", tool_name=name, timeout=limit)
            return ToolResult(
                success=False,
                error=f"Tool '{name}' timed out after {limit:g} seconds",
            )
        except Exception as e:
            logger.error("Tool execution error", tool_name=name, error=str(e))
            return ToolResult(
                success=False,
                error=str(e),
            )
