"""
Tool registry for managing available tools.
"""

from typing import Any, Union

import structlog

from ..config import Settings, get_settings
from ..errors import ErrorKind
from ..llm.base import ToolDefinition
from .base import BaseTool, Tool, ToolContext, ToolResult

logger = structlog.get_logger()

AnyTool = Union[BaseTool, Tool]


class ToolRegistry:
    """Registry for managing tools."""

    def __init__(self):
        self._tools: dict[str, AnyTool] = {}

    def register(self, tool: AnyTool) -> None:
        """Register a tool."""
        self._tools[tool.name] = tool
        logger.debug("Tool registered", tool_name=tool.name)

    def unregister(self, name: str) -> None:
        """Unregister a tool."""
        if name in self._tools:
            del self._tools[name]
            logger.debug("Tool unregistered", tool_name=name)

    def get(self, name: str) -> AnyTool | None:
        """Get a tool by name."""
        return self._tools.get(name)

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def list_tools(self) -> list[str]:
        """List all registered tool names."""
        return list(self._tools.keys())

    def get_definitions(self) -> list[ToolDefinition]:
        """Get all tool definitions for LLM."""
        return [tool.to_definition() for tool in self._tools.values()]

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any] | None = None,
        context: ToolContext | None = None,
    ) -> ToolResult:
        """Execute a tool by name."""
        tool = self.get(name)
        if tool is None:
            logger.warning("Unknown tool requested", tool_name=name)
            return ToolResult.error(
                ErrorKind.NOT_FOUND,
                f"Tool '{name}' not found. Available tools: {', '.join(self.list_tools()) or 'none'}",
                title=name,
            )

        logger.info("Executing tool", tool_name=name, arguments=arguments)
        result = await tool.execute(arguments, context)
        logger.info("Tool executed", tool_name=name, status=result.status.value)
        return result


def create_default_registry(settings: Settings | None = None) -> ToolRegistry:
    """Registry holding the builtin glob, read and bash tools."""
    from .file_tool import create_file_tools
    from .shell_tool import create_shell_tools

    settings = settings or get_settings()
    workspace = settings.workspace_dir or None

    registry = ToolRegistry()
    for tool in create_file_tools(workspace):
        registry.register(tool)
    for tool in create_shell_tools(workspace, timeout_seconds=settings.shell_timeout_seconds):
        registry.register(tool)
    return registry


_registry: ToolRegistry | None = None


def get_tool_registry() -> ToolRegistry:
    """Get or create the global tool registry."""
    global _registry

    if _registry is None:
        _registry = create_default_registry()

    return _registry
