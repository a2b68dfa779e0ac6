"""
Tools module for agent capabilities.
"""

from .base import (
    Attachment,
    BaseTool,
    Tool,
    ToolContext,
    ToolParameter,
    ToolResult,
    ToolStatus,
)
from .registry import ToolRegistry, create_default_registry, get_tool_registry
from .file_tool import GlobTool, ReadTool
from .shell_tool import BashTool

__all__ = [
    "Attachment",
    "BaseTool",
    "Tool",
    "ToolContext",
    "ToolParameter",
    "ToolResult",
    "ToolStatus",
    "ToolRegistry",
    "create_default_registry",
    "get_tool_registry",
    "GlobTool",
    "ReadTool",
    "BashTool",
]
