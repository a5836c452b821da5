"""Built-in tools for gmn-agent."""

from gmn_agent.tools.registry import (
    PLAN_MODE_TOOLS,
    BuiltinTool,
    Tool,
    ToolRegistry,
    ToolResult,
    is_plan_mode_tool,
)
from gmn_agent.tools.shell import ShellTool
from gmn_agent.tools.read import ReadFileTool, ReadManyFilesTool
from gmn_agent.tools.write import ReplaceTool, WriteFileTool
from gmn_agent.tools.glob import GlobTool, ListDirectoryTool
from gmn_agent.tools.grep import GrepSearchTool
from gmn_agent.tools.ask_user import AskUserTool


def create_builtin_registry() -> ToolRegistry:
    """Build a registry holding every built-in tool, in declaration order."""
    registry = ToolRegistry()
    for tool in (
        ShellTool(),
        ReadFileTool(),
        ReadManyFilesTool(),
        WriteFileTool(),
        ReplaceTool(),
        ListDirectoryTool(),
        GlobTool(),
        GrepSearchTool(),
        AskUserTool(),
    ):
        registry.register(tool)
    return registry


__all__ = [
    "PLAN_MODE_TOOLS",
    "BuiltinTool",
    "Tool",
    "ToolRegistry",
    "ToolResult",
    "is_plan_mode_tool",
    "create_builtin_registry",
    "ShellTool",
    "ReadFileTool",
    "ReadManyFilesTool",
    "WriteFileTool",
    "ReplaceTool",
    "ListDirectoryTool",
    "GlobTool",
    "GrepSearchTool",
    "AskUserTool",
]
