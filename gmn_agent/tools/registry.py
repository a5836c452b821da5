"""Built-in tool registry and base tool class."""

import asyncio
from abc import ABC, abstractmethod
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, model_validator

from gmn_agent.exceptions import ToolExecutionError, ToolNotFoundError
from gmn_agent.llm import ToolDefinition
from gmn_agent.logging import get_logger

log = get_logger(__name__)


class BuiltinTool(str, Enum):
    """Names of the tools shipped with gmn-agent."""

    RUN_SHELL_COMMAND = "run_shell_command"
    READ_FILE = "read_file"
    READ_MANY_FILES = "read_many_files"
    WRITE_FILE = "write_file"
    REPLACE = "replace"
    LIST_DIRECTORY = "list_directory"
    GLOB = "glob"
    GREP_SEARCH = "grep_search"
    ASK_USER = "ask_user"


# Read-only tools the model may call while plan mode is active.
PLAN_MODE_TOOLS: frozenset[str] = frozenset({
    BuiltinTool.READ_FILE.value,
    BuiltinTool.READ_MANY_FILES.value,
    BuiltinTool.LIST_DIRECTORY.value,
    BuiltinTool.GLOB.value,
    BuiltinTool.GREP_SEARCH.value,
    BuiltinTool.ASK_USER.value,
})


def is_plan_mode_tool(name: str) -> bool:
    """Return whether a tool is allowed while plan mode is active."""
    return name in PLAN_MODE_TOOLS


def resolve_path(raw: str, work_dir: Path | str | None) -> Path:
    """Resolve a tool path argument, anchoring relative paths to the work dir."""
    path = Path(str(raw or "")).expanduser()
    if path.is_absolute() or not work_dir:
        return path.resolve()
    return (Path(work_dir).expanduser() / path).resolve()


class ToolResult(BaseModel):
    """Result from tool execution."""

    success: bool = True
    content: str = ""
    error: str | None = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.content or "").strip()
            self.error = fallback or "Tool execution failed"
        return self

    def as_text(self) -> str:
        """Render the result the way the model sees it."""
        if self.success:
            return self.content
        return f"Error: {self.error}"


class Tool(ABC):
    """Base class for all built-in tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    timeout_seconds: float = 30.0

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool.

        Args:
            **kwargs: Tool arguments plus ``_work_dir`` (session working directory)

        Returns:
            ToolResult with success status and content
        """
        pass

    def get_definition(self) -> ToolDefinition:
        """Get the function declaration sent to the model."""
        return ToolDefinition(
            name=self.name,
            description=self.description,
            parameters=self.parameters,
        )

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Check that required arguments are present.

        Raises:
            ToolExecutionError if a required argument is missing
        """
        required = self.parameters.get("required", [])
        for field in required:
            if field not in arguments:
                raise ToolExecutionError(
                    self.name,
                    f"Missing required argument: {field}",
                )


class ToolRegistry:
    """Registry for the built-in tools."""

    def __init__(self):
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def list_tools(self) -> list[str]:
        return list(self._tools)

    def get_definitions(self) -> list[ToolDefinition]:
        """Get all tool declarations in registration order."""
        return [tool.get_definition() for tool in self._tools.values()]

    def get_plan_mode_definitions(self) -> list[ToolDefinition]:
        """Get declarations of the read-only tools only."""
        return [
            tool.get_definition()
            for name, tool in self._tools.items()
            if is_plan_mode_tool(name)
        ]

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        work_dir: Path | str | None = None,
    ) -> ToolResult:
        """Execute a tool by name.

        Args:
            name: Tool name
            arguments: Tool arguments
            work_dir: Session working directory for relative paths

        Returns:
            ToolResult from execution

        Raises:
            ToolNotFoundError if tool not found
            ToolExecutionError if execution fails or times out
        """
        tool = self.get(name)
        tool.validate_arguments(arguments)

        timeout_seconds = max(1.0, float(getattr(tool, "timeout_seconds", 30.0) or 30.0))
        log.info("Executing tool", tool=name, args=arguments)
        try:
            result = await asyncio.wait_for(
                tool.execute(**arguments, _work_dir=work_dir),
                timeout=timeout_seconds,
            )
        except TimeoutError:
            timeout_label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            raise ToolExecutionError(name, f"Execution timed out after {timeout_label}s")
        except ToolExecutionError:
            raise
        except TypeError as e:
            raise ToolExecutionError(name, f"Invalid arguments: {e}")
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e))

        if not isinstance(result, ToolResult):
            raise ToolExecutionError(name, "Tool returned invalid result payload")
        log.info("Tool executed", tool=name, success=result.success)
        return result
