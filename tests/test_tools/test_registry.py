import asyncio
from typing import Any

import pytest

from gmn_agent.exceptions import ToolExecutionError, ToolNotFoundError
from gmn_agent.tools import PLAN_MODE_TOOLS, BuiltinTool, create_builtin_registry, is_plan_mode_tool
from gmn_agent.tools.registry import Tool, ToolRegistry, ToolResult


class SleepyTool(Tool):
    name = "sleepy"
    parameters = {"type": "object", "properties": {}}
    timeout_seconds = 1.0

    async def execute(self, **kwargs: Any) -> ToolResult:
        await asyncio.sleep(5)
        return ToolResult(content="late")


class WorkDirTool(Tool):
    name = "where"
    parameters = {"type": "object", "properties": {"label": {"type": "string"}}, "required": ["label"]}

    async def execute(self, label: str, **kwargs: Any) -> ToolResult:
        return ToolResult(content=f"{label}@{kwargs.get('_work_dir')}")


class ExplodingTool(Tool):
    name = "explode"

    async def execute(self, **kwargs: Any) -> ToolResult:
        raise RuntimeError("kaboom")


def test_tool_result_populates_error_from_content_on_failure() -> None:
    result = ToolResult(success=False, content="command failed with exit code 1")

    assert result.error == "command failed with exit code 1"
    assert result.as_text() == "Error: command failed with exit code 1"


def test_tool_result_keeps_explicit_error_on_failure() -> None:
    result = ToolResult(success=False, content="stderr output", error="explicit error")

    assert result.error == "explicit error"


def test_builtin_registry_declares_every_builtin_tool() -> None:
    registry = create_builtin_registry()

    assert registry.list_tools() == [tool.value for tool in BuiltinTool]
    assert {d.name for d in registry.get_plan_mode_definitions()} == set(PLAN_MODE_TOOLS)


def test_plan_mode_allow_list_is_read_only() -> None:
    assert is_plan_mode_tool("read_file") is True
    assert is_plan_mode_tool("ask_user") is True
    assert is_plan_mode_tool("write_file") is False
    assert is_plan_mode_tool("run_shell_command") is False
    assert is_plan_mode_tool("srv__read_file") is False


@pytest.mark.asyncio
async def test_execute_passes_work_dir() -> None:
    registry = ToolRegistry()
    registry.register(WorkDirTool())

    result = await registry.execute("where", {"label": "x"}, work_dir="/tmp/project")

    assert result.content == "x@/tmp/project"


@pytest.mark.asyncio
async def test_execute_rejects_missing_required_argument() -> None:
    registry = ToolRegistry()
    registry.register(WorkDirTool())

    with pytest.raises(ToolExecutionError, match="Missing required argument: label"):
        await registry.execute("where", {})


@pytest.mark.asyncio
async def test_execute_times_out() -> None:
    registry = ToolRegistry()
    registry.register(SleepyTool())

    with pytest.raises(ToolExecutionError, match="Execution timed out after 1s"):
        await registry.execute("sleepy", {})


@pytest.mark.asyncio
async def test_execute_wraps_unexpected_exceptions() -> None:
    registry = ToolRegistry()
    registry.register(ExplodingTool())

    with pytest.raises(ToolExecutionError, match="kaboom"):
        await registry.execute("explode", {})


@pytest.mark.asyncio
async def test_unknown_tool() -> None:
    with pytest.raises(ToolNotFoundError):
        await ToolRegistry().execute("missing", {})


@pytest.mark.asyncio
async def test_ask_user_is_not_executable_through_the_registry() -> None:
    registry = create_builtin_registry()

    with pytest.raises(ToolExecutionError, match="conversation engine"):
        await registry.execute("ask_user", {"questions": []})
