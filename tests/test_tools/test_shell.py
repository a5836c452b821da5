from pathlib import Path

import pytest

from gmn_agent.tools.shell import ShellTool


@pytest.mark.asyncio
async def test_shell_runs_in_work_dir_and_merges_stderr(tmp_path: Path):
    tool = ShellTool(timeout=10)

    result = await tool.execute(command="pwd; echo oops 1>&2", _work_dir=str(tmp_path))

    assert result.success is True
    assert str(tmp_path.resolve()) in result.content
    assert "oops" in result.content


@pytest.mark.asyncio
async def test_shell_reports_non_zero_exit_code(tmp_path: Path):
    result = await ShellTool(timeout=10).execute(command="echo bad; exit 3", _work_dir=str(tmp_path))

    assert result.content == "bad\n\nExit code: 3"


@pytest.mark.asyncio
async def test_shell_empty_output(tmp_path: Path):
    result = await ShellTool(timeout=10).execute(command="true", _work_dir=str(tmp_path))

    assert result.content == "(empty output)"


@pytest.mark.asyncio
async def test_shell_times_out(tmp_path: Path):
    result = await ShellTool(timeout=1).execute(command="sleep 5", _work_dir=str(tmp_path))

    assert result.success is False
    assert result.error == "Command timed out after 1s"


@pytest.mark.asyncio
async def test_shell_truncates_long_output(tmp_path: Path):
    tool = ShellTool(timeout=10, max_output_chars=50)

    result = await tool.execute(command="printf 'x%.0s' $(seq 1 200)", _work_dir=str(tmp_path))

    assert result.content.startswith("x" * 50 + "\n... [truncated, 200 total chars]")
