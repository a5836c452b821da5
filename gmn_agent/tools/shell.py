"""run_shell_command tool."""

import asyncio
import os
from typing import Any

from gmn_agent.config import get_config
from gmn_agent.logging import get_logger
from gmn_agent.tools.registry import BuiltinTool, Tool, ToolResult, resolve_path

log = get_logger(__name__)


class ShellTool(Tool):
    """Run a command with ``bash -c`` in the working directory."""

    name = BuiltinTool.RUN_SHELL_COMMAND.value
    description = (
        "Executes a shell command as `bash -c <command>`. Returns the combined "
        "stdout/stderr output and the exit code if non-zero. Use this for running "
        "build commands, tests, git operations, and other CLI tasks."
    )
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The bash command to execute.",
            },
            "description": {
                "type": "string",
                "description": "Brief description of what the command does.",
            },
            "dir_path": {
                "type": "string",
                "description": "Optional: Directory to run the command in. Defaults to the working directory.",
            },
        },
        "required": ["command"],
    }

    def __init__(self, timeout: float | None = None, max_output_chars: int | None = None):
        tools_cfg = get_config().tools
        self.command_timeout = max(1.0, float(timeout or tools_cfg.shell_timeout))
        self.max_output_chars = int(max_output_chars or tools_cfg.max_output_chars)
        # Registry deadline sits above the command's own so the kill path runs first.
        self.timeout_seconds = self.command_timeout + 5.0

    async def execute(
        self,
        command: str,
        dir_path: str | None = None,
        description: str | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        """Execute a shell command.

        Args:
            command: Command line passed to ``bash -c``
            dir_path: Optional directory override
            description: Human readable purpose, logged only

        Returns:
            ToolResult with merged output
        """
        if not command.strip():
            return ToolResult(success=False, error="command is required")

        work_dir = kwargs.get("_work_dir")
        cwd = resolve_path(dir_path or ".", work_dir) if (dir_path or work_dir) else None

        log.info("Executing shell command", command=command, cwd=str(cwd or ""), description=description or "")
        try:
            process = await asyncio.create_subprocess_exec(
                "bash",
                "-c",
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                cwd=str(cwd) if cwd else None,
                env=os.environ.copy(),
            )
        except OSError as e:
            log.error("Shell command failed to start", command=command, error=str(e))
            return ToolResult(success=False, error=f"command error: {e}")

        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=self.command_timeout)
        except TimeoutError:
            process.kill()
            await process.wait()
            timeout_label = int(self.command_timeout) if self.command_timeout.is_integer() else self.command_timeout
            return ToolResult(success=False, error=f"Command timed out after {timeout_label}s")
        except asyncio.CancelledError:
            process.kill()
            await process.wait()
            raise

        output = stdout.decode("utf-8", errors="replace")
        if len(output) > self.max_output_chars:
            output = output[:self.max_output_chars] + f"\n... [truncated, {len(output)} total chars]"

        if process.returncode:
            return ToolResult(content=f"{output}\nExit code: {process.returncode}")
        return ToolResult(content=output or "(empty output)")
