"""grep_search tool: regex search over file contents."""

import asyncio
import fnmatch
import os
import re
from pathlib import Path
from typing import Any

from gmn_agent.logging import get_logger
from gmn_agent.tools.glob import EXCLUDED_DIRS
from gmn_agent.tools.registry import BuiltinTool, Tool, ToolResult, resolve_path

log = get_logger(__name__)

MAX_MATCHES = 500
MAX_OUTPUT_CHARS = 50_000
_SNIFF_BYTES = 8192


def _looks_binary(path: Path) -> bool:
    try:
        with open(path, "rb") as f:
            return b"\0" in f.read(_SNIFF_BYTES)
    except OSError:
        return True


def _search(root: Path, regex: re.Pattern[str], include: str) -> list[str]:
    results: list[str] = []
    for current, dirs, files in os.walk(root):
        dirs[:] = sorted(d for d in dirs if d not in EXCLUDED_DIRS)
        for filename in sorted(files):
            if include and not fnmatch.fnmatch(filename, include):
                continue
            path = Path(current) / filename
            if _looks_binary(path):
                continue
            relative = path.relative_to(root).as_posix()
            try:
                with open(path, encoding="utf-8", errors="replace") as f:
                    for line_no, line in enumerate(f, start=1):
                        line = line.rstrip("\n")
                        if regex.search(line):
                            results.append(f"{relative}:{line_no}:{line}")
                            if len(results) >= MAX_MATCHES:
                                return results
            except OSError:
                continue
    return results


class GrepSearchTool(Tool):
    """Search file contents with a regular expression."""

    name = BuiltinTool.GREP_SEARCH.value
    description = (
        "Searches for a regex pattern within file contents. Returns matching lines "
        "with file paths and line numbers."
    )
    parameters = {
        "type": "object",
        "properties": {
            "pattern": {
                "type": "string",
                "description": "The regex pattern to search for.",
            },
            "dir_path": {
                "type": "string",
                "description": "Optional: Directory to search within. Defaults to working directory.",
            },
            "include": {
                "type": "string",
                "description": "Optional: Glob pattern to filter file names (e.g. '*.js').",
            },
        },
        "required": ["pattern"],
    }
    timeout_seconds = 60.0

    async def execute(
        self,
        pattern: str,
        dir_path: str | None = None,
        include: str | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        try:
            regex = re.compile(pattern)
        except re.error as e:
            return ToolResult(success=False, error=f"invalid regex pattern: {e}")

        root = resolve_path(dir_path or ".", kwargs.get("_work_dir"))
        if not root.is_dir():
            return ToolResult(success=False, error=f"Not a directory: {root}")

        loop = asyncio.get_running_loop()
        results = await loop.run_in_executor(None, _search, root, regex, include or "")
        if not results:
            return ToolResult(content="(no matches found)")

        output = "\n".join(results)
        if len(output) > MAX_OUTPUT_CHARS:
            output = output[:MAX_OUTPUT_CHARS] + "\n... (output truncated)"
        return ToolResult(content=output)
