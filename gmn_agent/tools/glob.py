"""Directory listing and glob tools."""

import asyncio
import glob
import os
from pathlib import Path
from typing import Any

from gmn_agent.logging import get_logger
from gmn_agent.tools.registry import BuiltinTool, Tool, ToolResult, resolve_path

log = get_logger(__name__)

MAX_GLOB_MATCHES = 200
EXCLUDED_DIRS = frozenset({
    "node_modules",
    ".git",
    "vendor",
    "dist",
    "build",
    ".next",
    ".vscode",
    "__pycache__",
})


def _is_excluded(relative: str) -> bool:
    return any(part in EXCLUDED_DIRS for part in Path(relative).parts[:-1])


def _glob_sorted(root: Path, pattern: str) -> list[str]:
    """Match ``pattern`` under ``root`` and return relative paths, newest first."""
    matches: list[tuple[float, str]] = []
    for match in glob.glob(pattern, root_dir=str(root), recursive=True):
        if _is_excluded(match):
            continue
        full = root / match
        if not full.is_file():
            continue
        try:
            mtime = full.stat().st_mtime
        except OSError:
            continue
        matches.append((mtime, Path(match).as_posix()))
    matches.sort(key=lambda item: item[0], reverse=True)
    return [name for _, name in matches]


class GlobTool(Tool):
    """Find files by pattern."""

    name = BuiltinTool.GLOB.value
    description = (
        "Finds files matching a glob pattern (e.g. '**/*.ts', 'src/**/*.py'). Returns "
        "paths relative to the search directory sorted by modification time (newest first)."
    )
    parameters = {
        "type": "object",
        "properties": {
            "pattern": {
                "type": "string",
                "description": "The glob pattern to match (e.g. '**/*.py', 'docs/*.md').",
            },
            "dir_path": {
                "type": "string",
                "description": "Optional: Directory to search within. Defaults to working directory.",
            },
        },
        "required": ["pattern"],
    }

    async def execute(self, pattern: str, dir_path: str | None = None, **kwargs: Any) -> ToolResult:
        """Find files matching pattern.

        Args:
            pattern: Glob pattern, relative to the search directory
            dir_path: Optional search directory

        Returns:
            ToolResult with one relative path per line
        """
        root = resolve_path(dir_path or ".", kwargs.get("_work_dir"))
        if not root.is_dir():
            return ToolResult(success=False, error=f"Not a directory: {root}")

        try:
            loop = asyncio.get_running_loop()
            matches = await loop.run_in_executor(None, _glob_sorted, root, pattern)
        except (OSError, ValueError) as e:
            log.error("Glob failed", pattern=pattern, error=str(e))
            return ToolResult(success=False, error=f"glob failed: {e}")

        if not matches:
            return ToolResult(content="(no matches found)")
        if len(matches) > MAX_GLOB_MATCHES:
            shown = "\n".join(matches[:MAX_GLOB_MATCHES])
            return ToolResult(content=f"{shown}\n... (truncated, {MAX_GLOB_MATCHES}+ matches)")
        return ToolResult(content="\n".join(matches))


class ListDirectoryTool(Tool):
    """List a directory's entries."""

    name = BuiltinTool.LIST_DIRECTORY.value
    description = (
        "Lists files and subdirectories in a specified directory. Returns names with "
        "a trailing / for directories."
    )
    parameters = {
        "type": "object",
        "properties": {
            "dir_path": {
                "type": "string",
                "description": "The absolute path to the directory to list.",
            },
        },
        "required": ["dir_path"],
    }

    async def execute(self, dir_path: str, **kwargs: Any) -> ToolResult:
        path = resolve_path(dir_path, kwargs.get("_work_dir"))
        try:
            with os.scandir(path) as it:
                entries = sorted(
                    entry.name + ("/" if entry.is_dir() else "")
                    for entry in it
                )
        except OSError as e:
            log.error("List directory failed", path=str(path), error=str(e))
            return ToolResult(success=False, error=f"failed to read directory: {e}")

        if not entries:
            return ToolResult(content="(empty directory)")
        return ToolResult(content="\n".join(entries))
