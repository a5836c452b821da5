"""read_file and read_many_files tools."""

import asyncio
import fnmatch
import glob
from pathlib import Path
from typing import Any

from gmn_agent.logging import get_logger
from gmn_agent.tools.glob import EXCLUDED_DIRS
from gmn_agent.tools.registry import BuiltinTool, Tool, ToolResult, resolve_path

log = get_logger(__name__)

MAX_CONTENT_CHARS = 100_000
MAX_MANY_FILES = 100
MAX_MANY_TOTAL_CHARS = 500_000


class ReadFileTool(Tool):
    """Read file contents, optionally a line window."""

    name = BuiltinTool.READ_FILE.value
    description = (
        "Reads and returns the content of a specified file. For text files, it can "
        "read specific line ranges using offset and limit parameters."
    )
    parameters = {
        "type": "object",
        "properties": {
            "file_path": {
                "type": "string",
                "description": "The absolute path to the file to read.",
            },
            "offset": {
                "type": "number",
                "description": "Optional: The 0-based line number to start reading from.",
            },
            "limit": {
                "type": "number",
                "description": "Optional: Maximum number of lines to read.",
            },
        },
        "required": ["file_path"],
    }

    async def execute(
        self,
        file_path: str,
        offset: int | float | None = None,
        limit: int | float | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        """Read a file.

        With an offset or limit the selected lines are returned numbered
        from 1; otherwise the whole file, truncated past 100k chars.
        """
        path = resolve_path(file_path, kwargs.get("_work_dir"))
        try:
            if not path.exists():
                return ToolResult(success=False, error=f"File not found: {file_path}")
            if not path.is_file():
                return ToolResult(success=False, error=f"Not a file: {file_path}")

            content = path.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            log.error("Read failed", path=str(path), error=str(e))
            return ToolResult(success=False, error=f"failed to read file: {e}")

        lines = content.split("\n")
        start = max(0, int(offset or 0))
        count = int(limit) if limit is not None else len(lines)

        if start > 0 or count < len(lines):
            if start >= len(lines):
                return ToolResult(content="(offset beyond end of file)")
            window = lines[start:start + max(0, count)]
            numbered = "".join(f"{start + i + 1}: {line}\n" for i, line in enumerate(window))
            return ToolResult(content=numbered)

        if len(content) > MAX_CONTENT_CHARS:
            content = (
                content[:MAX_CONTENT_CHARS]
                + f"\n... (truncated, total {len(content)} chars. Use offset/limit to read more.)"
            )
        return ToolResult(content=content)


def _expand_patterns(root: Path, include: list[str], exclude: list[str]) -> list[Path]:
    """Resolve include globs under ``root`` to files, in pattern order, without duplicates."""
    seen: set[Path] = set()
    files: list[Path] = []
    for pattern in include:
        for match in sorted(glob.glob(pattern, root_dir=str(root), recursive=True)):
            relative = Path(match)
            if any(part in EXCLUDED_DIRS for part in relative.parts[:-1]):
                continue
            full = (root / relative).resolve()
            if full in seen or not full.is_file():
                continue
            if any(fnmatch.fnmatch(full.name, skip) for skip in exclude):
                continue
            seen.add(full)
            files.append(full)
    return files


class ReadManyFilesTool(Tool):
    """Concatenate the files matched by several glob patterns."""

    name = BuiltinTool.READ_MANY_FILES.value
    description = (
        "Reads content from multiple files specified by glob patterns within the working "
        "directory. Concatenates text file content into a single string. Use this when "
        "you need to read many files at once."
    )
    parameters = {
        "type": "object",
        "properties": {
            "include": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Glob patterns or paths to include (e.g. ['src/**/*.ts', 'README.md']).",
            },
            "exclude": {
                "type": "array",
                "items": {"type": "string"},
                "description": "Optional: File name patterns to exclude.",
            },
        },
        "required": ["include"],
    }

    async def execute(
        self,
        include: list[str],
        exclude: list[str] | None = None,
        **kwargs: Any,
    ) -> ToolResult:
        patterns = [p for p in include or [] if isinstance(p, str) and p]
        if not patterns:
            return ToolResult(success=False, error="include patterns are required")
        skips = [p for p in exclude or [] if isinstance(p, str) and p]

        root = resolve_path(".", kwargs.get("_work_dir"))
        loop = asyncio.get_running_loop()
        files = await loop.run_in_executor(None, _expand_patterns, root, patterns, skips)

        sections: list[str] = []
        total = 0
        for path in files[:MAX_MANY_FILES]:
            if total >= MAX_MANY_TOTAL_CHARS:
                break
            try:
                content = path.read_text(encoding="utf-8", errors="replace")
            except OSError as e:
                log.debug("Skipping unreadable file", path=str(path), error=str(e))
                continue
            if total + len(content) > MAX_MANY_TOTAL_CHARS:
                content = content[:MAX_MANY_TOTAL_CHARS - total] + "\n... (truncated)"
            sections.append(f"=== {path} ===\n{content}\n\n")
            total += len(content)

        if not sections:
            return ToolResult(content="(no files matched the patterns)")
        return ToolResult(content=f"Read {len(sections)} files:\n\n" + "".join(sections))
