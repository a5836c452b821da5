"""File writing tools: write_file and replace."""

from typing import Any

from gmn_agent.logging import get_logger
from gmn_agent.tools.registry import BuiltinTool, Tool, ToolResult, resolve_path

log = get_logger(__name__)


class WriteFileTool(Tool):
    """Create or overwrite a file."""

    name = BuiltinTool.WRITE_FILE.value
    description = (
        "Writes content to a specified file. Creates the file if it doesn't exist, "
        "or overwrites it if it does. Creates parent directories as needed."
    )
    parameters = {
        "type": "object",
        "properties": {
            "file_path": {
                "type": "string",
                "description": "The absolute path to the file to write.",
            },
            "content": {
                "type": "string",
                "description": "The content to write to the file.",
            },
        },
        "required": ["file_path", "content"],
    }

    async def execute(self, file_path: str, content: str, **kwargs: Any) -> ToolResult:
        path = resolve_path(file_path, kwargs.get("_work_dir"))
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as e:
            log.error("Write failed", path=str(path), error=str(e))
            return ToolResult(success=False, error=f"failed to write file: {e}")

        log.info("Wrote file", path=str(path), chars=len(content))
        return ToolResult(content=f"Successfully wrote {len(content)} chars to {path}")


class ReplaceTool(Tool):
    """Replace exact literal text inside a file."""

    name = BuiltinTool.REPLACE.value
    description = (
        "Replaces text within a file. Finds the exact literal old_string and replaces "
        "it with new_string. Always read the file first to get the exact text to "
        "replace. Include enough context to uniquely identify the location."
    )
    parameters = {
        "type": "object",
        "properties": {
            "file_path": {
                "type": "string",
                "description": "The absolute path to the file to modify.",
            },
            "old_string": {
                "type": "string",
                "description": (
                    "The exact literal text to replace. Must match exactly including "
                    "whitespace and indentation."
                ),
            },
            "new_string": {
                "type": "string",
                "description": "The replacement text.",
            },
            "expected_replacements": {
                "type": "number",
                "description": "Optional: Number of replacements expected. Defaults to 1.",
            },
        },
        "required": ["file_path", "old_string", "new_string"],
    }

    async def execute(
        self,
        file_path: str,
        old_string: str,
        new_string: str,
        expected_replacements: int | float = 1,
        **kwargs: Any,
    ) -> ToolResult:
        """Replace ``old_string`` exactly ``expected_replacements`` times.

        Fails without touching the file when the match count differs.
        """
        if not old_string:
            return ToolResult(success=False, error="old_string must not be empty")

        path = resolve_path(file_path, kwargs.get("_work_dir"))
        try:
            content = path.read_text(encoding="utf-8")
        except OSError as e:
            return ToolResult(success=False, error=f"failed to read file: {e}")

        expected = int(expected_replacements or 1)
        count = content.count(old_string)
        if count == 0:
            return ToolResult(
                success=False,
                error="old_string not found in file. Make sure the text matches exactly including whitespace",
            )
        if expected == 1 and count > 1:
            return ToolResult(
                success=False,
                error=(
                    f"old_string matches {count} locations. Include more context to uniquely "
                    f"identify the target, or set expected_replacements={count}"
                ),
            )
        if count != expected:
            return ToolResult(
                success=False,
                error=f"expected {expected} replacements but found {count} matches",
            )

        try:
            path.write_text(content.replace(old_string, new_string, expected), encoding="utf-8")
        except OSError as e:
            log.error("Replace failed", path=str(path), error=str(e))
            return ToolResult(success=False, error=f"failed to write file: {e}")

        return ToolResult(content=f"Successfully replaced {expected} occurrence(s) in {path}")
