"""Load and render instruction templates, and build the system prompt.

Templates live next to this module. A personal copy in
``~/.gmn-agent/instructions/`` overrides the packaged one of the same name.
"""

from __future__ import annotations

import os
import platform
from datetime import datetime
from pathlib import Path
from typing import Mapping


_PERSONAL_DIR = Path("~/.gmn-agent/instructions").expanduser()

SYSTEM_PROMPT_TEMPLATE = "system_prompt.md"
ENVIRONMENT_TEMPLATE = "environment.md"
PLAN_MODE_TEMPLATE = "plan_mode.md"
PROJECT_INSTRUCTIONS_FILE = "GEMINI.md"

MAX_TREE_ITEMS = 200
MAX_SUBDIR_ITEMS = 10
SKIPPED_TREE_DIRS = frozenset({"node_modules", "vendor", "__pycache__", "dist", "build"})


class _SafeFormatDict(dict[str, str]):
    """Leave unknown placeholders untouched instead of raising KeyError."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class InstructionLoader:
    """Read and render instruction templates with personal-override support."""

    def __init__(
        self,
        base_dir: Path | str | None = None,
        personal_dir: Path | str | None = None,
    ):
        self.base_dir = self._resolve_base_dir(base_dir)
        self.personal_dir: Path = (
            Path(personal_dir).expanduser().resolve()
            if personal_dir is not None
            else _PERSONAL_DIR.resolve()
        )
        self._cache: dict[str, str] = {}

    @staticmethod
    def _resolve_base_dir(base_dir: Path | str | None) -> Path:
        if base_dir is not None:
            return Path(base_dir).expanduser().resolve()
        env_dir = os.getenv("GMN_AGENT_INSTRUCTIONS_DIR")
        if env_dir:
            return Path(env_dir).expanduser().resolve()
        return Path(__file__).resolve().parent

    def _path(self, name: str) -> Path:
        personal = self.personal_dir / name
        if personal.is_file():
            return personal
        return self.base_dir / name

    def load(self, name: str) -> str:
        """Load instruction template content by filename."""
        cached = self._cache.get(name)
        if cached is not None:
            return cached

        path = self._path(name)
        if not path.is_file():
            raise FileNotFoundError(f"Instruction template not found: {path}")
        content = path.read_text(encoding="utf-8").strip()
        self._cache[name] = content
        return content

    def render(self, name: str, **variables: object) -> str:
        """Render template with ``str.format`` placeholder substitution."""
        template = self.load(name)
        values: Mapping[str, str] = {k: str(v) for k, v in variables.items()}
        return template.format_map(_SafeFormatDict(values))


def _visible_entries(directory: Path) -> list[os.DirEntry]:
    try:
        with os.scandir(directory) as it:
            entries = [entry for entry in it if not entry.name.startswith(".")]
    except OSError:
        return []
    entries.sort(key=lambda entry: (not entry.is_dir(), entry.name))
    return entries


def build_directory_tree(root: Path | str, max_items: int = MAX_TREE_ITEMS) -> str:
    """Render two levels of ``root`` as a tree, directories first.

    Hidden entries and dependency/build directories are skipped; each
    subdirectory shows at most ten children and the whole tree stops after
    ``max_items`` entries.
    """
    root_path = Path(root)
    lines = [f"{root_path}/"]
    entries = [e for e in _visible_entries(root_path) if e.name not in SKIPPED_TREE_DIRS]

    count = 0
    for index, entry in enumerate(entries):
        if count >= max_items:
            lines.append("└── ... (truncated)")
            break

        is_last = index == len(entries) - 1
        branch = "└── " if is_last else "├── "
        if not entry.is_dir():
            lines.append(branch + entry.name)
            count += 1
            continue

        lines.append(branch + entry.name + "/")
        count += 1
        indent = "    " if is_last else "│   "
        children = _visible_entries(Path(entry.path))
        for child_index, child in enumerate(children):
            if child_index >= MAX_SUBDIR_ITEMS:
                lines.append(f"{indent}└── ... ({len(children) - child_index} more)")
                count += 1
                break
            child_branch = "└── " if child_index == len(children) - 1 else "├── "
            lines.append(indent + child_branch + child.name + ("/" if child.is_dir() else ""))
            count += 1

    return "\n".join(lines) + "\n"


def _workspace_section(work_dir: Path) -> str:
    parts = [
        f"Current working directory: {work_dir}",
        "",
        "Folder structure of the current working directory:",
        "",
        "```",
        build_directory_tree(work_dir).rstrip("\n"),
        "```",
    ]
    if (work_dir / ".git").exists():
        parts += ["", "This directory is managed by a git repository."]

    project_file = work_dir / PROJECT_INSTRUCTIONS_FILE
    if project_file.is_file():
        try:
            project_text = project_file.read_text(encoding="utf-8")
        except OSError:
            project_text = ""
        if project_text:
            parts += ["", f"# Project Instructions ({PROJECT_INSTRUCTIONS_FILE})", "", project_text.rstrip()]
    return "\n".join(parts)


def build_system_prompt(
    work_dir: Path | str | None = None,
    plan_mode: bool = False,
    loader: InstructionLoader | None = None,
    now: datetime | None = None,
) -> str:
    """Assemble the system instruction for one generation request."""
    loader = loader or InstructionLoader()
    stamp = (now or datetime.now()).strftime("%Y-%m-%d (%A)")
    workspace = _workspace_section(Path(work_dir)) if work_dir else ""

    prompt = loader.load(SYSTEM_PROMPT_TEMPLATE) + "\n\n" + loader.render(
        ENVIRONMENT_TEMPLATE,
        date=stamp,
        platform=f"{platform.system().lower()}/{platform.machine().lower()}",
        workspace=workspace,
    )
    if plan_mode:
        prompt += "\n\n" + loader.load(PLAN_MODE_TEMPLATE)
    return prompt
