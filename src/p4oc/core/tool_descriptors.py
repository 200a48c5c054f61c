"""Tool descriptors: icon category and human summary for a tool invocation.

Pure lookups from a tool name plus its invocation arguments. Tool names are
matched case-insensitively. The icon table is open for extension through
the `tool_aliases` setting (see ToolCatalog.from_settings).

// [LAW:dataflow-not-control-flow] Every per-tool decision is a table lookup, not a branch.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable

logger = logging.getLogger(__name__)


class IconCategory(Enum):
    EDIT = "edit"
    WRITE = "write"
    READ = "read"
    TERMINAL = "terminal"
    FOLDER = "folder"
    FOLDER_OPEN = "folder_open"
    SEARCH = "search"
    WEB_SEARCH = "web_search"
    CLOUD = "cloud"
    AGENT = "agent"
    CHECKLIST = "checklist"
    BOOK = "book"
    HELP = "help"
    GIT = "git"
    BUILD = "build"


def _aliases(category: IconCategory, *names: str) -> dict[str, IconCategory]:
    return {name: category for name in names}


_ICON_ALIASES: dict[str, IconCategory] = {
    **_aliases(IconCategory.EDIT, "edit", "multiedit", "str_replace", "str_replace_based_edit_tool"),
    **_aliases(IconCategory.WRITE, "write", "create", "file_write"),
    **_aliases(IconCategory.READ, "read", "view", "file_read", "cat"),
    **_aliases(IconCategory.TERMINAL, "bash", "shell", "cmd", "terminal", "interactive_bash"),
    **_aliases(IconCategory.FOLDER, "list", "ls", "dir", "list_files"),
    **_aliases(IconCategory.FOLDER_OPEN, "glob"),
    **_aliases(IconCategory.SEARCH, "search", "grep", "find", "ripgrep"),
    **_aliases(IconCategory.WEB_SEARCH, "websearch", "web_search", "web-search", "codesearch"),
    **_aliases(IconCategory.CLOUD, "fetch", "curl", "wget", "webfetch"),
    **_aliases(IconCategory.AGENT, "task", "agent"),
    **_aliases(IconCategory.CHECKLIST, "todowrite", "todoread"),
    **_aliases(IconCategory.BOOK, "skill", "slashcommand"),
    **_aliases(IconCategory.HELP, "question"),
}

_GIT_PREFIX = "git"


# ─── Argument helpers ─────────────────────────────────────────────────────────


def _arg(tool_input: dict, *keys: str) -> str | None:
    """First string-valued argument among keys."""
    for key in keys:
        value = tool_input.get(key)
        if isinstance(value, str):
            return value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
    return None


def _file_name(path: str) -> str:
    return path.rsplit("/", 1)[-1]


def _first_line(text: str) -> str:
    return text.split("\n", 1)[0]


def _file_arg(tool_input: dict) -> str:
    path = _arg(tool_input, "filePath", "file_path", "path")
    return _file_name(path) if path else ""


def _command_arg(tool_input: dict) -> str:
    command = _arg(tool_input, "command", "tmux_command")
    return _first_line(command)[:60] if command else ""


def _search_arg(tool_input: dict) -> str:
    pattern = _arg(tool_input, "pattern") or ""
    path = _arg(tool_input, "path")
    if path is not None:
        return f'"{pattern}" in {_file_name(path)}'
    return f'"{pattern}"'


def _question_arg(tool_input: dict) -> str:
    questions = tool_input.get("questions")
    if not isinstance(questions, list):
        return ""
    count = len(questions)
    return f"{count} question{'' if count == 1 else 's'}"


def _each(names: tuple[str, ...], fn: Callable[[dict], str]) -> dict[str, Callable[[dict], str]]:
    return {name: fn for name in names}


_FILE_TOOLS = (
    "edit", "multiedit", "str_replace", "str_replace_based_edit_tool",
    "read", "view", "file_read", "cat",
    "write", "create", "file_write",
)

_SUMMARY_EXTRACTORS: dict[str, Callable[[dict], str]] = {
    **_each(_FILE_TOOLS, _file_arg),
    **_each(("bash", "shell", "cmd", "terminal", "interactive_bash"), _command_arg),
    "task": lambda inp: (_arg(inp, "description") or "")[:50],
    **_each(("skill", "slashcommand"), lambda inp: _arg(inp, "name", "command") or ""),
    **_each(("grep", "search"), _search_arg),
    "glob": lambda inp: _arg(inp, "pattern") or "",
    **_each(("webfetch", "fetch"), lambda inp: (_arg(inp, "url") or "")[:50]),
    "question": _question_arg,
}


# ─── Headlines (collapsed one-liners) ─────────────────────────────────────────


def _path_name(tool_input: dict) -> str:
    path = _arg(tool_input, "filePath", "path", "relative_path")
    return _file_name(path) if path else "file"


def _read_headline(name: str, tool_input: dict) -> str:
    lines = _arg(tool_input, "limit")
    file_name = _path_name(tool_input)
    if lines is not None and lines.isdigit():
        return f"Read {file_name} ({lines} lines)"
    return f"Read {file_name}"


def _glob_headline(name: str, tool_input: dict) -> str:
    pattern = _arg(tool_input, "pattern", "file_mask")
    return f"Glob {pattern}" if pattern else name


def _grep_headline(name: str, tool_input: dict) -> str:
    pattern = _arg(tool_input, "pattern", "substring_pattern")
    return f"Search: {pattern[:40]}" if pattern else name


def _bash_headline(name: str, tool_input: dict) -> str:
    command = _arg(tool_input, "command")
    return command[:60] if command else name


_HEADLINE_BUILDERS: dict[str, Callable[[str, dict], str]] = {
    **{n: _bash_headline for n in ("bash", "execute", "shell")},
    **{n: _read_headline for n in ("read", "read_file")},
    **{n: (lambda name, inp: f"Modified {_path_name(inp)}") for n in ("edit", "write")},
    **{n: _glob_headline for n in ("glob", "find")},
    **{n: _grep_headline for n in ("grep", "search")},
}


# ─── Public API ───────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ToolDescriptor:
    """Display data for one tool invocation."""

    name: str
    icon: IconCategory
    summary: str
    headline: str


def describe(tool_name: str, tool_input: dict) -> str:
    """Short argument summary ("main.py", '"TODO" in src'); empty when unknown."""
    extractor = _SUMMARY_EXTRACTORS.get(tool_name.lower(), lambda _: "")
    return extractor(tool_input or {})


def headline(tool_name: str, tool_input: dict) -> str:
    """Collapsed one-liner ("Read main.py (40 lines)"); falls back to the tool name."""
    builder = _HEADLINE_BUILDERS.get(tool_name.lower(), lambda name, _: name)
    return builder(tool_name, tool_input or {})


class ToolCatalog:
    """Icon lookup table: built-in aliases plus configured overrides."""

    def __init__(self, aliases: dict[str, IconCategory] | None = None):
        self._aliases: dict[str, IconCategory] = dict(_ICON_ALIASES)
        for name, category in (aliases or {}).items():
            self.register(name, category)

    @classmethod
    def from_settings(cls, settings: dict) -> "ToolCatalog":
        """Build a catalog from the `tool_aliases` settings map.

        Entries naming an unknown icon category are logged and skipped.
        """
        catalog = cls()
        raw = settings.get("tool_aliases", {})
        if not isinstance(raw, dict):
            logger.warning("tool_aliases setting is not a map; ignoring")
            return catalog
        by_value = {c.value: c for c in IconCategory}
        for name, value in raw.items():
            category = by_value.get(value) if isinstance(value, str) else None
            if category is None:
                logger.warning("tool alias %r: unknown icon category %r", name, value)
                continue
            catalog.register(name, category)
        return catalog

    def register(self, tool_name: str, category: IconCategory) -> None:
        self._aliases[tool_name.lower()] = category

    def icon_for(self, tool_name: str) -> IconCategory:
        """Icon category for a tool name; git* tools are GIT, the rest default to BUILD."""
        name = tool_name.lower()
        category = self._aliases.get(name)
        if category is not None:
            return category
        if name.startswith(_GIT_PREFIX):
            return IconCategory.GIT
        return IconCategory.BUILD

    def descriptor(self, tool_name: str, tool_input: dict) -> ToolDescriptor:
        return ToolDescriptor(
            name=tool_name,
            icon=self.icon_for(tool_name),
            summary=describe(tool_name, tool_input),
            headline=headline(tool_name, tool_input),
        )


DEFAULT_CATALOG = ToolCatalog()


def icon_for(tool_name: str) -> IconCategory:
    return DEFAULT_CATALOG.icon_for(tool_name)
