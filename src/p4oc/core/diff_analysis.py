"""Unified-diff analysis for tool output.

Classifies diff text into typed lines, groups them into hunks, and computes
added/removed stats for one-line tool summaries.

// [LAW:single-enforcer] All unified-diff line classification happens in _classify.
// [LAW:dataflow-not-control-flow] Malformed input degrades to Context lines; nothing here raises.

This module is STABLE: pure functions, no project imports.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum


class DiffLineType(Enum):
    """Classification of a single diff line."""

    CONTEXT = "context"
    ADDED = "added"
    REMOVED = "removed"
    HEADER = "header"


@dataclass(frozen=True)
class DiffLine:
    """One classified diff line.

    line_number is the line's position in the NEW file; removed lines and
    lines outside any hunk carry None.
    """

    type: DiffLineType
    content: str
    line_number: int | None = None


@dataclass(frozen=True)
class Hunk:
    """A contiguous @@-bounded region of one file."""

    file: str
    start_line: int
    lines: tuple[DiffLine, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class DiffStats:
    """Added/removed line counts."""

    added: int
    removed: int


_HUNK_HEADER = re.compile(r"^@@ -\d+(?:,\d+)? \+(\d+)")
_NULL_PATH = "/dev/null"

# git extended header lines that precede ---/+++ and belong to no hunk
_GIT_META_PREFIXES = (
    "diff --git ",
    "index ",
    "new file mode ",
    "deleted file mode ",
    "old mode ",
    "new mode ",
    "similarity index ",
    "rename from ",
    "rename to ",
    "Binary files ",
)


def _split_lines(diff_text: str) -> list[str]:
    if not diff_text:
        return []
    lines = diff_text.split("\n")
    # A trailing newline terminates the last line, it does not start a new one.
    if lines[-1] == "":
        lines.pop()
    return [line[:-1] if line.endswith("\r") else line for line in lines]


def _hunk_start(line: str) -> int:
    match = _HUNK_HEADER.match(line)
    if match is None:
        return 0
    return int(match.group(1))


def _header_path(line: str, side_prefix: str) -> str:
    """Extract the path from a ---/+++ line, minus a/ b/ and trailing timestamps."""
    path = line[4:] if len(line) > 4 else ""
    path = path.split("\t", 1)[0].strip()
    if path.startswith(side_prefix):
        path = path[len(side_prefix):]
    return path


class _Cursor:
    """Running new-file line counter; None until the first @@ header."""

    def __init__(self) -> None:
        self.line: int | None = None

    def take(self) -> int | None:
        current = self.line
        if current is not None:
            self.line = current + 1
        return current


def _classify(line: str, cursor: _Cursor) -> DiffLine | None:
    """Classify one body line. Returns None for ---/+++ file headers."""
    if line.startswith("@@"):
        cursor.line = _hunk_start(line)
        return DiffLine(DiffLineType.HEADER, line, None)
    if line.startswith("+++") or line.startswith("---"):
        return None
    if line.startswith("+"):
        return DiffLine(DiffLineType.ADDED, line[1:], cursor.take())
    if line.startswith("-"):
        return DiffLine(DiffLineType.REMOVED, line[1:], None)
    if line.startswith("\\"):
        # "\ No newline at end of file" annotates the previous line only.
        return DiffLine(DiffLineType.CONTEXT, line, None)
    content = line[1:] if line.startswith(" ") else line
    return DiffLine(DiffLineType.CONTEXT, content, cursor.take())


def parse(diff_text: str) -> list[DiffLine]:
    """Parse unified-diff text into classified lines in input order.

    File header lines (---/+++) are dropped. Lines before the first @@ header
    are Context (or Added/Removed) without line numbers.
    """
    cursor = _Cursor()
    result: list[DiffLine] = []
    for line in _split_lines(diff_text):
        classified = _classify(line, cursor)
        if classified is not None:
            result.append(classified)
    return result


def summarize(diff_text: str) -> DiffStats | None:
    """Count added/removed body lines. None when the text carries no changes."""
    added = 0
    removed = 0
    for line in _split_lines(diff_text):
        if line.startswith("+") and not line.startswith("+++"):
            added += 1
        elif line.startswith("-") and not line.startswith("---"):
            removed += 1
    if added == 0 and removed == 0:
        return None
    return DiffStats(added=added, removed=removed)


def group_by_hunk(diff_text: str) -> list[Hunk]:
    """Split a diff into hunks, tracking the file path from ---/+++ headers.

    Each @@ header starts a new Hunk whose first line is the Header line.
    Stray lines before the first @@ of a file form a hunk with start_line 0,
    except blank ones and git extended headers.
    """
    hunks: list[Hunk] = []
    cursor = _Cursor()
    current_file = ""
    current_start = 0
    current_lines: list[DiffLine] = []

    def flush() -> None:
        if current_lines:
            hunks.append(Hunk(current_file, current_start, tuple(current_lines)))

    for line in _split_lines(diff_text):
        if line.startswith(_GIT_META_PREFIXES):
            # Hunk bodies never start with these; they open the next file.
            flush()
            current_lines = []
            cursor.line = None
            continue
        if line.startswith("---"):
            flush()
            current_lines = []
            cursor.line = None
            old_path = _header_path(line, "a/")
            current_file = "" if old_path == _NULL_PATH else old_path
            continue
        if line.startswith("+++"):
            new_path = _header_path(line, "b/")
            if new_path and new_path != _NULL_PATH:
                current_file = new_path
            continue
        if line.startswith("@@"):
            flush()
            current_lines = []
            current_start = _hunk_start(line)
        elif not current_lines and not line.strip():
            continue
        classified = _classify(line, cursor)
        if classified is not None:
            current_lines.append(classified)

    flush()
    return hunks


def diff_stats_from_metadata(metadata: dict | None) -> DiffStats | None:
    """Diff stats for a tool's metadata map, read from its "diff" key."""
    if not isinstance(metadata, dict):
        return None
    diff = metadata.get("diff")
    if not isinstance(diff, str):
        return None
    return summarize(diff)
