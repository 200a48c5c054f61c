"""Rich renderables for conversation snapshots and diffs.

Pure functions: snapshot in, renderable out. A failing part renders as an
inline error line scoped to that part; it never hides its siblings.

// [LAW:dataflow-not-control-flow] Part rendering dispatches through _PART_RENDERERS.
"""

from __future__ import annotations

import logging

from rich.console import ConsoleRenderable, Group
from rich.text import Text

from p4oc.app.branches import ConversationBranch
from p4oc.app.conversation_store import ConversationSnapshot
from p4oc.core.diff_analysis import DiffLine, DiffLineType, Hunk, summarize
from p4oc.core.parts import (
    AgentPart,
    CompactionPart,
    FilePart,
    Message,
    MessageRole,
    Part,
    PatchPart,
    ReasoningPart,
    RetryPart,
    RunStatus,
    SnapshotPart,
    StepFinishPart,
    StepStartPart,
    SubtaskPart,
    TextPart,
    ToolError,
    ToolPart,
    status_of,
)
from p4oc.core.permissions import Permission
from p4oc.core.questions import QuestionRequest
from p4oc.core.tool_descriptors import DEFAULT_CATALOG, ToolCatalog
from p4oc.core.tool_state import STATUS_ICONS, collapsed_summary, format_diff_stats, tool_diff_stats
from p4oc.pipeline.event_types import SessionStatusKind

logger = logging.getLogger(__name__)

STATUS_STYLES: dict[RunStatus, str] = {
    RunStatus.PENDING: "yellow",
    RunStatus.RUNNING: "cyan",
    RunStatus.COMPLETED: "green",
    RunStatus.ERROR: "bold red",
}

_DIFF_STYLES: dict[DiffLineType, str] = {
    DiffLineType.ADDED: "green",
    DiffLineType.REMOVED: "red",
    DiffLineType.HEADER: "bold cyan",
    DiffLineType.CONTEXT: "",
}

_DIFF_MARKERS: dict[DiffLineType, str] = {
    DiffLineType.ADDED: "+",
    DiffLineType.REMOVED: "-",
    DiffLineType.HEADER: "",
    DiffLineType.CONTEXT: " ",
}

_STREAMING_CURSOR = "▌"


# ─── Part renderers ───────────────────────────────────────────────────────────


def _render_text(part: TextPart, catalog: ToolCatalog) -> ConsoleRenderable:
    t = Text(part.content)
    if part.is_streaming:
        t.append(_STREAMING_CURSOR, style="blink")
    return t


def _render_reasoning(part: ReasoningPart, catalog: ToolCatalog) -> ConsoleRenderable:
    t = Text("  ")
    label = "thinking…" if part.end_time is None else "thought"
    t.append(label, style="dim italic")
    first_line = part.content.strip().split("\n", 1)[0]
    if first_line:
        t.append(" " + first_line[:100], style="dim")
    return t


def _render_tool(part: ToolPart, catalog: ToolCatalog) -> ConsoleRenderable:
    status = status_of(part.state)
    descriptor = catalog.descriptor(part.tool_name, part.state.input)
    t = Text("  ")
    t.append(STATUS_ICONS[status], style=STATUS_STYLES[status])
    t.append(" [{}]".format(part.tool_name or "?"), style="bold")
    t.append(" ({})".format(descriptor.icon.value), style="dim")
    if descriptor.summary:
        t.append(" " + descriptor.summary)
    stats = format_diff_stats(tool_diff_stats(part))
    if stats:
        t.append(" " + stats, style="magenta")
    if not isinstance(part.state, ToolError):
        return t
    error = Text("    ✗ ", style="bold red")
    error.append(part.state.message or "tool failed", style="red")
    return Group(t, error)


def _render_file(part: FilePart, catalog: ToolCatalog) -> ConsoleRenderable:
    return Text("  [file] {} ({})".format(part.filename or part.url, part.mime_type), style="blue")


def _render_patch(part: PatchPart, catalog: ToolCatalog) -> ConsoleRenderable:
    n = len(part.files)
    return Text("  [patch] {} file{}".format(n, "" if n == 1 else "s"), style="magenta")


def _render_step_start(part: StepStartPart, catalog: ToolCatalog) -> ConsoleRenderable | None:
    return None


def _render_step_finish(part: StepFinishPart, catalog: ToolCatalog) -> ConsoleRenderable:
    t = Text("  ── step finished", style="dim")
    if part.reason:
        t.append(" ({})".format(part.reason), style="dim")
    t.append(" · {} in / {} out".format(part.tokens_in, part.tokens_out), style="dim")
    if part.cost:
        t.append(" · ${:.4f}".format(part.cost), style="dim")
    return t


def _render_snapshot(part: SnapshotPart, catalog: ToolCatalog) -> ConsoleRenderable | None:
    return None


def _render_retry(part: RetryPart, catalog: ToolCatalog) -> ConsoleRenderable:
    t = Text("  ↻ retry #{}".format(part.attempt), style="yellow")
    if part.error_message:
        t.append(": " + part.error_message, style="yellow")
    return t


def _render_compaction(part: CompactionPart, catalog: ToolCatalog) -> ConsoleRenderable:
    kind = "auto-compacted" if part.is_automatic else "compacted"
    return Text("  ── context {} ──".format(kind), style="dim")


def _render_agent(part: AgentPart, catalog: ToolCatalog) -> ConsoleRenderable:
    return Text("  → agent {}".format(part.to_agent), style="cyan")


def _render_subtask(part: SubtaskPart, catalog: ToolCatalog) -> ConsoleRenderable:
    t = Text("  ")
    t.append(STATUS_ICONS[part.status], style=STATUS_STYLES[part.status])
    t.append(" subtask @{}".format(part.agent_name), style="bold")
    if part.description:
        t.append(" " + part.description)
    return t


_PART_RENDERERS = {
    TextPart: _render_text,
    ReasoningPart: _render_reasoning,
    ToolPart: _render_tool,
    FilePart: _render_file,
    PatchPart: _render_patch,
    StepStartPart: _render_step_start,
    StepFinishPart: _render_step_finish,
    SnapshotPart: _render_snapshot,
    RetryPart: _render_retry,
    CompactionPart: _render_compaction,
    AgentPart: _render_agent,
    SubtaskPart: _render_subtask,
}


def render_part(part: Part, catalog: ToolCatalog = DEFAULT_CATALOG) -> ConsoleRenderable | None:
    """Renderable for one part, or None for parts with no visible form."""
    try:
        return _PART_RENDERERS[type(part)](part, catalog)
    except Exception as e:
        logger.exception("render failed for %s %s", type(part).__name__, part.id)
        return Text(f"  ✗ cannot render {type(part).__name__}: {e}", style="bold red")


# ─── Messages and snapshots ───────────────────────────────────────────────────


def render_message_header(message: Message) -> Text:
    if message.role is MessageRole.USER:
        return Text("USER", style="bold blue")
    t = Text("ASSISTANT", style="bold green")
    if message.model_id:
        t.append(" " + message.model_id, style="dim")
    if message.tokens.input or message.tokens.output:
        t.append(" · {} in / {} out".format(message.tokens.input, message.tokens.output), style="dim")
    if message.cost:
        t.append(" · ${:.4f}".format(message.cost), style="dim")
    if not message.is_complete:
        t.append(" …", style="dim")
    return t


def render_message(message: Message, catalog: ToolCatalog = DEFAULT_CATALOG) -> ConsoleRenderable:
    items: list[ConsoleRenderable] = [render_message_header(message)]
    for part in message.parts:
        rendered = render_part(part, catalog)
        if rendered is not None:
            items.append(rendered)
    summary = collapsed_summary(message.parts)
    if summary and message.is_complete:
        items.append(Text("  " + summary, style="dim"))
    if message.error is not None:
        items.append(Text("  ✗ {}: {}".format(message.error.code, message.error.message), style="bold red"))
    return Group(*items)


def render_permission(permission: Permission) -> Text:
    t = Text("  ⚠ permission ", style="bold yellow")
    t.append(permission.display_title, style="yellow")
    t.append("  (call {})".format(permission.call_id), style="dim")
    return t


def render_question(request: QuestionRequest, waiting: int = 0) -> Text:
    """The question shown now, with its options; waiting counts the ones queued behind it."""
    t = Text("  ? question ", style="bold magenta")
    t.append(request.title, style="magenta")
    if waiting:
        t.append("  (+{} more)".format(waiting), style="dim")
    for question in request.questions:
        if question.options:
            labels = " | ".join(o.label for o in question.options)
            t.append("\n      " + labels, style="dim")
    return t


def render_branches(branches: tuple[ConversationBranch, ...] | list[ConversationBranch], current_id: str) -> Text:
    t = Text("branches: ", style="dim")
    for i, branch in enumerate(branches):
        if i:
            t.append("  ")
        marker = "●" if branch.is_active else "○"
        style = "bold" if branch.id == current_id else ""
        t.append("{} {} ({} msgs)".format(marker, branch.title, branch.message_count), style=style)
    return t


def render_status_line(snapshot: ConversationSnapshot) -> Text:
    t = Text()
    if snapshot.connected:
        t.append("● connected", style="green")
    else:
        t.append("○ disconnected", style="yellow")
    status = snapshot.status
    if status is not None:
        t.append(" · {}".format(status.kind.value), style="dim")
        if status.kind is SessionStatusKind.RETRY:
            t.append(" #{} {}".format(status.attempt, status.message), style="yellow")
    if snapshot.error:
        t.append(" · " + snapshot.error, style="bold red")
    return t


def render_snapshot(snapshot: ConversationSnapshot, catalog: ToolCatalog = DEFAULT_CATALOG) -> ConsoleRenderable:
    items: list[ConsoleRenderable] = [render_status_line(snapshot)]
    if len(snapshot.branches) > 1:
        items.append(render_branches(snapshot.branches, snapshot.current_branch_id))
    for message in snapshot.messages:
        items.append(render_message(message, catalog))
    for permission in snapshot.permissions:
        items.append(render_permission(permission))
    if snapshot.questions:
        items.append(render_question(snapshot.questions[0], len(snapshot.questions) - 1))
    return Group(*items)


# ─── Diffs ────────────────────────────────────────────────────────────────────


def render_diff_line(line: DiffLine) -> Text:
    number = "{:>5} ".format(line.line_number) if line.line_number is not None else "      "
    t = Text(number, style="dim")
    t.append(_DIFF_MARKERS[line.type] + line.content, style=_DIFF_STYLES[line.type])
    return t


def render_hunks(hunks: list[Hunk], diff_text: str = "") -> ConsoleRenderable:
    items: list[ConsoleRenderable] = []
    current_file = None
    for hunk in hunks:
        if hunk.file != current_file:
            current_file = hunk.file
            items.append(Text(hunk.file or "(unknown file)", style="bold"))
        items.extend(render_diff_line(line) for line in hunk.lines)
    stats = summarize(diff_text) if diff_text else None
    if stats is not None:
        items.append(Text("{} hunks · {}".format(len(hunks), format_diff_stats(stats)), style="magenta"))
    return Group(*items)
