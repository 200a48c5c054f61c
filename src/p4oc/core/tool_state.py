"""Tool-call lifecycle: transitions and derived display state.

States move forward only: Pending -> Running -> Completed | Error, with
Pending -> Error for denials and pre-execution failures. Terminal states
absorb every later transition.

// [LAW:single-enforcer] advance() is the only place tool states change.
// [LAW:dataflow-not-control-flow] Transition handling is a dispatch table keyed by transition class.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from p4oc.core.diff_analysis import DiffStats, diff_stats_from_metadata
from p4oc.core.parts import (
    JsonDict,
    Part,
    RunStatus,
    ToolCompleted,
    ToolError,
    ToolPart,
    ToolPending,
    ToolRunning,
    ToolState,
    is_terminal,
    state_metadata,
    status_of,
)


DENIED_MESSAGE = "Permission denied by user"


# ─── Transitions ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ToolTransition:
    """Base class for tool-call transition requests."""


@dataclass(frozen=True)
class ToolRequested(ToolTransition):
    """The call exists and is waiting (invoked, or permission asked)."""

    input: JsonDict = field(default_factory=dict)
    raw_input: str = ""


@dataclass(frozen=True)
class ToolStarted(ToolTransition):
    """Server reports the tool began executing."""

    title: str | None = None
    started_at: int = 0
    input: JsonDict = field(default_factory=dict)
    metadata: JsonDict = field(default_factory=dict)


@dataclass(frozen=True)
class ToolSucceeded(ToolTransition):
    """Server delivered the tool result."""

    output: str = ""
    metadata: JsonDict = field(default_factory=dict)
    title: str = ""
    started_at: int = 0
    ended_at: int = 0
    input: JsonDict = field(default_factory=dict)


@dataclass(frozen=True)
class ToolFailed(ToolTransition):
    """Execution error, or an error before execution started."""

    message: str = ""
    metadata: JsonDict = field(default_factory=dict)
    ended_at: int = 0
    input: JsonDict = field(default_factory=dict)


@dataclass(frozen=True)
class ToolDenied(ToolTransition):
    """The user denied the permission request for this call."""

    message: str = DENIED_MESSAGE
    ended_at: int = 0


TRANSITION_TYPES: tuple[type[ToolTransition], ...] = (
    ToolRequested,
    ToolStarted,
    ToolSucceeded,
    ToolFailed,
    ToolDenied,
)


def _input_or(incoming: JsonDict, current: ToolState) -> JsonDict:
    return incoming if incoming else current.input


def _started_at(state: ToolState, fallback: int) -> int:
    if isinstance(state, ToolRunning):
        return state.started_at
    return fallback


def _on_requested(state: ToolState, t: ToolRequested, permission_open: bool) -> ToolState:
    if not isinstance(state, ToolPending):
        return state
    # Pending may receive its arguments incrementally; that is a refresh, not a move.
    if t.input and (t.input != state.input or t.raw_input != state.raw_input):
        return ToolPending(input=t.input, raw_input=t.raw_input or state.raw_input)
    return state


def _on_started(state: ToolState, t: ToolStarted, permission_open: bool) -> ToolState:
    if not isinstance(state, ToolPending) or permission_open:
        return state
    return ToolRunning(
        input=_input_or(t.input, state),
        title=t.title,
        started_at=t.started_at,
        metadata=dict(t.metadata),
    )


def _on_succeeded(state: ToolState, t: ToolSucceeded, permission_open: bool) -> ToolState:
    if isinstance(state, ToolPending) and permission_open:
        return state
    return ToolCompleted(
        input=_input_or(t.input, state),
        output=t.output,
        title=t.title,
        started_at=_started_at(state, t.started_at),
        ended_at=t.ended_at,
        metadata=dict(t.metadata),
    )


def _on_failed(state: ToolState, t: ToolFailed, permission_open: bool) -> ToolState:
    return ToolError(
        input=_input_or(t.input, state),
        message=t.message,
        started_at=_started_at(state, 0),
        ended_at=t.ended_at,
        metadata=dict(t.metadata),
    )


def _on_denied(state: ToolState, t: ToolDenied, permission_open: bool) -> ToolState:
    if not isinstance(state, ToolPending):
        return state
    return ToolError(input=state.input, message=t.message, ended_at=t.ended_at)


_TRANSITION_HANDLERS = {
    ToolRequested: _on_requested,
    ToolStarted: _on_started,
    ToolSucceeded: _on_succeeded,
    ToolFailed: _on_failed,
    ToolDenied: _on_denied,
}


def advance(
    state: ToolState,
    transition: ToolTransition,
    *,
    permission_open: bool = False,
) -> ToolState:
    """Apply one transition to a tool state.

    Returns the SAME object when the transition does not apply (terminal
    state, backwards move, duplicate, or execution blocked by an open
    permission), so callers can detect no-ops with `is`.

    Args:
        state: Current state of the call.
        transition: Requested transition.
        permission_open: True while an unresolved permission request gates
            this call; blocks Pending -> Running/Completed.
    """
    if is_terminal(state):
        return state
    handler = _TRANSITION_HANDLERS[type(transition)]
    return handler(state, transition, permission_open)


_TRANSITION_FOR_STATE = {
    ToolPending: lambda s: ToolRequested(input=s.input, raw_input=s.raw_input),
    ToolRunning: lambda s: ToolStarted(
        title=s.title, started_at=s.started_at, input=s.input, metadata=s.metadata
    ),
    ToolCompleted: lambda s: ToolSucceeded(
        output=s.output,
        metadata=s.metadata,
        title=s.title,
        started_at=s.started_at,
        ended_at=s.ended_at,
        input=s.input,
    ),
    ToolError: lambda s: ToolFailed(
        message=s.message, metadata=s.metadata, ended_at=s.ended_at, input=s.input
    ),
}


def transition_to(state: ToolState) -> ToolTransition:
    """The transition that moves a call into `state`.

    Server snapshots report the target state; routing them through advance()
    keeps the local lifecycle monotonic.
    """
    return _TRANSITION_FOR_STATE[type(state)](state)


# ─── Derived display state ────────────────────────────────────────────────────


STATUS_ICONS: dict[RunStatus, str] = {
    RunStatus.RUNNING: "◐",
    RunStatus.PENDING: "○",
    RunStatus.ERROR: "✗",
    RunStatus.COMPLETED: "✓",
}

# Aggregate precedence; also the sort order of collapsed groups.
_STATUS_PRECEDENCE: tuple[RunStatus, ...] = (
    RunStatus.RUNNING,
    RunStatus.PENDING,
    RunStatus.ERROR,
    RunStatus.COMPLETED,
)


@dataclass(frozen=True)
class ToolGroup:
    """All tool parts of one message sharing a tool name."""

    name: str
    status: RunStatus
    tools: tuple[ToolPart, ...]
    diff_stats: DiffStats | None = None

    @property
    def count(self) -> int:
        return len(self.tools)


def aggregate_status(tools: list[ToolPart] | tuple[ToolPart, ...]) -> RunStatus:
    """Running if any running, else Pending, else Error, else Completed."""
    present = {status_of(t.state) for t in tools}
    for status in _STATUS_PRECEDENCE:
        if status in present:
            return status
    return RunStatus.COMPLETED


def tool_diff_stats(tool: ToolPart) -> DiffStats | None:
    """Diff stats from the call's metadata["diff"], if it carries one."""
    return diff_stats_from_metadata(state_metadata(tool.state))


def _sum_stats(tools: tuple[ToolPart, ...]) -> DiffStats | None:
    added = 0
    removed = 0
    found = False
    for tool in tools:
        stats = tool_diff_stats(tool)
        if stats is None:
            continue
        found = True
        added += stats.added
        removed += stats.removed
    return DiffStats(added, removed) if found else None


def group_tools(parts: tuple[Part, ...] | list[Part]) -> list[ToolGroup]:
    """Group tool parts by name, ordered by aggregate status then name."""
    by_name: dict[str, list[ToolPart]] = {}
    for part in parts:
        if isinstance(part, ToolPart):
            by_name.setdefault(part.tool_name, []).append(part)

    groups = [
        ToolGroup(
            name=name,
            status=aggregate_status(tools),
            tools=tuple(tools),
            diff_stats=_sum_stats(tuple(tools)),
        )
        for name, tools in by_name.items()
    ]
    groups.sort(key=lambda g: (_STATUS_PRECEDENCE.index(g.status), g.name))
    return groups


def format_diff_stats(stats: DiffStats | None) -> str:
    if stats is None:
        return ""
    return f"+{stats.added} -{stats.removed}"


def collapsed_summary(parts: tuple[Part, ...] | list[Part]) -> str:
    """One-line summary of a message's tool calls: "✓ read ×3 | ◐ bash"."""
    segments = []
    for group in group_tools(parts):
        segment = f"{STATUS_ICONS[group.status]} {group.name}"
        if group.count > 1:
            segment += f" ×{group.count}"
        stats = format_diff_stats(group.diff_stats)
        if stats:
            segment += f" {stats}"
        segments.append(segment)
    return " | ".join(segments)
