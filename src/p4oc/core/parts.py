"""Conversation turn model: messages, parts, and tool states.

// [LAW:one-source-of-truth] The class IS the variant; no part "type" string field.
// [LAW:one-type-per-behavior] Every variant is a frozen dataclass; updates go through
// dataclasses.replace and produce a new value.

PART_TYPES and TOOL_STATE_TYPES are the closed variant sets. Any dispatch
table keyed by variant class must cover all of them (enforced in tests).

This module is STABLE: safe for `from` imports everywhere.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum


JsonDict = dict[str, object]


# ─── Enums ────────────────────────────────────────────────────────────────────


class MessageRole(Enum):
    USER = "user"
    ASSISTANT = "assistant"


class RunStatus(Enum):
    """Lifecycle status shared by tool calls and subtasks."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    ERROR = "error"


# ─── Tool states ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ToolState:
    """Base class for tool-call lifecycle states.

    input holds the invocation arguments as the server reported them.
    """

    input: JsonDict = field(default_factory=dict, kw_only=True)


@dataclass(frozen=True)
class ToolPending(ToolState):
    """Invoked, awaiting permission or execution."""

    raw_input: str = ""


@dataclass(frozen=True)
class ToolRunning(ToolState):
    title: str | None = None
    started_at: int = 0
    metadata: JsonDict = field(default_factory=dict)


@dataclass(frozen=True)
class ToolCompleted(ToolState):
    output: str = ""
    title: str = ""
    started_at: int = 0
    ended_at: int = 0
    metadata: JsonDict = field(default_factory=dict)


@dataclass(frozen=True)
class ToolError(ToolState):
    message: str = ""
    started_at: int = 0
    ended_at: int = 0
    metadata: JsonDict = field(default_factory=dict)


TOOL_STATE_TYPES: tuple[type[ToolState], ...] = (
    ToolPending,
    ToolRunning,
    ToolCompleted,
    ToolError,
)

_STATUS_BY_STATE: dict[type[ToolState], RunStatus] = {
    ToolPending: RunStatus.PENDING,
    ToolRunning: RunStatus.RUNNING,
    ToolCompleted: RunStatus.COMPLETED,
    ToolError: RunStatus.ERROR,
}


def status_of(state: ToolState) -> RunStatus:
    """Map a tool state to its RunStatus."""
    return _STATUS_BY_STATE[type(state)]


def is_terminal(state: ToolState) -> bool:
    return isinstance(state, (ToolCompleted, ToolError))


def state_metadata(state: ToolState) -> JsonDict:
    """Metadata for states that carry it; empty for Pending."""
    return getattr(state, "metadata", {}) or {}


# ─── Parts ────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Part:
    """Base class for one element of a message's ordered part sequence.

    id is the server-assigned part id; empty for locally synthesized parts.
    """

    id: str = field(default="", kw_only=True)


@dataclass(frozen=True)
class TextPart(Part):
    content: str = ""
    is_streaming: bool = False


@dataclass(frozen=True)
class ReasoningPart(Part):
    """Model "thinking" output. end_time stays None while still thinking."""

    content: str = ""
    start_time: int = 0
    end_time: int | None = None


@dataclass(frozen=True)
class ToolPart(Part):
    call_id: str = ""
    tool_name: str = ""
    state: ToolState = field(default_factory=ToolPending)


@dataclass(frozen=True)
class FilePart(Part):
    mime_type: str = ""
    filename: str | None = None
    url: str = ""


@dataclass(frozen=True)
class PatchPart(Part):
    files: tuple[str, ...] = ()
    hash: str = ""


@dataclass(frozen=True)
class StepStartPart(Part):
    snapshot_ref: str | None = None


@dataclass(frozen=True)
class StepFinishPart(Part):
    reason: str | None = None
    cost: float | None = None
    tokens_in: int = 0
    tokens_out: int = 0
    duration_ms: int | None = None


@dataclass(frozen=True)
class SnapshotPart(Part):
    snapshot_id: str = ""


@dataclass(frozen=True)
class RetryPart(Part):
    attempt: int = 1
    error_message: str | None = None
    next_retry_at: int | None = None


@dataclass(frozen=True)
class CompactionPart(Part):
    is_automatic: bool = False


@dataclass(frozen=True)
class AgentPart(Part):
    """The conversation switched agents."""

    to_agent: str = ""
    from_agent: str | None = None


@dataclass(frozen=True)
class SubtaskPart(Part):
    agent_name: str = ""
    description: str = ""
    prompt: str = ""
    status: RunStatus = RunStatus.PENDING


PART_TYPES: tuple[type[Part], ...] = (
    TextPart,
    ReasoningPart,
    ToolPart,
    FilePart,
    PatchPart,
    StepStartPart,
    StepFinishPart,
    SnapshotPart,
    RetryPart,
    CompactionPart,
    AgentPart,
    SubtaskPart,
)


# ─── Messages ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TokenUsage:
    input: int = 0
    output: int = 0
    reasoning: int = 0
    cache_read: int = 0
    cache_write: int = 0


@dataclass(frozen=True)
class MessageError:
    code: str
    message: str


@dataclass(frozen=True)
class Message:
    """One conversation turn.

    parts grows append-only while streaming; existing parts are only replaced
    by their own transitioned versions. is_complete flips once a step-finish
    has been applied, after which the message no longer changes.
    """

    id: str
    role: MessageRole
    session_id: str = ""
    created_at: int = 0
    parts: tuple[Part, ...] = ()
    model_id: str = ""
    provider_id: str = ""
    agent: str = ""
    parent_id: str = ""
    tokens: TokenUsage = field(default_factory=TokenUsage)
    cost: float = 0.0
    completed_at: int | None = None
    error: MessageError | None = None
    is_complete: bool = False

    def find_tool(self, call_id: str) -> tuple[int, ToolPart] | None:
        """Locate a tool part by call id anywhere in the message."""
        # Newest first: live updates almost always target the latest calls.
        for index in range(len(self.parts) - 1, -1, -1):
            part = self.parts[index]
            if isinstance(part, ToolPart) and part.call_id == call_id:
                return index, part
        return None

    def find_part(self, part_id: str) -> int | None:
        """Index of the part with the given server id, or None."""
        if not part_id:
            return None
        for index in range(len(self.parts) - 1, -1, -1):
            if self.parts[index].id == part_id:
                return index
        return None

    def text(self) -> str:
        """Concatenated text content of all Text parts."""
        return "".join(p.content for p in self.parts if isinstance(p, TextPart))
