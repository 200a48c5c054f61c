"""Message reducer: apply one stream event to a Message snapshot.

apply() is pure. It never mutates its input and returns the SAME object when
an event has no effect, so callers can skip publishing with an `is` check.

Parts are append-only: an event either appends a part or replaces one part
with its own updated version. Each apply rebuilds the parts tuple, so cost
is linear in the part count of one message, not in the conversation.

Once a message is complete (step-finish applied, or the server reported a
completion time) every further event is ignored.

// [LAW:dataflow-not-control-flow] Event handling is a dispatch table keyed by event class.
// [LAW:single-enforcer] Tool lifecycle changes go through tool_state.advance only.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

from p4oc.core.parts import (
    Message,
    MessageError,
    MessageRole,
    Part,
    ReasoningPart,
    StepFinishPart,
    TextPart,
    TokenUsage,
    ToolPart,
)
from p4oc.core.tool_state import ToolTransition, advance, transition_to

logger = logging.getLogger(__name__)


# ─── Events ───────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class StreamEvent:
    """Base class for events applied to a single message."""


@dataclass(frozen=True)
class TextDelta(StreamEvent):
    """Append text to the Text part at part_index (new streaming part if past the end)."""

    part_index: int
    text: str
    part_id: str = ""


@dataclass(frozen=True)
class ReasoningDelta(StreamEvent):
    part_index: int
    text: str
    part_id: str = ""
    start_time: int = 0


@dataclass(frozen=True)
class PartFinalized(StreamEvent):
    """Streaming for the part at part_index is over."""

    part_index: int
    ended_at: int = 0


@dataclass(frozen=True)
class ToolEvent(StreamEvent):
    """Lifecycle transition for the tool call identified by call_id."""

    call_id: str
    transition: ToolTransition
    tool_name: str = ""
    part_id: str = ""


@dataclass(frozen=True)
class StepFinishEvent(StreamEvent):
    """Terminal event for the message."""

    reason: str | None = None
    cost: float | None = None
    tokens_in: int = 0
    tokens_out: int = 0
    duration_ms: int | None = None
    part_id: str = ""
    completed_at: int | None = None


@dataclass(frozen=True)
class PartAppended(StreamEvent):
    """A part that arrives whole (file, patch, snapshot, retry, ...)."""

    part: Part


@dataclass(frozen=True)
class PartUpserted(StreamEvent):
    """Server snapshot of a part, matched by part id.

    delta, when set, is the increment to append to a Text or Reasoning part
    instead of replacing its content.
    """

    part: Part
    delta: str | None = None


@dataclass(frozen=True)
class MessageInfoUpdated(StreamEvent):
    """Message-level metadata. None fields leave the current value unchanged.

    A non-None completed_at completes the message.
    """

    role: MessageRole | None = None
    model_id: str | None = None
    provider_id: str | None = None
    agent: str | None = None
    parent_id: str | None = None
    tokens: TokenUsage | None = None
    cost: float | None = None
    error: MessageError | None = None
    completed_at: int | None = None


STREAM_EVENT_TYPES: tuple[type[StreamEvent], ...] = (
    TextDelta,
    ReasoningDelta,
    PartFinalized,
    ToolEvent,
    StepFinishEvent,
    PartAppended,
    PartUpserted,
    MessageInfoUpdated,
)


# ─── Helpers ──────────────────────────────────────────────────────────────────


def _with_part(message: Message, index: int, part: Part) -> Message:
    parts = message.parts[:index] + (part,) + message.parts[index + 1 :]
    return replace(message, parts=parts)


def _with_appended(message: Message, part: Part) -> Message:
    return replace(message, parts=message.parts + (part,))


def _finalize_part(part: Part, ended_at: int) -> Part:
    if isinstance(part, TextPart) and part.is_streaming:
        return replace(part, is_streaming=False)
    if isinstance(part, ReasoningPart) and part.end_time is None:
        return replace(part, end_time=ended_at)
    return part


def finalize_streaming(message: Message, ended_at: int = 0) -> Message:
    """Close every streaming Text/Reasoning part (session went idle)."""
    parts = tuple(_finalize_part(p, ended_at) for p in message.parts)
    if all(new is old for new, old in zip(parts, message.parts)):
        return message
    return replace(message, parts=parts)


def _complete(message: Message, completed_at: int | None) -> Message:
    message = finalize_streaming(message, completed_at or 0)
    return replace(
        message,
        is_complete=True,
        completed_at=completed_at if completed_at is not None else message.completed_at,
    )


# ─── Handlers ─────────────────────────────────────────────────────────────────


def _apply_delta(message: Message, index: int, text: str, part_type: type, new_part: Part) -> Message:
    if index < 0:
        logger.warning("message %s: negative part index %d ignored", message.id, index)
        return message
    if index >= len(message.parts):
        return _with_appended(message, new_part)
    current = message.parts[index]
    if not isinstance(current, part_type):
        logger.warning(
            "message %s: %s delta for part %d which is %s; ignored",
            message.id,
            part_type.__name__,
            index,
            type(current).__name__,
        )
        return message
    updated = replace(current, content=current.content + text)
    if isinstance(updated, TextPart):
        updated = replace(updated, is_streaming=True)
    return _with_part(message, index, updated)


def _on_text_delta(message: Message, event: TextDelta, open_permissions: frozenset) -> Message:
    new_part = TextPart(id=event.part_id, content=event.text, is_streaming=True)
    return _apply_delta(message, event.part_index, event.text, TextPart, new_part)


def _on_reasoning_delta(message: Message, event: ReasoningDelta, open_permissions: frozenset) -> Message:
    new_part = ReasoningPart(id=event.part_id, content=event.text, start_time=event.start_time)
    return _apply_delta(message, event.part_index, event.text, ReasoningPart, new_part)


def _on_part_finalized(message: Message, event: PartFinalized, open_permissions: frozenset) -> Message:
    if not 0 <= event.part_index < len(message.parts):
        return message
    current = message.parts[event.part_index]
    updated = _finalize_part(current, event.ended_at)
    if updated is current:
        return message
    return _with_part(message, event.part_index, updated)


def _on_tool_event(message: Message, event: ToolEvent, open_permissions: frozenset) -> Message:
    found = message.find_tool(event.call_id)
    if found is None:
        pending = ToolPart(id=event.part_id, call_id=event.call_id, tool_name=event.tool_name)
        state = advance(
            pending.state,
            event.transition,
            permission_open=event.call_id in open_permissions,
        )
        return _with_appended(message, replace(pending, state=state))

    index, part = found
    state = advance(part.state, event.transition, permission_open=event.call_id in open_permissions)
    # A call first seen through a permission request has no name or part id yet.
    identity = {
        name: value
        for name, value in (("tool_name", event.tool_name), ("id", event.part_id))
        if value and not getattr(part, name)
    }
    if state is part.state and not identity:
        logger.debug(
            "tool %s: %s ignored in %s",
            event.call_id,
            type(event.transition).__name__,
            type(part.state).__name__,
        )
        return message
    return _with_part(message, index, replace(part, state=state, **identity))


def _on_step_finish(message: Message, event: StepFinishEvent, open_permissions: frozenset) -> Message:
    finish = StepFinishPart(
        id=event.part_id,
        reason=event.reason,
        cost=event.cost,
        tokens_in=event.tokens_in,
        tokens_out=event.tokens_out,
        duration_ms=event.duration_ms,
    )
    return _complete(_with_appended(message, finish), event.completed_at)


def _on_part_appended(message: Message, event: PartAppended, open_permissions: frozenset) -> Message:
    return _with_appended(message, event.part)


def _on_part_upserted(message: Message, event: PartUpserted, open_permissions: frozenset) -> Message:
    part = event.part
    if isinstance(part, ToolPart):
        # Tool snapshots are reduced through the lifecycle so they stay monotonic.
        tool_event = ToolEvent(
            call_id=part.call_id,
            transition=transition_to(part.state),
            tool_name=part.tool_name,
            part_id=part.id,
        )
        return _on_tool_event(message, tool_event, open_permissions)

    index = message.find_part(part.id)
    if index is None:
        if event.delta is not None and isinstance(part, TextPart):
            part = replace(part, is_streaming=True)
        return _with_appended(message, part)

    current = message.parts[index]
    if event.delta is not None and isinstance(current, TextPart) and isinstance(part, TextPart):
        return _with_part(
            message,
            index,
            replace(current, content=current.content + event.delta, is_streaming=True),
        )
    if event.delta is not None and isinstance(current, ReasoningPart) and isinstance(part, ReasoningPart):
        return _with_part(message, index, replace(current, content=current.content + event.delta))
    if part == current:
        return message
    return _with_part(message, index, part)


def _on_message_info(message: Message, event: MessageInfoUpdated, open_permissions: frozenset) -> Message:
    changes = {
        name: value
        for name, value in (
            ("role", event.role),
            ("model_id", event.model_id),
            ("provider_id", event.provider_id),
            ("agent", event.agent),
            ("parent_id", event.parent_id),
            ("tokens", event.tokens),
            ("cost", event.cost),
            ("error", event.error),
        )
        if value is not None and getattr(message, name) != value
    }
    updated = replace(message, **changes) if changes else message
    if event.completed_at is not None:
        return _complete(updated, event.completed_at)
    return updated


_EVENT_HANDLERS = {
    TextDelta: _on_text_delta,
    ReasoningDelta: _on_reasoning_delta,
    PartFinalized: _on_part_finalized,
    ToolEvent: _on_tool_event,
    StepFinishEvent: _on_step_finish,
    PartAppended: _on_part_appended,
    PartUpserted: _on_part_upserted,
    MessageInfoUpdated: _on_message_info,
}


def apply(
    message: Message,
    event: StreamEvent,
    *,
    open_permissions: frozenset = frozenset(),
) -> Message:
    """Apply one event, returning the new snapshot (or `message` itself on no-op).

    Args:
        message: Current snapshot.
        event: Event to apply.
        open_permissions: call ids with an unresolved permission request;
            those calls cannot start executing.
    """
    if message.is_complete:
        logger.debug("message %s complete; %s ignored", message.id, type(event).__name__)
        return message
    handler = _EVENT_HANDLERS[type(event)]
    return handler(message, event, open_permissions)

