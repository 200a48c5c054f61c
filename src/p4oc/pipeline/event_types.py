"""Typed server events and the wire parse boundary.

// [LAW:one-source-of-truth] The class IS the type; no event_type string field.
// [LAW:single-enforcer] parse_server_event is the sole validation boundary for
// server-sent events; nothing downstream looks at raw JSON.

Wire shape (opencode global event stream): each SSE data line is
{"payload": {"type": ..., "properties": {...}}}, or the bare inner object.

This module is STABLE: safe for `from` imports everywhere.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum

from p4oc.core.parts import (
    AgentPart,
    CompactionPart,
    FilePart,
    JsonDict,
    MessageError,
    MessageRole,
    Part,
    PatchPart,
    ReasoningPart,
    RetryPart,
    SnapshotPart,
    StepFinishPart,
    StepStartPart,
    SubtaskPart,
    TextPart,
    TokenUsage,
    ToolCompleted,
    ToolError,
    ToolPart,
    ToolPending,
    ToolRunning,
    ToolState,
)
from p4oc.core.permissions import Permission, permission_title
from p4oc.core.questions import Question, QuestionOption, QuestionRequest

logger = logging.getLogger(__name__)


# ─── Message info ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class MessageInfo:
    """Message-level fields carried by message.updated."""

    id: str
    session_id: str
    role: MessageRole
    created_at: int = 0
    completed_at: int | None = None
    parent_id: str = ""
    model_id: str = ""
    provider_id: str = ""
    agent: str = ""
    tokens: TokenUsage | None = None
    cost: float | None = None
    error: MessageError | None = None


class SessionStatusKind(Enum):
    IDLE = "idle"
    BUSY = "busy"
    RETRY = "retry"


@dataclass(frozen=True)
class SessionStatus:
    kind: SessionStatusKind
    attempt: int = 0
    message: str = ""
    next_retry_at: int | None = None


# ─── Server events ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ServerEvent:
    """Base class for parsed server events."""


@dataclass(frozen=True)
class MessageUpdated(ServerEvent):
    info: MessageInfo


@dataclass(frozen=True)
class PartUpdated(ServerEvent):
    """Snapshot of one part; delta is the streamed increment for text parts."""

    session_id: str
    message_id: str
    part: Part
    delta: str | None = None


@dataclass(frozen=True)
class PermissionAsked(ServerEvent):
    permission: Permission


@dataclass(frozen=True)
class PermissionReplied(ServerEvent):
    session_id: str
    permission_id: str
    reply: str


@dataclass(frozen=True)
class QuestionAsked(ServerEvent):
    request: QuestionRequest


@dataclass(frozen=True)
class SessionStatusChanged(ServerEvent):
    session_id: str
    status: SessionStatus


@dataclass(frozen=True)
class SessionIdle(ServerEvent):
    session_id: str


@dataclass(frozen=True)
class SessionErrored(ServerEvent):
    session_id: str
    error: MessageError | None = None


SERVER_EVENT_TYPES: tuple[type[ServerEvent], ...] = (
    MessageUpdated,
    PartUpdated,
    PermissionAsked,
    PermissionReplied,
    QuestionAsked,
    SessionStatusChanged,
    SessionIdle,
    SessionErrored,
)


# ─── Narrowing helpers ────────────────────────────────────────────────────────


def _str(v: object) -> str:
    """Narrow object to str; None becomes ""."""
    if v is None:
        return ""
    if isinstance(v, str):
        return v
    return str(v)


def _int(v: object) -> int:
    """Narrow object to int; None becomes 0."""
    if v is None:
        return 0
    if isinstance(v, bool):
        return int(v)
    if isinstance(v, int):
        return v
    if isinstance(v, float):
        return int(_finite(v))
    return int(str(v))


def _opt_int(v: object) -> int | None:
    return None if v is None else _int(v)


def _opt_float(v: object) -> float | None:
    if v is None:
        return None
    try:
        value = float(v) if isinstance(v, (int, float)) and not isinstance(v, bool) else float(str(v))
    except OverflowError as e:
        raise ValueError(f"number out of range: {v}") from e
    return _finite(value)


def _finite(v: float) -> float:
    """json.loads accepts NaN and Infinity literals; reject them at the boundary."""
    if not math.isfinite(v):
        raise ValueError(f"non-finite number: {v}")
    return v


def _dict(v: object) -> JsonDict:
    return v if isinstance(v, dict) else {}


def _required(raw: JsonDict, key: str, what: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value:
        raise ValueError(f"{what}: missing {key!r}")
    return value


# ─── Parts ────────────────────────────────────────────────────────────────────


def _parse_tokens(raw: object) -> TokenUsage | None:
    if not isinstance(raw, dict):
        return None
    cache = _dict(raw.get("cache"))
    return TokenUsage(
        input=_int(raw.get("input")),
        output=_int(raw.get("output")),
        reasoning=_int(raw.get("reasoning")),
        cache_read=_int(cache.get("read")),
        cache_write=_int(cache.get("write")),
    )


def _parse_error(raw: object) -> MessageError | None:
    """Server error union {name, data{message?}} -> MessageError."""
    if not isinstance(raw, dict):
        return None
    data = _dict(raw.get("data"))
    return MessageError(code=_str(raw.get("name")), message=_str(data.get("message")))


def _pending(raw: JsonDict, time: JsonDict) -> ToolState:
    return ToolPending(input=_dict(raw.get("input")), raw_input=_str(raw.get("raw")))


def _running(raw: JsonDict, time: JsonDict) -> ToolState:
    title = raw.get("title")
    return ToolRunning(
        input=_dict(raw.get("input")),
        title=_str(title) if title is not None else None,
        started_at=_int(time.get("start")),
        metadata=_dict(raw.get("metadata")),
    )


def _completed(raw: JsonDict, time: JsonDict) -> ToolState:
    return ToolCompleted(
        input=_dict(raw.get("input")),
        output=_str(raw.get("output")),
        title=_str(raw.get("title")),
        started_at=_int(time.get("start")),
        ended_at=_int(time.get("end")),
        metadata=_dict(raw.get("metadata")),
    )


def _errored(raw: JsonDict, time: JsonDict) -> ToolState:
    return ToolError(
        input=_dict(raw.get("input")),
        message=_str(raw.get("error")),
        started_at=_int(time.get("start")),
        ended_at=_int(time.get("end")),
        metadata=_dict(raw.get("metadata")),
    )


_TOOL_STATE_PARSERS: dict[str, Callable[[JsonDict, JsonDict], ToolState]] = {
    "pending": _pending,
    "running": _running,
    "completed": _completed,
    "error": _errored,
}


def parse_tool_state(raw: object) -> ToolState:
    if not isinstance(raw, dict):
        return ToolPending()
    status = _str(raw.get("status"))
    parser = _TOOL_STATE_PARSERS.get(status)
    if parser is None:
        raise ValueError(f"tool state: unknown status {status!r}")
    return parser(raw, _dict(raw.get("time")))


def _text(raw: JsonDict, time: JsonDict) -> Part:
    return TextPart(id=_str(raw.get("id")), content=_str(raw.get("text")))


def _reasoning(raw: JsonDict, time: JsonDict) -> Part:
    return ReasoningPart(
        id=_str(raw.get("id")),
        content=_str(raw.get("text")),
        start_time=_int(time.get("start")),
        end_time=_opt_int(time.get("end")),
    )


def _tool(raw: JsonDict, time: JsonDict) -> Part:
    return ToolPart(
        id=_str(raw.get("id")),
        call_id=_required(raw, "callID", "tool part"),
        tool_name=_str(raw.get("tool")),
        state=parse_tool_state(raw.get("state")),
    )


def _file(raw: JsonDict, time: JsonDict) -> Part:
    filename = raw.get("filename")
    return FilePart(
        id=_str(raw.get("id")),
        mime_type=_str(raw.get("mime")),
        filename=_str(filename) if filename is not None else None,
        url=_str(raw.get("url")),
    )


def _patch(raw: JsonDict, time: JsonDict) -> Part:
    files = raw.get("files")
    return PatchPart(
        id=_str(raw.get("id")),
        files=tuple(_str(f) for f in files) if isinstance(files, list) else (),
        hash=_str(raw.get("hash")),
    )


def _step_start(raw: JsonDict, time: JsonDict) -> Part:
    snapshot = raw.get("snapshot")
    return StepStartPart(id=_str(raw.get("id")), snapshot_ref=_str(snapshot) if snapshot else None)


def _step_finish(raw: JsonDict, time: JsonDict) -> Part:
    tokens = _parse_tokens(raw.get("tokens")) or TokenUsage()
    start, end = _opt_int(time.get("start")), _opt_int(time.get("end"))
    reason = raw.get("reason")
    return StepFinishPart(
        id=_str(raw.get("id")),
        reason=_str(reason) if reason is not None else None,
        cost=_opt_float(raw.get("cost")),
        tokens_in=tokens.input,
        tokens_out=tokens.output,
        duration_ms=end - start if start is not None and end is not None else None,
    )


def _snapshot(raw: JsonDict, time: JsonDict) -> Part:
    return SnapshotPart(id=_str(raw.get("id")), snapshot_id=_str(raw.get("snapshot")))


def _agent(raw: JsonDict, time: JsonDict) -> Part:
    return AgentPart(id=_str(raw.get("id")), to_agent=_str(raw.get("name")))


def _retry(raw: JsonDict, time: JsonDict) -> Part:
    error = _parse_error(raw.get("error"))
    return RetryPart(
        id=_str(raw.get("id")),
        attempt=max(1, _int(raw.get("attempt"))),
        error_message=error.message or error.code if error else None,
        next_retry_at=_opt_int(raw.get("next")),
    )


def _compaction(raw: JsonDict, time: JsonDict) -> Part:
    return CompactionPart(id=_str(raw.get("id")), is_automatic=bool(raw.get("auto")))


def _subtask(raw: JsonDict, time: JsonDict) -> Part:
    return SubtaskPart(
        id=_str(raw.get("id")),
        agent_name=_str(raw.get("agent")),
        description=_str(raw.get("description")),
        prompt=_str(raw.get("prompt")),
    )


_PART_PARSERS: dict[str, Callable[[JsonDict, JsonDict], Part]] = {
    "text": _text,
    "reasoning": _reasoning,
    "tool": _tool,
    "file": _file,
    "patch": _patch,
    "step-start": _step_start,
    "step-finish": _step_finish,
    "snapshot": _snapshot,
    "agent": _agent,
    "retry": _retry,
    "compaction": _compaction,
    "subtask": _subtask,
}


def parse_part(raw: object) -> Part:
    """Parse a part DTO. Unknown part types degrade to a Text part."""
    if not isinstance(raw, dict):
        raise ValueError("part: expected an object")
    part_type = _str(raw.get("type"))
    parser = _PART_PARSERS.get(part_type)
    if parser is None:
        logger.debug("unknown part type %r treated as text", part_type)
        parser = _text
    return parser(raw, _dict(raw.get("time")))


# ─── Event parsers ────────────────────────────────────────────────────────────


def parse_message_info(raw: object) -> MessageInfo:
    if not isinstance(raw, dict):
        raise ValueError("message info: expected an object")
    role_str = _str(raw.get("role"))
    if role_str not in ("user", "assistant"):
        raise ValueError(f"message info: unknown role {role_str!r}")
    time = _dict(raw.get("time"))
    model = _dict(raw.get("model"))
    return MessageInfo(
        id=_required(raw, "id", "message info"),
        session_id=_str(raw.get("sessionID")),
        role=MessageRole(role_str),
        created_at=_int(time.get("created")),
        completed_at=_opt_int(time.get("completed")),
        parent_id=_str(raw.get("parentID")),
        model_id=_str(raw.get("modelID") or model.get("modelID")),
        provider_id=_str(raw.get("providerID") or model.get("providerID")),
        agent=_str(raw.get("agent")),
        tokens=_parse_tokens(raw.get("tokens")),
        cost=_opt_float(raw.get("cost")),
        error=_parse_error(raw.get("error")),
    )


def _parse_message_updated(props: JsonDict) -> ServerEvent:
    return MessageUpdated(info=parse_message_info(props.get("info")))


def _parse_part_updated(props: JsonDict) -> ServerEvent:
    raw_part = props.get("part")
    if not isinstance(raw_part, dict):
        raise ValueError("message.part.updated: missing 'part'")
    delta = props.get("delta")
    return PartUpdated(
        session_id=_str(raw_part.get("sessionID")),
        message_id=_required(raw_part, "messageID", "message.part.updated"),
        part=parse_part(raw_part),
        delta=_str(delta) if delta is not None else None,
    )


def _patterns(props: JsonDict) -> tuple[str, ...]:
    # Newer servers send "patterns" (list); older ones "pattern" (string or list).
    raw = props.get("patterns", props.get("pattern"))
    if isinstance(raw, str):
        return (raw,) if raw else ()
    if isinstance(raw, list):
        return tuple(_str(p) for p in raw)
    return ()


def _parse_permission(props: JsonDict) -> ServerEvent:
    permission_id = _required(props, "id", "permission.asked")
    tool = _dict(props.get("tool"))
    permission_type = _str(props.get("permission") or props.get("type"))
    patterns = _patterns(props)
    time = _dict(props.get("time"))
    return PermissionAsked(
        permission=Permission(
            id=permission_id,
            # Requests not tied to a tool call are gated as a call of their own.
            call_id=_str(tool.get("callID") or props.get("callID")) or permission_id,
            type=permission_type,
            title=_str(props.get("title")) or permission_title(permission_type, patterns),
            session_id=_str(props.get("sessionID")),
            message_id=_str(tool.get("messageID") or props.get("messageID")),
            patterns=patterns,
            metadata=_dict(props.get("metadata")),
            created_at=_int(time.get("created")),
        )
    )


def _parse_permission_replied(props: JsonDict) -> ServerEvent:
    permission_id = _str(props.get("requestID") or props.get("permissionID"))
    if not permission_id:
        raise ValueError("permission.replied: missing request id")
    return PermissionReplied(
        session_id=_str(props.get("sessionID")),
        permission_id=permission_id,
        reply=_str(props.get("reply") or props.get("response")),
    )


def _parse_question(raw: object) -> Question:
    q = _dict(raw)
    text = _str(q.get("question"))
    if not text:
        raise ValueError("question.asked: question without text")
    options = q.get("options")
    return Question(
        question=text,
        header=_str(q.get("header")),
        options=tuple(
            QuestionOption(label=_str(o.get("label")), description=_str(o.get("description")))
            for o in (options if isinstance(options, list) else [])
            if isinstance(o, dict)
        ),
        multiple=bool(q.get("multiple", False)),
        custom=bool(q.get("custom", True)),
    )


def _parse_question_asked(props: JsonDict) -> ServerEvent:
    raw_questions = props.get("questions")
    if not isinstance(raw_questions, list) or not raw_questions:
        raise ValueError("question.asked: missing 'questions'")
    tool = _dict(props.get("tool"))
    return QuestionAsked(
        request=QuestionRequest(
            id=_required(props, "id", "question.asked"),
            session_id=_str(props.get("sessionID")),
            questions=tuple(_parse_question(q) for q in raw_questions),
            message_id=_str(tool.get("messageID")),
            call_id=_str(tool.get("callID")),
        )
    )


def _parse_session_status(props: JsonDict) -> ServerEvent:
    status = _dict(props.get("status"))
    kind_str = _str(status.get("type"))
    try:
        kind = SessionStatusKind(kind_str)
    except ValueError:
        raise ValueError(f"session.status: unknown status {kind_str!r}") from None
    return SessionStatusChanged(
        session_id=_str(props.get("sessionID")),
        status=SessionStatus(
            kind=kind,
            attempt=_int(status.get("attempt")),
            message=_str(status.get("message")),
            next_retry_at=_opt_int(status.get("next")),
        ),
    )


def _parse_session_idle(props: JsonDict) -> ServerEvent:
    return SessionIdle(session_id=_str(props.get("sessionID")))


def _parse_session_error(props: JsonDict) -> ServerEvent:
    return SessionErrored(
        session_id=_str(props.get("sessionID")),
        error=_parse_error(props.get("error")),
    )


_EVENT_PARSERS: dict[str, Callable[[JsonDict], ServerEvent]] = {
    "message.updated": _parse_message_updated,
    "message.part.updated": _parse_part_updated,
    "permission.asked": _parse_permission,
    "permission.updated": _parse_permission,
    "permission.replied": _parse_permission_replied,
    "question.asked": _parse_question_asked,
    "session.status": _parse_session_status,
    "session.idle": _parse_session_idle,
    "session.error": _parse_session_error,
}


def event_envelope(raw: object) -> tuple[str, JsonDict]:
    """Unwrap {"payload": {...}} or a bare event into (type, properties)."""
    if not isinstance(raw, dict):
        raise ValueError("server event: expected an object")
    inner = raw.get("payload", raw)
    if not isinstance(inner, dict):
        raise ValueError("server event: payload is not an object")
    event_type = inner.get("type")
    if not isinstance(event_type, str) or not event_type:
        raise ValueError("server event: missing 'type'")
    props = inner.get("properties", {})
    if not isinstance(props, dict):
        raise ValueError(f"{event_type}: properties is not an object")
    return event_type, props


def parse_server_event(raw: object) -> ServerEvent | None:
    """Parse one decoded SSE data object into a typed ServerEvent.

    Called at the two production boundaries: event_source (live) and the
    CLI replay path.

    Returns:
        Typed ServerEvent, or None for event types this client does not
        handle (heartbeats, session lifecycle, file watcher, ...).

    Raises:
        ValueError: If the event is malformed.
    """
    event_type, props = event_envelope(raw)
    parser = _EVENT_PARSERS.get(event_type)
    if parser is None:
        return None
    return parser(props)


# ─── Inbound queue items ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class InboundEvent:
    """Base class for transport items put on the single-writer queue."""


@dataclass(frozen=True)
class ServerEventReceived(InboundEvent):
    """A parsed server event plus the decoded JSON it came from."""

    event: ServerEvent
    raw: JsonDict


@dataclass(frozen=True)
class TransportStateChanged(InboundEvent):
    """The event stream connected, or dropped with an error."""

    connected: bool
    error: str = ""


def history_to_events(raw: object) -> list[JsonDict]:
    """Rewrite a session history body as the stream events that built it.

    GET /session/<id>/message returns [{"info": {...}, "parts": [...]}, ...].
    Each entry becomes one message.updated followed by one
    message.part.updated per part, so history takes the same path into the
    store as live events.

    Raises:
        ValueError: If the body is not a list of message objects.
    """
    if not isinstance(raw, list):
        raise ValueError("message history: expected a list")
    events: list[JsonDict] = []
    for entry in raw:
        if not isinstance(entry, dict) or not isinstance(entry.get("info"), dict):
            raise ValueError("message history: entry without 'info'")
        events.append({"payload": {"type": "message.updated", "properties": {"info": entry["info"]}}})
        parts = entry.get("parts")
        for part in parts if isinstance(parts, list) else []:
            events.append({"payload": {"type": "message.part.updated", "properties": {"part": part}}})
    return events
