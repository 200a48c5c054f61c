"""Conversation store: the single writer for one session's state.

Owns the messages (reduced through core.reducer), the branch tree, the
permission protocol and open questions, and session-level status. Every
mutation ends by publishing a new immutable ConversationSnapshot; observers
only ever read snapshots.

Threading: all methods must be called from one thread. In a live session
that is the router thread (see app.session_runtime), which feeds handle()
with transport items and UI commands from a single queue.

// [LAW:single-enforcer] Only this class replaces messages or the published snapshot.
// [LAW:dataflow-not-control-flow] Server events and commands dispatch through tables.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from p4oc.app.branches import BranchTree, ConversationBranch, UnknownBranchError
from p4oc.core import reducer
from p4oc.core.parts import Message, MessageRole
from p4oc.core.permissions import Decision, Permission, PermissionProtocol, Resolution
from p4oc.core.questions import Answers, QuestionQueue, QuestionRequest, validate_answers
from p4oc.core.reducer import MessageInfoUpdated, PartUpserted, StreamEvent, ToolEvent
from p4oc.core.tool_state import ToolFailed
from p4oc.pipeline.event_types import (
    MessageUpdated,
    PartUpdated,
    PermissionAsked,
    PermissionReplied,
    QuestionAsked,
    ServerEvent,
    ServerEventReceived,
    SessionErrored,
    SessionIdle,
    SessionStatus,
    SessionStatusChanged,
    SessionStatusKind,
    TransportStateChanged,
)
from p4oc.pipeline.server_client import DecisionDeliveryError

logger = logging.getLogger(__name__)

DecisionSink = Callable[[Permission, Decision], None]
AnswerSink = Callable[[QuestionRequest, Answers], None]


# ─── Snapshot ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ConversationSnapshot:
    """Everything an observer needs to render the conversation."""

    session_id: str
    messages: tuple[Message, ...] = ()
    branches: tuple[ConversationBranch, ...] = ()
    current_branch_id: str = ""
    permissions: tuple[Permission, ...] = ()
    questions: tuple[QuestionRequest, ...] = ()
    status: SessionStatus | None = None
    connected: bool = False
    transport_error: str = ""
    session_error: str = ""
    version: int = 0

    @property
    def error(self) -> str:
        """Session-level error text; empty when healthy."""
        return self.session_error or self.transport_error


# ─── Commands ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class StoreCommand:
    """Base class for user intents routed through the single-writer queue."""


@dataclass(frozen=True)
class ApproveTool(StoreCommand):
    call_id: str


@dataclass(frozen=True)
class DenyTool(StoreCommand):
    call_id: str


@dataclass(frozen=True)
class AlwaysAllow(StoreCommand):
    call_id: str
    scope_key: str | None = None


@dataclass(frozen=True)
class SelectBranch(StoreCommand):
    branch_id: str


@dataclass(frozen=True)
class CreateBranch(StoreCommand):
    from_message_id: str
    title: str = ""


@dataclass(frozen=True)
class DeleteBranch(StoreCommand):
    branch_id: str


@dataclass(frozen=True)
class AnswerQuestion(StoreCommand):
    """answers holds one tuple of selected labels per question."""

    request_id: str
    answers: Answers


@dataclass(frozen=True)
class DismissQuestion(StoreCommand):
    request_id: str


@dataclass(frozen=True)
class DecisionFailed(StoreCommand):
    """The transport could not deliver a decision; roll the call back to Error."""

    call_id: str
    reason: str


@dataclass(frozen=True)
class AnswerFailed(StoreCommand):
    request_id: str
    reason: str


STORE_COMMAND_TYPES: tuple[type[StoreCommand], ...] = (
    ApproveTool,
    DenyTool,
    AlwaysAllow,
    SelectBranch,
    CreateBranch,
    DeleteBranch,
    AnswerQuestion,
    DismissQuestion,
    DecisionFailed,
    AnswerFailed,
)


def _now_ms() -> int:
    return int(time.time() * 1000)


class ConversationStore:
    """Single-writer state for one session.

    Args:
        session_id: Only events for this session are applied; None accepts all.
        decision_sink: Called with every permission decision. It may deliver
            asynchronously and report failures later as DecisionFailed, or raise
            DecisionDeliveryError to roll back immediately.
        answer_sink: Called with every question answer; same contract, with
            AnswerFailed as the late failure report.
        clock: Epoch-ms clock.
    """

    def __init__(
        self,
        session_id: str | None = None,
        *,
        decision_sink: DecisionSink | None = None,
        answer_sink: AnswerSink | None = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self._session_id = session_id
        self._decision_sink = decision_sink
        self._answer_sink = answer_sink
        self._clock = clock
        self._messages: dict[str, Message] = {}
        self._branches = BranchTree(clock=clock)
        self._permissions = PermissionProtocol(clock=clock)
        self._questions = QuestionQueue()
        self._status: SessionStatus | None = None
        self._connected = False
        self._transport_error = ""
        self._session_error = ""
        self._version = 0
        self._dirty = False
        self._subscribers: list[Callable[[ConversationSnapshot], None]] = []
        self._snapshot = self._build_snapshot()

    # ─── Observation ──────────────────────────────────────────────────────────

    @property
    def snapshot(self) -> ConversationSnapshot:
        """Latest published snapshot. Safe to read from any thread."""
        return self._snapshot

    @property
    def permissions(self) -> PermissionProtocol:
        return self._permissions

    def subscribe(self, callback: Callable[[ConversationSnapshot], None]) -> Callable[[], None]:
        """Register an observer; returns a function that unsubscribes it."""
        self._subscribers.append(callback)
        return lambda: self.unsubscribe(callback)

    def unsubscribe(self, callback: Callable[[ConversationSnapshot], None]) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def messages(self, branch_id: str | None = None) -> list[Message]:
        """Ordered messages on a branch (default: current)."""
        ids = self._branches.visible_message_ids(branch_id)
        return [self._messages[m] for m in ids if m in self._messages]

    def message(self, message_id: str) -> Message | None:
        return self._messages.get(message_id)

    # ─── Entry point for the single-writer queue ──────────────────────────────

    def handle(self, item: object) -> None:
        """Apply one queue item (transport item or StoreCommand) and publish."""
        handler = self._ITEM_HANDLERS.get(type(item))
        if handler is not None:
            handler(self, item)
        else:
            command = self._COMMAND_HANDLERS.get(type(item))
            if command is None:
                logger.warning("store: unhandled item %s", type(item).__name__)
                return
            try:
                command(self, item)
            except (UnknownBranchError, ValueError) as e:
                logger.warning("store: %s rejected: %s", type(item).__name__, e)
                self._session_error = f"{type(item).__name__} failed: {e}"
                self._dirty = True
        self._publish()

    def _on_server_item(self, item: ServerEventReceived) -> None:
        self.apply_server_event(item.event, publish=False)

    def _on_transport_state(self, item: TransportStateChanged) -> None:
        self._connected = item.connected
        self._transport_error = "" if item.connected else item.error
        self._dirty = True

    # ─── Server events ────────────────────────────────────────────────────────

    def apply_server_event(self, event: ServerEvent, *, publish: bool = True) -> None:
        session_id = getattr(event, "session_id", None)
        if session_id is None and isinstance(event, MessageUpdated):
            session_id = event.info.session_id
        if session_id is None and isinstance(event, PermissionAsked):
            session_id = event.permission.session_id
        if session_id is None and isinstance(event, QuestionAsked):
            session_id = event.request.session_id
        if self._session_id is not None and session_id and session_id != self._session_id:
            return
        self._SERVER_HANDLERS[type(event)](self, event)
        if publish:
            self._publish()

    def _on_message_updated(self, event: MessageUpdated) -> None:
        info = event.info
        self._ensure_message(info.id, info.role, created_at=info.created_at, session_id=info.session_id)
        self._reduce(
            info.id,
            MessageInfoUpdated(
                role=info.role,
                model_id=info.model_id or None,
                provider_id=info.provider_id or None,
                agent=info.agent or None,
                parent_id=info.parent_id or None,
                tokens=info.tokens,
                cost=info.cost,
                error=info.error,
                completed_at=info.completed_at,
            ),
        )

    def _on_part_updated(self, event: PartUpdated) -> None:
        self._ensure_message(event.message_id, MessageRole.ASSISTANT, session_id=event.session_id)
        self._reduce(event.message_id, PartUpserted(part=event.part, delta=event.delta))

    def _on_permission_asked(self, event: PermissionAsked) -> None:
        permission = event.permission
        outcome = self._permissions.request(permission)
        message_id = self._message_for_call(permission.call_id) or permission.message_id
        if not message_id:
            message_id = self._latest_message_id() or f"permission-{permission.id}"
        self._ensure_message(message_id, MessageRole.ASSISTANT, session_id=permission.session_id)
        self._reduce(message_id, outcome.event)
        self._dirty = True
        if outcome.auto_resolution is not None:
            self._resolve(outcome.auto_resolution)

    def _on_permission_replied(self, event: PermissionReplied) -> None:
        if self._permissions.close(event.permission_id) is not None:
            logger.info("permission %s answered elsewhere (%s)", event.permission_id, event.reply)
            self._dirty = True

    def _on_question_asked(self, event: QuestionAsked) -> None:
        if self._questions.ask(event.request):
            logger.info("question %s asked: %s", event.request.id, event.request.title)
            self._dirty = True

    def _on_session_status(self, event: SessionStatusChanged) -> None:
        self._status = event.status
        if event.status.kind is SessionStatusKind.BUSY:
            self._session_error = ""
        self._dirty = True

    def _on_session_idle(self, event: SessionIdle) -> None:
        for message_id, message in list(self._messages.items()):
            finalized = reducer.finalize_streaming(message, self._clock())
            if finalized is not message:
                self._messages[message_id] = finalized
        self._status = SessionStatus(kind=SessionStatusKind.IDLE)
        self._dirty = True

    def _on_session_error(self, event: SessionErrored) -> None:
        error = event.error
        self._session_error = (error.message or error.code) if error else "session error"
        self._dirty = True

    # ─── Commands ─────────────────────────────────────────────────────────────

    def approve_tool(self, call_id: str) -> bool:
        """Allow once. False when no permission is open for call_id."""
        return self._run_resolution(self._permissions.allow_once(call_id))

    def deny_tool(self, call_id: str) -> bool:
        """Deny; the call ends in Error. False when no permission is open for call_id."""
        return self._run_resolution(self._permissions.deny(call_id))

    def always_allow(self, call_id: str, scope_key: str | None = None) -> bool:
        """Allow and remember the rule; other open requests it covers resolve too."""
        resolved = self._run_resolution(self._permissions.allow_always(call_id, scope_key), publish=False)
        if resolved:
            for resolution in self._permissions.take_auto_allowed():
                self._resolve(resolution)
        self._publish()
        return resolved

    def select_branch(self, branch_id: str) -> None:
        self._branches.select(branch_id)
        self._dirty = True
        self._publish()

    def create_branch(self, from_message_id: str, title: str = "") -> ConversationBranch:
        branch = self._branches.create(from_message_id, title)
        self._dirty = True
        self._publish()
        return branch

    def delete_branch(self, branch_id: str) -> None:
        for message_id in self._branches.delete(branch_id):
            self._messages.pop(message_id, None)
        self._dirty = True
        self._publish()

    def decision_failed(self, call_id: str, reason: str) -> None:
        """Roll an optimistically resolved call back to Error."""
        logger.warning("decision for %s not delivered: %s", call_id, reason)
        message_id = self._message_for_call(call_id)
        if message_id is not None:
            self._reduce(
                message_id,
                ToolEvent(
                    call_id=call_id,
                    transition=ToolFailed(
                        message=f"Permission decision not delivered: {reason}",
                        ended_at=self._clock(),
                    ),
                ),
            )
        self._publish()

    def answer_question(self, request_id: str, answers: Answers) -> bool:
        """Answer an open question. False when request_id is not open.

        Raises:
            ValueError: When the answers do not fit the questions; the
                question stays open.
        """
        request = self._questions.get(request_id)
        if request is None:
            return False
        validate_answers(request, answers)
        self._questions.take(request_id)
        self._dirty = True
        if self._answer_sink is not None:
            try:
                self._answer_sink(request, answers)
            except DecisionDeliveryError as e:
                self.answer_failed(request_id, e.reason)
                return True
        self._publish()
        return True

    def dismiss_question(self, request_id: str) -> bool:
        """Hide a question without answering; the asking tool keeps waiting."""
        if self._questions.take(request_id) is None:
            return False
        logger.info("question %s dismissed", request_id)
        self._dirty = True
        self._publish()
        return True

    def answer_failed(self, request_id: str, reason: str) -> None:
        logger.warning("answer to question %s not delivered: %s", request_id, reason)
        self._session_error = f"Answer to question {request_id} not delivered: {reason}"
        self._dirty = True
        self._publish()

    def end_session(self) -> None:
        """Drop open permission requests and questions; their calls stay Pending."""
        if self._session_id is not None:
            permissions = self._permissions.close_session(self._session_id)
            questions = self._questions.close_session(self._session_id)
        else:
            permissions = self._permissions.pending()
            for permission in permissions:
                self._permissions.close(permission.id)
            questions = [self._questions.take(r.id) for r in self._questions.pending()]
        if permissions or questions:
            self._dirty = True
        self._publish()

    # ─── Internals ────────────────────────────────────────────────────────────

    def _run_resolution(self, resolution: Resolution | None, *, publish: bool = True) -> bool:
        if resolution is None:
            return False
        self._resolve(resolution)
        if publish:
            self._publish()
        return True

    def _resolve(self, resolution: Resolution) -> None:
        message_id = self._message_for_call(resolution.call_id)
        if message_id is not None:
            self._reduce(message_id, resolution.event)
        self._dirty = True
        if self._decision_sink is None:
            return
        try:
            self._decision_sink(resolution.permission, resolution.decision)
        except DecisionDeliveryError as e:
            self.decision_failed(resolution.call_id, e.reason)

    def _ensure_message(
        self,
        message_id: str,
        role: MessageRole,
        *,
        created_at: int = 0,
        session_id: str = "",
    ) -> None:
        if message_id in self._messages:
            return
        self._messages[message_id] = Message(
            id=message_id,
            role=role,
            session_id=session_id or (self._session_id or ""),
            created_at=created_at or self._clock(),
        )
        self._branches.add_message(message_id)
        self._dirty = True

    def _reduce(self, message_id: str, event: StreamEvent) -> None:
        current = self._messages[message_id]
        updated = reducer.apply(current, event, open_permissions=self._permissions.open_call_ids())
        if updated is not current:
            self._messages[message_id] = updated
            self._dirty = True

    def _message_for_call(self, call_id: str) -> str | None:
        for message_id in reversed(list(self._messages)):
            if self._messages[message_id].find_tool(call_id) is not None:
                return message_id
        return None

    def _latest_message_id(self) -> str | None:
        visible = self._branches.visible_message_ids()
        return visible[-1] if visible else None

    def _build_snapshot(self) -> ConversationSnapshot:
        return ConversationSnapshot(
            session_id=self._session_id or "",
            messages=tuple(self.messages()),
            branches=tuple(self._branches.branches()),
            current_branch_id=self._branches.current_id,
            permissions=tuple(self._permissions.pending()),
            questions=tuple(self._questions.pending()),
            status=self._status,
            connected=self._connected,
            transport_error=self._transport_error,
            session_error=self._session_error,
            version=self._version,
        )

    def _publish(self) -> None:
        if not self._dirty:
            return
        self._dirty = False
        self._version += 1
        snapshot = self._build_snapshot()
        # Single reference assignment: readers see the old or the new snapshot.
        self._snapshot = snapshot
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception:
                logger.exception("snapshot subscriber error")

    _SERVER_HANDLERS = {
        MessageUpdated: _on_message_updated,
        PartUpdated: _on_part_updated,
        PermissionAsked: _on_permission_asked,
        PermissionReplied: _on_permission_replied,
        QuestionAsked: _on_question_asked,
        SessionStatusChanged: _on_session_status,
        SessionIdle: _on_session_idle,
        SessionErrored: _on_session_error,
    }

    _ITEM_HANDLERS = {
        ServerEventReceived: _on_server_item,
        TransportStateChanged: _on_transport_state,
    }

    _COMMAND_HANDLERS = {
        ApproveTool: lambda self, c: self.approve_tool(c.call_id),
        DenyTool: lambda self, c: self.deny_tool(c.call_id),
        AlwaysAllow: lambda self, c: self.always_allow(c.call_id, c.scope_key),
        SelectBranch: lambda self, c: self.select_branch(c.branch_id),
        CreateBranch: lambda self, c: self.create_branch(c.from_message_id, c.title),
        DeleteBranch: lambda self, c: self.delete_branch(c.branch_id),
        AnswerQuestion: lambda self, c: self.answer_question(c.request_id, c.answers),
        DismissQuestion: lambda self, c: self.dismiss_question(c.request_id),
        DecisionFailed: lambda self, c: self.decision_failed(c.call_id, c.reason),
        AnswerFailed: lambda self, c: self.answer_failed(c.request_id, c.reason),
    }
