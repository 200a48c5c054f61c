"""Live session wiring: transport threads around one single-writer store.

    event source thread ──┐
    UI commands ──────────┼──> inbound queue ──> router thread ──> [recorder, store.handle]
    decision failures ────┘
    store decisions ─┬─> decision queue ──> decision thread ─┬─> POST /permission/<id>/reply
    store answers ───┘                                        └─> POST /question/<id>/reply

With a session id, start() first loads the session history and queues it as
message events ahead of the live stream.

Only the router thread calls into the ConversationStore. Observers get
snapshots through subscribe(); the callbacks run on the router thread and
must not block.
"""

from __future__ import annotations

import logging
import queue
import threading
import urllib.request
from collections.abc import Callable

from p4oc.app.conversation_store import (
    AlwaysAllow,
    AnswerFailed,
    AnswerQuestion,
    ApproveTool,
    ConversationSnapshot,
    ConversationStore,
    CreateBranch,
    DecisionFailed,
    DeleteBranch,
    DenyTool,
    DismissQuestion,
    SelectBranch,
    StoreCommand,
)
from p4oc.core.permissions import Decision, Permission
from p4oc.core.questions import Answers, QuestionRequest
from p4oc.io.event_log import EventLogRecorder
from p4oc.pipeline.event_source import ServerEventSource
from p4oc.pipeline.event_types import ServerEventReceived, history_to_events, parse_server_event
from p4oc.pipeline.router import DirectSubscriber, EventRouter
from p4oc.pipeline.server_client import DecisionDeliveryError, ServerClient, ServerRequestError

logger = logging.getLogger(__name__)


class SessionRuntime:
    """One live conversation: event stream, control channel, and store."""

    def __init__(
        self,
        base_url: str,
        session_id: str | None = None,
        *,
        reconnect_delay: float = 3.0,
        record_path: str | None = None,
        opener: Callable = urllib.request.urlopen,
    ) -> None:
        self.inbound: queue.Queue = queue.Queue()
        self.session_id = session_id
        self.store = ConversationStore(
            session_id, decision_sink=self._enqueue_decision, answer_sink=self._enqueue_answer
        )
        self.client = ServerClient(base_url, opener=opener)
        self.source = ServerEventSource(
            base_url, self.inbound.put, reconnect_delay=reconnect_delay, opener=opener
        )
        self.router = EventRouter(self.inbound)
        self.recorder = EventLogRecorder(record_path) if record_path else None
        if self.recorder is not None:
            self.router.add_subscriber(DirectSubscriber(self.recorder.on_event))
        self.router.add_subscriber(DirectSubscriber(self.store.handle))

        self._decisions: queue.Queue = queue.Queue()
        self._decision_thread: threading.Thread | None = None
        self._closed = False

    # ─── Lifecycle ────────────────────────────────────────────────────────────

    def start(self) -> None:
        if self.session_id is not None:
            self._queue_history(self.session_id)
        self.router.start()
        self._decision_thread = threading.Thread(
            target=self._deliver_decisions, name="p4oc-decisions", daemon=True
        )
        self._decision_thread.start()
        self.source.start()
        logger.info("session runtime started (%s)", self.source.url)

    def close(self, timeout: float = 2.0) -> None:
        """Stop the subscription and threads. The last snapshot stays readable.

        Idempotent.
        """
        if self._closed:
            return
        self._closed = True
        self.source.stop(timeout=timeout)
        self.router.stop(timeout=timeout)
        # Router is stopped: this thread is now the only writer.
        self.store.end_session()
        self._decisions.put(None)
        if self._decision_thread is not None:
            self._decision_thread.join(timeout=timeout)
        if self.recorder is not None:
            self.recorder.close()
        logger.info("session runtime closed")

    def __enter__(self) -> "SessionRuntime":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ─── Observation ──────────────────────────────────────────────────────────

    @property
    def snapshot(self) -> ConversationSnapshot:
        return self.store.snapshot

    def subscribe(self, callback: Callable[[ConversationSnapshot], None]) -> Callable[[], None]:
        return self.store.subscribe(callback)

    # ─── Commands (any thread) ────────────────────────────────────────────────

    def submit(self, command: StoreCommand) -> None:
        self.inbound.put(command)

    def approve_tool(self, call_id: str) -> None:
        self.submit(ApproveTool(call_id))

    def deny_tool(self, call_id: str) -> None:
        self.submit(DenyTool(call_id))

    def always_allow(self, call_id: str, scope_key: str | None = None) -> None:
        self.submit(AlwaysAllow(call_id, scope_key))

    def select_branch(self, branch_id: str) -> None:
        self.submit(SelectBranch(branch_id))

    def create_branch(self, from_message_id: str, title: str = "") -> None:
        self.submit(CreateBranch(from_message_id, title))

    def delete_branch(self, branch_id: str) -> None:
        self.submit(DeleteBranch(branch_id))

    def answer_question(self, request_id: str, answers: Answers) -> None:
        self.submit(AnswerQuestion(request_id, answers))

    def dismiss_question(self, request_id: str) -> None:
        self.submit(DismissQuestion(request_id))

    # ─── Decision delivery ────────────────────────────────────────────────────

    def _enqueue_decision(self, permission: Permission, decision: Decision) -> None:
        self._decisions.put((permission, decision))

    def _deliver_decisions(self) -> None:
        while True:
            item = self._decisions.get()
            if item is None:
                return
            target, reply = item
            if isinstance(target, QuestionRequest):
                self._deliver_answer(target, reply)
            else:
                self._deliver_decision(target, reply)

    def _deliver_decision(self, permission: Permission, decision: Decision) -> None:
        try:
            self.client.reply_permission(permission.id, decision)
        except DecisionDeliveryError as e:
            logger.warning("%s", e)
            self.inbound.put(DecisionFailed(call_id=permission.call_id, reason=e.reason))

    def _enqueue_answer(self, request: QuestionRequest, answers: Answers) -> None:
        self._decisions.put((request, answers))

    def _deliver_answer(self, request: QuestionRequest, answers: Answers) -> None:
        try:
            self.client.reply_question(request.id, answers)
        except DecisionDeliveryError as e:
            logger.warning("%s", e)
            self.inbound.put(AnswerFailed(request_id=request.id, reason=e.reason))

    # ─── History ──────────────────────────────────────────────────────────────

    def _queue_history(self, session_id: str) -> None:
        """Queue the session's existing messages ahead of live events.

        A failed load is logged; the live stream still starts.
        """
        try:
            raw_events = history_to_events(self.client.get_messages(session_id))
        except (ServerRequestError, ValueError) as e:
            logger.warning("history for %s not loaded: %s", session_id, e)
            return
        queued = 0
        for raw in raw_events:
            try:
                event = parse_server_event(raw)
            except ValueError as e:
                logger.warning("history for %s: entry skipped: %s", session_id, e)
                continue
            if event is not None:
                self.inbound.put(ServerEventReceived(event=event, raw=raw))
                queued += 1
        logger.info("history for %s: %d events queued", session_id, queued)
