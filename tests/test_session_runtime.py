"""Integration tests for session_runtime.py - threads around one store."""

import io
import json
import logging
import threading
import time
import urllib.error

import pytest

from p4oc.app.session_runtime import SessionRuntime
from p4oc.core.parts import ToolError, ToolPending, ToolRunning
from p4oc.pipeline.event_source import EVENT_PATH


SESSION = "ses_1"


# ─── Helpers ─────────────────────────────────────────────────────────────────


def _wait_for(condition, timeout=3.0, interval=0.01):
    """Poll until condition() is truthy or timeout."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(interval)
    return condition()


def _frame(event_type, properties):
    payload = {"payload": {"type": event_type, "properties": properties}}
    return "data: {}\n\n".format(json.dumps(payload)).encode()


def _pending_tool_frames(call_id="t1"):
    return [
        _frame(
            "message.updated",
            {"info": {"id": "msg_a", "sessionID": SESSION, "role": "assistant", "time": {"created": 1}}},
        ),
        _frame(
            "message.part.updated",
            {
                "part": {
                    "id": "prt_" + call_id,
                    "sessionID": SESSION,
                    "messageID": "msg_a",
                    "type": "tool",
                    "callID": call_id,
                    "tool": "bash",
                    "state": {"status": "pending", "input": {"command": "npm test"}},
                }
            },
        ),
        _frame(
            "permission.asked",
            {
                "id": "per_" + call_id,
                "sessionID": SESSION,
                "permission": "bash",
                "patterns": ["npm test"],
                "tool": {"messageID": "msg_a", "callID": call_id},
            },
        ),
    ]


class FakeStream:
    """Byte lines standing in for the SSE response; ends after its frames."""

    def __init__(self, chunks):
        self._lines = []
        for chunk in chunks:
            self._lines.extend(chunk.splitlines(keepends=True))

    def __iter__(self):
        return iter(self._lines)

    def close(self):
        pass


class FakeResponse:
    status = 200

    def __init__(self, body=b"true"):
        self._body = body

    def read(self):
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class RoutingOpener:
    """Serves history and the event stream once, then refuses; answers replies."""

    def __init__(self, frames, reply_error=None, history=(), history_error=None):
        self._stream = FakeStream(frames)
        self._served = False
        self.reply_error = reply_error
        self.history = list(history)
        self.history_error = history_error
        self.posts = []
        self._lock = threading.Lock()

    def __call__(self, request, timeout=None):
        if request.full_url.endswith(EVENT_PATH):
            with self._lock:
                if self._served:
                    raise urllib.error.URLError("connection refused")
                self._served = True
            return self._stream
        if request.get_method() == "GET":
            if self.history_error is not None:
                raise self.history_error
            return FakeResponse(json.dumps(self.history).encode())
        with self._lock:
            self.posts.append((request.full_url, json.loads(request.data)))
        if self.reply_error is not None:
            raise self.reply_error
        return FakeResponse()


def _tool_state(snapshot, call_id):
    for message in snapshot.messages:
        found = message.find_tool(call_id)
        if found is not None:
            return found[1].state
    return None


@pytest.fixture
def make_runtime():
    runtimes = []

    def _make(opener, **kwargs):
        runtime = SessionRuntime("http://h", SESSION, reconnect_delay=0.05, opener=opener, **kwargs)
        runtimes.append(runtime)
        return runtime

    yield _make
    for runtime in runtimes:
        runtime.close()


# ─── Tests ────────────────────────────────────────────────────────────────────


def test_events_flow_into_snapshot(make_runtime):
    runtime = make_runtime(RoutingOpener(_pending_tool_frames()))
    seen = []
    runtime.subscribe(seen.append)
    runtime.start()

    assert _wait_for(lambda: len(runtime.snapshot.permissions) == 1)
    snapshot = runtime.snapshot
    assert [m.id for m in snapshot.messages] == ["msg_a"]
    assert isinstance(_tool_state(snapshot, "t1"), ToolPending)
    assert seen
    assert [s.version for s in seen] == sorted(s.version for s in seen)


def test_transport_loss_is_reported(make_runtime):
    runtime = make_runtime(RoutingOpener([]))
    runtime.start()

    assert _wait_for(lambda: "connection refused" in runtime.snapshot.transport_error)
    assert runtime.snapshot.connected is False


def test_approve_posts_decision_and_starts_tool(make_runtime):
    opener = RoutingOpener(_pending_tool_frames())
    runtime = make_runtime(opener)
    runtime.start()
    assert _wait_for(lambda: len(runtime.snapshot.permissions) == 1)

    runtime.approve_tool("t1")

    assert _wait_for(lambda: len(opener.posts) == 1)
    assert opener.posts[0] == ("http://h/permission/per_t1/reply", {"response": "allow"})
    assert _wait_for(lambda: isinstance(_tool_state(runtime.snapshot, "t1"), ToolRunning))
    assert runtime.snapshot.permissions == ()


def test_always_allow_posts_always(make_runtime):
    opener = RoutingOpener(_pending_tool_frames())
    runtime = make_runtime(opener)
    runtime.start()
    assert _wait_for(lambda: len(runtime.snapshot.permissions) == 1)

    runtime.always_allow("t1")

    assert _wait_for(lambda: len(opener.posts) == 1)
    assert opener.posts[0][1] == {"response": "always"}


def test_failed_delivery_rolls_tool_back_to_error(make_runtime):
    error = urllib.error.HTTPError("http://h", 500, "Internal Server Error", {}, io.BytesIO(b""))
    opener = RoutingOpener(_pending_tool_frames(), reply_error=error)
    runtime = make_runtime(opener)
    runtime.start()
    assert _wait_for(lambda: len(runtime.snapshot.permissions) == 1)

    runtime.approve_tool("t1")

    assert _wait_for(lambda: isinstance(_tool_state(runtime.snapshot, "t1"), ToolError))
    state = _tool_state(runtime.snapshot, "t1")
    assert state.message.startswith("Permission decision not delivered")
    assert "HTTP 500" in state.message


def test_deny_posts_deny(make_runtime):
    opener = RoutingOpener(_pending_tool_frames())
    runtime = make_runtime(opener)
    runtime.start()
    assert _wait_for(lambda: len(runtime.snapshot.permissions) == 1)

    runtime.deny_tool("t1")

    assert _wait_for(lambda: len(opener.posts) == 1)
    assert opener.posts[0][1] == {"response": "deny"}
    assert _wait_for(lambda: isinstance(_tool_state(runtime.snapshot, "t1"), ToolError))


def test_branch_commands_go_through_the_queue(make_runtime):
    runtime = make_runtime(RoutingOpener(_pending_tool_frames()))
    runtime.start()
    assert _wait_for(lambda: len(runtime.snapshot.messages) == 1)

    runtime.create_branch("msg_a", title="retry")
    assert _wait_for(lambda: len(runtime.snapshot.branches) == 2)
    branch_id = runtime.snapshot.current_branch_id
    assert branch_id != "root"

    runtime.delete_branch(branch_id)
    assert _wait_for(lambda: len(runtime.snapshot.branches) == 1)


def test_close_is_idempotent_and_keeps_last_snapshot(make_runtime):
    runtime = make_runtime(RoutingOpener(_pending_tool_frames()))
    runtime.start()
    assert _wait_for(lambda: len(runtime.snapshot.permissions) == 1)

    runtime.close()
    runtime.close()

    snapshot = runtime.snapshot
    assert [m.id for m in snapshot.messages] == ["msg_a"]
    assert snapshot.permissions == ()
    assert runtime.source.stopped


def test_record_path_writes_raw_events(make_runtime, tmp_path):
    path = tmp_path / "rec" / "events.jsonl"
    runtime = make_runtime(RoutingOpener(_pending_tool_frames()), record_path=str(path))
    runtime.start()
    assert _wait_for(lambda: len(runtime.snapshot.permissions) == 1)
    runtime.close()

    lines = path.read_text(encoding="utf-8").splitlines()
    types = [json.loads(line)["payload"]["type"] for line in lines]
    assert types == ["message.updated", "message.part.updated", "permission.asked"]


# ─── History ──────────────────────────────────────────────────────────────────


def _history():
    return [
        {
            "info": {"id": "msg_old", "sessionID": SESSION, "role": "user", "time": {"created": 0}},
            "parts": [
                {"id": "prt_old", "sessionID": SESSION, "messageID": "msg_old", "type": "text", "text": "earlier"}
            ],
        }
    ]


def test_history_is_loaded_before_live_events(make_runtime):
    runtime = make_runtime(RoutingOpener(_pending_tool_frames(), history=_history()))
    runtime.start()

    assert _wait_for(lambda: len(runtime.snapshot.permissions) == 1)
    messages = runtime.snapshot.messages
    assert [m.id for m in messages] == ["msg_old", "msg_a"]
    assert messages[0].text() == "earlier"


def test_history_failure_still_starts_stream(make_runtime, caplog):
    opener = RoutingOpener(_pending_tool_frames(), history_error=urllib.error.URLError("timed out"))
    runtime = make_runtime(opener)
    with caplog.at_level(logging.WARNING, logger="p4oc.app.session_runtime"):
        runtime.start()

    assert _wait_for(lambda: len(runtime.snapshot.permissions) == 1)
    assert [m.id for m in runtime.snapshot.messages] == ["msg_a"]
    assert "history for ses_1 not loaded" in caplog.text


# ─── Questions ────────────────────────────────────────────────────────────────


def _question_frame():
    return _frame(
        "question.asked",
        {
            "id": "que_1",
            "sessionID": SESSION,
            "questions": [{"header": "Storage", "question": "Which database?", "options": []}],
        },
    )


def test_answer_question_posts_answers(make_runtime):
    opener = RoutingOpener([_question_frame()])
    runtime = make_runtime(opener)
    runtime.start()
    assert _wait_for(lambda: len(runtime.snapshot.questions) == 1)

    runtime.answer_question("que_1", (("postgres",),))

    assert _wait_for(lambda: len(opener.posts) == 1)
    assert opener.posts[0] == ("http://h/question/que_1/reply", {"answers": [["postgres"]]})
    assert _wait_for(lambda: runtime.snapshot.questions == ())


def test_failed_answer_is_reported(make_runtime):
    error = urllib.error.HTTPError("http://h", 500, "Internal Server Error", {}, io.BytesIO(b""))
    runtime = make_runtime(RoutingOpener([_question_frame()], reply_error=error))
    runtime.start()
    assert _wait_for(lambda: len(runtime.snapshot.questions) == 1)

    runtime.answer_question("que_1", (("postgres",),))

    assert _wait_for(lambda: "not delivered" in runtime.snapshot.session_error)
    assert "HTTP 500" in runtime.snapshot.session_error


def test_dismiss_question_sends_nothing(make_runtime):
    opener = RoutingOpener([_question_frame()])
    runtime = make_runtime(opener)
    runtime.start()
    assert _wait_for(lambda: len(runtime.snapshot.questions) == 1)

    runtime.dismiss_question("que_1")

    assert _wait_for(lambda: runtime.snapshot.questions == ())
    assert opener.posts == []
