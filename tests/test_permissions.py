"""Tests for permissions.py - permission requests, decisions and rules."""

import logging

from p4oc.core import reducer
from p4oc.core.parts import Message, MessageRole, ToolError, ToolPending, ToolRunning
from p4oc.core.permissions import (
    Decision,
    Permission,
    PermissionProtocol,
    permission_title,
    scope_keys,
)
from p4oc.core.reducer import ToolEvent
from p4oc.core.tool_state import ToolDenied, ToolRequested, ToolStarted


# ─── Helpers ──────────────────────────────────────────────────────────────────


def _permission(call_id="t1", type_="bash", patterns=("npm test",), pid=None, session_id="s1"):
    return Permission(
        id=pid or "per_" + call_id,
        call_id=call_id,
        type=type_,
        session_id=session_id,
        patterns=tuple(patterns),
    )


def _protocol():
    ticks = iter(range(100, 10_000))
    return PermissionProtocol(clock=lambda: next(ticks))


def _message_with(call_id="t1", tool_name="bash"):
    message = Message(id="m1", role=MessageRole.ASSISTANT)
    return reducer.apply(message, ToolEvent(call_id=call_id, transition=ToolRequested(), tool_name=tool_name))


# ─── Titles ───────────────────────────────────────────────────────────────────


def test_permission_title_known_and_unknown_types():
    assert permission_title("bash", ["npm test"]) == "Execute command: npm test"
    assert permission_title("edit", ["src/a.py"]) == "Write to file: src/a.py"
    assert permission_title("webfetch") == "Fetch URL"
    assert permission_title("doom_loop") == "Continue execution"
    assert permission_title("custom_thing", ["x"]) == "Custom_thing: x"
    assert permission_title("") == ""


def test_display_title_prefers_server_title():
    assert _permission().display_title == "Execute command: npm test"
    titled = Permission(id="p", call_id="c", type="bash", title="Run the tests")
    assert titled.display_title == "Run the tests"


def test_scope_keys():
    assert scope_keys(_permission(patterns=("a", "b"))) == ("bash", "bash:a", "bash:b")
    assert scope_keys(_permission(patterns=())) == ("bash",)


# ─── Requests ─────────────────────────────────────────────────────────────────


def test_request_opens_and_returns_pending_event():
    protocol = _protocol()
    outcome = protocol.request(_permission())

    assert outcome.auto_resolution is None
    assert outcome.event == ToolEvent(call_id="t1", transition=ToolRequested(), tool_name="bash")
    assert protocol.get("t1").id == "per_t1"
    assert protocol.open_call_ids() == frozenset({"t1"})
    assert [p.call_id for p in protocol.pending()] == ["t1"]


def test_second_request_for_same_call_replaces_first(caplog):
    protocol = _protocol()
    protocol.request(_permission(pid="per_a"))
    with caplog.at_level(logging.WARNING, logger="p4oc.core.permissions"):
        protocol.request(_permission(pid="per_b"))

    assert protocol.get("t1").id == "per_b"
    assert len(protocol.pending()) == 1
    assert "superseded" in caplog.text


def test_pending_keeps_arrival_order():
    protocol = _protocol()
    for call_id in ("c", "a", "b"):
        protocol.request(_permission(call_id=call_id))
    assert [p.call_id for p in protocol.pending()] == ["c", "a", "b"]


# ─── Decisions ────────────────────────────────────────────────────────────────


def test_allow_once_resolves_to_started():
    protocol = _protocol()
    protocol.request(_permission())
    resolution = protocol.allow_once("t1")

    assert resolution.decision is Decision.ALLOW
    assert resolution.call_id == "t1"
    assert isinstance(resolution.event.transition, ToolStarted)
    assert protocol.get("t1") is None
    assert protocol.rules == frozenset()


def test_allow_once_unknown_call_is_none():
    assert _protocol().allow_once("nope") is None


def test_deny_resolves_to_denied_and_records_no_rule():
    protocol = _protocol()
    protocol.request(_permission())
    resolution = protocol.deny("t1")

    assert resolution.decision is Decision.DENY
    assert isinstance(resolution.event.transition, ToolDenied)
    assert protocol.rules == frozenset()
    assert protocol.pending() == []


def test_deny_twice_yields_single_error_state():
    protocol = _protocol()
    message = _message_with("t1")
    protocol.request(_permission())

    first = protocol.deny("t1")
    message = reducer.apply(message, first.event)
    state_after_one = message.find_tool("t1")[1].state

    second = protocol.deny("t1")
    assert second is None

    assert isinstance(state_after_one, ToolError)
    assert "denied" in state_after_one.message.lower()
    # Re-applying the same denial is absorbed by the terminal state.
    assert reducer.apply(message, first.event) is message


def test_pending_permission_then_deny_scenario():
    """Pending -> permission requested -> deny ends in a denied Error."""
    protocol = _protocol()
    message = _message_with("t1")
    assert isinstance(message.find_tool("t1")[1].state, ToolPending)

    outcome = protocol.request(_permission())
    message = reducer.apply(message, outcome.event, open_permissions=protocol.open_call_ids())
    # Execution is gated while the request is open.
    blocked = reducer.apply(
        message,
        ToolEvent(call_id="t1", transition=ToolStarted()),
        open_permissions=protocol.open_call_ids(),
    )
    assert blocked is message

    message = reducer.apply(message, protocol.deny("t1").event, open_permissions=protocol.open_call_ids())
    state = message.find_tool("t1")[1].state
    assert isinstance(state, ToolError)
    assert "denied" in state.message


def test_allow_always_records_type_rule_and_auto_allows_later_requests():
    protocol = _protocol()
    protocol.request(_permission(call_id="t1"))
    resolution = protocol.allow_always("t1")

    assert resolution.decision is Decision.ALWAYS
    assert protocol.has_rule("bash")

    outcome = protocol.request(_permission(call_id="t2", patterns=("ls",)))
    assert outcome.auto_resolution is not None
    assert outcome.auto_resolution.decision is Decision.ALLOW
    assert outcome.auto_resolution.call_id == "t2"
    assert protocol.get("t2") is None


def test_allow_always_with_pattern_scope():
    protocol = _protocol()
    protocol.request(_permission(call_id="t1", patterns=("npm test",)))
    protocol.allow_always("t1", scope_key="bash:npm test")

    same = protocol.request(_permission(call_id="t2", patterns=("npm test",)))
    other = protocol.request(_permission(call_id="t3", patterns=("rm -rf build",)))
    assert same.auto_resolution is not None
    assert other.auto_resolution is None
    assert protocol.get("t3") is not None


def test_take_auto_allowed_closes_covered_requests():
    protocol = _protocol()
    protocol.request(_permission(call_id="t1"))
    protocol.request(_permission(call_id="t2"))
    protocol.request(_permission(call_id="e1", type_="edit", patterns=("a.py",)))

    protocol.allow_always("t1")
    covered = protocol.take_auto_allowed()

    assert [r.call_id for r in covered] == ["t2"]
    assert all(r.decision is Decision.ALLOW for r in covered)
    assert [p.call_id for p in protocol.pending()] == ["e1"]
    assert protocol.take_auto_allowed() == []


def test_allow_then_started_moves_pending_to_running():
    protocol = _protocol()
    message = _message_with("t1")
    protocol.request(_permission())
    resolution = protocol.allow_once("t1")

    message = reducer.apply(message, resolution.event, open_permissions=protocol.open_call_ids())
    state = message.find_tool("t1")[1].state
    assert isinstance(state, ToolRunning)
    assert state.started_at >= 100


# ─── Closing ──────────────────────────────────────────────────────────────────


def test_close_by_permission_id():
    protocol = _protocol()
    protocol.request(_permission(call_id="t1", pid="per_x"))
    assert protocol.close("per_unknown") is None
    closed = protocol.close("per_x")
    assert closed.call_id == "t1"
    assert protocol.pending() == []


def test_close_session_only_drops_that_session():
    protocol = _protocol()
    protocol.request(_permission(call_id="a", session_id="s1"))
    protocol.request(_permission(call_id="b", session_id="s2"))
    closed = protocol.close_session("s1")
    assert [p.call_id for p in closed] == ["a"]
    assert [p.call_id for p in protocol.pending()] == ["b"]
