"""Tests for rendering.py - rich renderables for snapshots and diffs."""

import io

import pytest
from rich.console import Console

from p4oc import rendering
from p4oc.app.branches import ConversationBranch
from p4oc.app.conversation_store import ConversationSnapshot
from p4oc.core.diff_analysis import group_by_hunk
from p4oc.core.parts import (
    PART_TYPES,
    AgentPart,
    CompactionPart,
    FilePart,
    Message,
    MessageError,
    MessageRole,
    PatchPart,
    ReasoningPart,
    RetryPart,
    RunStatus,
    SnapshotPart,
    StepFinishPart,
    StepStartPart,
    SubtaskPart,
    TextPart,
    TokenUsage,
    ToolCompleted,
    ToolError,
    ToolPart,
    ToolRunning,
)
from p4oc.core.permissions import Permission
from p4oc.core.questions import Question, QuestionOption, QuestionRequest
from p4oc.pipeline.event_types import SessionStatus, SessionStatusKind


DIFF = """\
--- a/app.py
+++ b/app.py
@@ -10,3 +10,3 @@
 import os
-x = 1
+x = 2
"""


def _plain(renderable):
    console = Console(file=io.StringIO(), width=120, color_system=None)
    console.print(renderable)
    return console.file.getvalue()


def _tool(call_id, state, tool_name="bash"):
    return ToolPart(id="prt_" + call_id, call_id=call_id, tool_name=tool_name, state=state)


# ─── Part renderers ───────────────────────────────────────────────────────────


def test_every_part_type_has_a_renderer():
    assert set(rendering._PART_RENDERERS) == set(PART_TYPES)


@pytest.mark.parametrize("part", [StepStartPart(id="s"), SnapshotPart(id="n", snapshot_id="abc")])
def test_invisible_parts_render_nothing(part):
    assert rendering.render_part(part) is None


def test_streaming_text_shows_cursor():
    assert _plain(rendering.render_part(TextPart(content="Hello", is_streaming=True))).startswith("Hello▌")
    assert "▌" not in _plain(rendering.render_part(TextPart(content="Hello")))


def test_reasoning_shows_first_line_only():
    out = _plain(rendering.render_part(ReasoningPart(content="plan step\nmore detail", start_time=1)))
    assert "thinking…" in out
    assert "plan step" in out
    assert "more detail" not in out
    done = _plain(rendering.render_part(ReasoningPart(content="x", start_time=1, end_time=2)))
    assert "thought" in done


def test_tool_line_shows_status_icon_and_summary():
    out = _plain(rendering.render_part(_tool("t1", ToolRunning(input={"command": "npm test"}, started_at=1))))
    assert "◐ [bash] (terminal) npm test" in out


def test_tool_error_renders_inline_error_line():
    part = _tool("t1", ToolError(input={"command": "rm -rf /"}, message="Permission denied by user"))
    out = _plain(rendering.render_part(part))
    lines = out.splitlines()
    assert "[bash]" in lines[0]
    assert lines[1].strip() == "✗ Permission denied by user"


def test_edit_tool_shows_diff_stats():
    state = ToolCompleted(
        input={"filePath": "/src/app.py"},
        metadata={"diff": DIFF},
        started_at=1,
        ended_at=2,
    )
    out = _plain(rendering.render_part(_tool("t2", state, tool_name="edit")))
    assert "+1 -1" in out
    assert "app.py" in out


def test_misc_part_renderers():
    assert "[file] notes.md (text/markdown)" in _plain(
        rendering.render_part(FilePart(mime_type="text/markdown", filename="notes.md", url="file:///notes.md"))
    )
    assert "[patch] 2 files" in _plain(rendering.render_part(PatchPart(files=("a", "b"))))
    assert "[patch] 1 file" in _plain(rendering.render_part(PatchPart(files=("a",))))
    assert "retry #2: overloaded" in _plain(rendering.render_part(RetryPart(attempt=2, error_message="overloaded")))
    assert "auto-compacted" in _plain(rendering.render_part(CompactionPart(is_automatic=True)))
    assert "→ agent build" in _plain(rendering.render_part(AgentPart(to_agent="build")))
    subtask = SubtaskPart(agent_name="explore", description="find callers", status=RunStatus.COMPLETED)
    assert "✓ subtask @explore find callers" in _plain(rendering.render_part(subtask))


def test_step_finish_line():
    part = StepFinishPart(reason="stop", cost=0.0123, tokens_in=100, tokens_out=20)
    out = _plain(rendering.render_part(part))
    assert "step finished (stop)" in out
    assert "100 in / 20 out" in out
    assert "$0.0123" in out


# ─── Messages ─────────────────────────────────────────────────────────────────


def test_user_message_header():
    assert _plain(rendering.render_message_header(Message(id="m", role=MessageRole.USER))).strip() == "USER"


def test_assistant_header_shows_model_usage_and_progress():
    message = Message(
        id="m",
        role=MessageRole.ASSISTANT,
        model_id="claude-x",
        tokens=TokenUsage(input=10, output=5),
        cost=0.5,
    )
    out = _plain(rendering.render_message_header(message))
    assert "ASSISTANT claude-x · 10 in / 5 out · $0.5000 …" in out


def test_complete_message_gets_collapsed_tool_summary():
    parts = (
        _tool("a", ToolCompleted(input={"filePath": "x"}, started_at=1, ended_at=2), tool_name="read"),
        _tool("b", ToolCompleted(input={"filePath": "y"}, started_at=1, ended_at=2), tool_name="read"),
    )
    running = Message(id="m", role=MessageRole.ASSISTANT, parts=parts)
    done = Message(id="m", role=MessageRole.ASSISTANT, parts=parts, is_complete=True)

    assert "✓ read ×2" not in _plain(rendering.render_message(running))
    assert "✓ read ×2" in _plain(rendering.render_message(done))


def test_message_error_line():
    message = Message(
        id="m",
        role=MessageRole.ASSISTANT,
        error=MessageError(code="ProviderAuthError", message="bad key"),
        is_complete=True,
    )
    assert "✗ ProviderAuthError: bad key" in _plain(rendering.render_message(message))


def test_failed_tool_does_not_hide_siblings():
    message = Message(
        id="m",
        role=MessageRole.ASSISTANT,
        parts=(
            TextPart(content="before"),
            _tool("t1", ToolError(message="boom")),
            TextPart(content="after"),
        ),
    )
    out = _plain(rendering.render_message(message))
    assert out.index("before") < out.index("boom") < out.index("after")


def test_renderer_crash_is_scoped_to_its_part(monkeypatch, caplog):
    def broken(part, catalog):
        raise KeyError("content")

    monkeypatch.setitem(rendering._PART_RENDERERS, TextPart, broken)
    message = Message(
        id="m",
        role=MessageRole.ASSISTANT,
        parts=(
            TextPart(id="p1", content="hello"),
            _tool("t1", ToolRunning(input={"command": "npm test"}, started_at=1)),
        ),
    )

    out = _plain(rendering.render_message(message))

    assert "✗ cannot render TextPart: 'content'" in out
    assert "◐ [bash] (terminal) npm test" in out
    assert "render failed for TextPart p1" in caplog.text


# ─── Snapshot chrome ──────────────────────────────────────────────────────────


def test_permission_line():
    permission = Permission(id="per_1", call_id="t1", type="bash", patterns=("npm test",))
    out = _plain(rendering.render_permission(permission))
    assert "⚠ permission Execute command: npm test" in out
    assert "(call t1)" in out


def test_question_line_shows_first_queued_question():
    first = QuestionRequest(
        id="que_1",
        session_id="s",
        questions=(Question("Which database?", header="Storage", options=(QuestionOption("sqlite"), QuestionOption("pg"))),),
    )
    second = QuestionRequest(id="que_2", session_id="s", questions=(Question("Proceed?"),))
    snapshot = ConversationSnapshot(session_id="s", questions=(first, second))

    out = _plain(rendering.render_snapshot(snapshot))

    assert "? question Storage: Which database?  (+1 more)" in out
    assert "sqlite | pg" in out
    assert "Proceed?" not in out


def test_branches_line_marks_active_path():
    branches = (
        ConversationBranch(id="root", parent_message_id="", created_at=0, title="Main", message_count=3, is_active=True),
        ConversationBranch(
            id="branch-1",
            parent_message_id="m2",
            created_at=1,
            title="Branch 1",
            message_count=2,
            is_active=False,
            parent_branch_id="root",
        ),
    )
    out = _plain(rendering.render_branches(branches, "root"))
    assert "● Main (3 msgs)" in out
    assert "○ Branch 1 (2 msgs)" in out


def test_status_line_variants():
    assert "○ disconnected" in _plain(rendering.render_status_line(ConversationSnapshot(session_id="s")))

    retrying = ConversationSnapshot(
        session_id="s",
        connected=True,
        status=SessionStatus(kind=SessionStatusKind.RETRY, attempt=2, message="rate limited"),
    )
    out = _plain(rendering.render_status_line(retrying))
    assert "● connected · retry #2 rate limited" in out

    failed = ConversationSnapshot(session_id="s", transport_error="connect failed: refused")
    assert "connect failed: refused" in _plain(rendering.render_status_line(failed))


def test_render_snapshot_lists_messages_and_permissions():
    snapshot = ConversationSnapshot(
        session_id="s",
        connected=True,
        messages=(
            Message(id="u", role=MessageRole.USER, parts=(TextPart(content="run tests"),), is_complete=True),
            Message(id="a", role=MessageRole.ASSISTANT, parts=(TextPart(content="ok"),)),
        ),
        permissions=(Permission(id="per_1", call_id="t1", type="bash"),),
    )
    out = _plain(rendering.render_snapshot(snapshot))
    assert out.index("USER") < out.index("run tests") < out.index("ASSISTANT") < out.index("⚠ permission")
    assert "branches:" not in out


# ─── Diffs ────────────────────────────────────────────────────────────────────


def test_render_hunks_numbers_lines_and_summarizes():
    out = _plain(rendering.render_hunks(group_by_hunk(DIFF), DIFF))
    lines = out.splitlines()
    assert lines[0] == "app.py"
    assert "@@ -10,3 +10,3 @@" in out
    assert "   10  import os" in out
    assert "      -x = 1" in out
    assert "   11 +x = 2" in out
    assert lines[-1] == "1 hunks · +1 -1"


def test_render_hunks_without_text_has_no_summary():
    out = _plain(rendering.render_hunks(group_by_hunk(DIFF)))
    assert "hunks ·" not in out
