"""Permission request/response protocol gating tool execution.

PermissionProtocol is owned by the single writer (see app.session_runtime);
it is not thread-safe. It holds the open requests, at most one per call id,
and the in-memory always-allow rules. It never touches messages itself: every
operation returns the ToolEvent the caller must reduce into the message.

No request ever expires on the client. A request stays open until the user
decides, the server reports a reply, or the session ends.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from p4oc.core.parts import JsonDict
from p4oc.core.reducer import ToolEvent
from p4oc.core.tool_state import ToolDenied, ToolRequested, ToolStarted

logger = logging.getLogger(__name__)


class Decision(Enum):
    """Wire values sent on the permission reply endpoint."""

    ALLOW = "allow"
    ALWAYS = "always"
    DENY = "deny"


_TITLE_ACTIONS = {
    "bash": "Execute command",
    "shell": "Execute command",
    "edit": "Write to file",
    "write": "Write to file",
    "patch": "Edit file",
    "webfetch": "Fetch URL",
    "task": "Run sub-agent",
    "skill": "Use skill",
    "external_directory": "Access external directory",
    "doom_loop": "Continue execution",
}


def permission_title(permission_type: str, patterns: tuple[str, ...] | list[str] = ()) -> str:
    """Human title: "Execute command: npm test"."""
    action = _TITLE_ACTIONS.get(permission_type)
    if action is None:
        action = permission_type[:1].upper() + permission_type[1:]
    pattern = patterns[0] if patterns else ""
    return f"{action}: {pattern}" if pattern else action


@dataclass(frozen=True)
class Permission:
    """An authorization request for one pending tool call.

    id is the server's request id; it addresses the reply endpoint.
    type is the permission category, usually the tool name.
    """

    id: str
    call_id: str
    type: str
    title: str = ""
    session_id: str = ""
    message_id: str = ""
    patterns: tuple[str, ...] = ()
    metadata: JsonDict = field(default_factory=dict)
    created_at: int = 0

    @property
    def display_title(self) -> str:
        return self.title or permission_title(self.type, self.patterns)


@dataclass(frozen=True)
class Resolution:
    """A decision on a permission plus the optimistic local tool transition."""

    permission: Permission
    decision: Decision
    event: ToolEvent

    @property
    def call_id(self) -> str:
        return self.permission.call_id


@dataclass(frozen=True)
class RequestOutcome:
    """Result of registering a permission request.

    event always ensures a Pending tool part exists for the call. When an
    always-allow rule matched, auto_resolution carries the Allow decision and
    the request was never opened.
    """

    event: ToolEvent
    auto_resolution: Resolution | None = None


def scope_keys(permission: Permission) -> tuple[str, ...]:
    """Rule keys a request matches: its type, and type:pattern per pattern."""
    return (permission.type,) + tuple(f"{permission.type}:{p}" for p in permission.patterns)


def _now_ms() -> int:
    return int(time.time() * 1000)


class PermissionProtocol:
    """Open permission requests and always-allow rules for one session."""

    def __init__(self, clock: Callable[[], int] = _now_ms):
        self._clock = clock
        self._open: dict[str, Permission] = {}
        self._rules: set[str] = set()

    # ─── Queries ──────────────────────────────────────────────────────────────

    def get(self, call_id: str) -> Permission | None:
        return self._open.get(call_id)

    def pending(self) -> list[Permission]:
        """Open requests in arrival order."""
        return list(self._open.values())

    def open_call_ids(self) -> frozenset[str]:
        return frozenset(self._open)

    def has_rule(self, scope_key: str) -> bool:
        return scope_key in self._rules

    @property
    def rules(self) -> frozenset[str]:
        return frozenset(self._rules)

    # ─── Requests ─────────────────────────────────────────────────────────────

    def request(self, permission: Permission) -> RequestOutcome:
        """Register a server permission request.

        A second request for a call that already has one open replaces it:
        the server only waits on its newest request id.
        """
        pending_event = ToolEvent(
            call_id=permission.call_id,
            transition=ToolRequested(),
            tool_name=permission.type,
        )
        matched = next((k for k in scope_keys(permission) if k in self._rules), None)
        if matched is not None:
            logger.info("permission %s auto-allowed by rule %r", permission.id, matched)
            return RequestOutcome(
                event=pending_event,
                auto_resolution=self._resolution(permission, Decision.ALLOW),
            )

        previous = self._open.get(permission.call_id)
        if previous is not None and previous.id != permission.id:
            logger.warning(
                "call %s: permission %s superseded by %s",
                permission.call_id,
                previous.id,
                permission.id,
            )
        self._open[permission.call_id] = permission
        return RequestOutcome(event=pending_event)

    # ─── Resolutions ──────────────────────────────────────────────────────────

    def allow_once(self, call_id: str) -> Resolution | None:
        """Authorize this invocation only. None when nothing is open for call_id."""
        permission = self._open.pop(call_id, None)
        if permission is None:
            return None
        return self._resolution(permission, Decision.ALLOW)

    def allow_always(self, call_id: str, scope_key: str | None = None) -> Resolution | None:
        """Authorize this invocation and record a rule (default key: the permission type)."""
        permission = self._open.pop(call_id, None)
        if permission is None:
            return None
        key = scope_key or permission.type
        self._rules.add(key)
        logger.info("always-allow rule recorded: %r", key)
        # Other open requests covered by the new rule resolve too; the caller
        # sees them through take_auto_allowed().
        return self._resolution(permission, Decision.ALWAYS)

    def take_auto_allowed(self) -> list[Resolution]:
        """Close and return every open request now covered by a rule."""
        covered = [
            p for p in self._open.values() if any(k in self._rules for k in scope_keys(p))
        ]
        for permission in covered:
            del self._open[permission.call_id]
        return [self._resolution(p, Decision.ALLOW) for p in covered]

    def deny(self, call_id: str) -> Resolution | None:
        """Refuse this invocation; the call ends in Error. No rule is recorded."""
        permission = self._open.pop(call_id, None)
        if permission is None:
            return None
        return self._resolution(permission, Decision.DENY)

    def close(self, permission_id: str) -> Permission | None:
        """Drop an open request the server reports as answered elsewhere."""
        for call_id, permission in self._open.items():
            if permission.id == permission_id:
                del self._open[call_id]
                return permission
        return None

    def close_session(self, session_id: str) -> list[Permission]:
        """Drop every open request of an ended session."""
        closed = [p for p in self._open.values() if p.session_id == session_id]
        for permission in closed:
            del self._open[permission.call_id]
        return closed

    def _resolution(self, permission: Permission, decision: Decision) -> Resolution:
        if decision is Decision.DENY:
            transition = ToolDenied(ended_at=self._clock())
        else:
            transition = ToolStarted(started_at=self._clock())
        return Resolution(
            permission=permission,
            decision=decision,
            event=ToolEvent(call_id=permission.call_id, transition=transition),
        )
