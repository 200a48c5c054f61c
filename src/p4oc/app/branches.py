"""Conversation branch tree, stored as an arena.

Branch records live in a flat list with an id -> index map; parent links
are ids, never object references. The root branch "root" always exists and
owns the conversation's first messages. A branch forked from message M
shows its parent's messages up to and including M, then its own.

The current branch is the one new messages are appended to. A branch is
active when it lies on the path from the root to the current branch, so
at most one child of any fork point is active at a time.

Not thread-safe: owned by the single writer (ConversationStore).
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)

ROOT_BRANCH_ID = "root"


class UnknownBranchError(KeyError):
    """A branch command named a branch id that does not exist."""


@dataclass(frozen=True)
class ConversationBranch:
    """Read-only view of one branch for observers."""

    id: str
    parent_message_id: str
    created_at: int
    title: str
    message_count: int
    is_active: bool
    parent_branch_id: str | None = None


@dataclass
class _BranchRecord:
    id: str
    parent_branch_id: str | None
    parent_message_id: str
    created_at: int
    title: str
    message_ids: list[str] = field(default_factory=list)


def _now_ms() -> int:
    return int(time.time() * 1000)


class BranchTree:
    def __init__(self, clock: Callable[[], int] = _now_ms) -> None:
        self._clock = clock
        self._records: list[_BranchRecord] = [
            _BranchRecord(ROOT_BRANCH_ID, None, "", clock(), "Main")
        ]
        self._index: dict[str, int] = {ROOT_BRANCH_ID: 0}
        self._owner: dict[str, str] = {}
        self._current = ROOT_BRANCH_ID
        self._next_id = 1

    # ─── Lookup ───────────────────────────────────────────────────────────────

    @property
    def current_id(self) -> str:
        return self._current

    def __contains__(self, branch_id: str) -> bool:
        return branch_id in self._index

    def __len__(self) -> int:
        return len(self._records)

    def _record(self, branch_id: str) -> _BranchRecord:
        index = self._index.get(branch_id)
        if index is None:
            raise UnknownBranchError(branch_id)
        return self._records[index]

    def owner_of(self, message_id: str) -> str | None:
        return self._owner.get(message_id)

    def path(self, branch_id: str | None = None) -> list[str]:
        """Branch ids from the root down to branch_id (default: current)."""
        record = self._record(branch_id or self._current)
        chain = [record.id]
        while record.parent_branch_id is not None:
            record = self._record(record.parent_branch_id)
            chain.append(record.id)
        chain.reverse()
        return chain

    def visible_message_ids(self, branch_id: str | None = None) -> list[str]:
        """Message ids shown on a branch, in conversation order."""
        chain = [self._record(b) for b in self.path(branch_id)]
        visible: list[str] = []
        for record, child in zip(chain, chain[1:] + [None]):
            if child is None:
                visible.extend(record.message_ids)
                break
            ids = record.message_ids
            cut = ids.index(child.parent_message_id) + 1
            visible.extend(ids[:cut])
        return visible

    def branches(self) -> list[ConversationBranch]:
        active = set(self.path())
        return [
            ConversationBranch(
                id=r.id,
                parent_message_id=r.parent_message_id,
                created_at=r.created_at,
                title=r.title,
                message_count=len(self.visible_message_ids(r.id)),
                is_active=r.id in active,
                parent_branch_id=r.parent_branch_id,
            )
            for r in self._records
        ]

    def children(self, branch_id: str) -> list[str]:
        return [r.id for r in self._records if r.parent_branch_id == branch_id]

    # ─── Mutation ─────────────────────────────────────────────────────────────

    def add_message(self, message_id: str) -> str:
        """Attach a new message to the current branch. Known ids keep their owner."""
        owner = self._owner.get(message_id)
        if owner is not None:
            return owner
        record = self._record(self._current)
        record.message_ids.append(message_id)
        self._owner[message_id] = record.id
        root = self._records[0]
        if not root.parent_message_id and record is root:
            root.parent_message_id = message_id
        return record.id

    def create(self, from_message_id: str, title: str = "") -> ConversationBranch:
        """Fork after from_message_id; the new branch becomes current.

        Raises:
            ValueError: If from_message_id is not a known message.
        """
        parent_id = self._owner.get(from_message_id)
        if parent_id is None:
            raise ValueError(f"cannot branch from unknown message {from_message_id!r}")
        branch_id = f"branch-{self._next_id}"
        self._next_id += 1
        record = _BranchRecord(
            id=branch_id,
            parent_branch_id=parent_id,
            parent_message_id=from_message_id,
            created_at=self._clock(),
            title=title or f"Branch {self._next_id - 1}",
        )
        self._index[branch_id] = len(self._records)
        self._records.append(record)
        self._current = branch_id
        logger.info("branch %s created from message %s", branch_id, from_message_id)
        return self._view(branch_id)

    def select(self, branch_id: str) -> None:
        self._record(branch_id)
        self._current = branch_id

    def delete(self, branch_id: str) -> list[str]:
        """Delete a branch and its descendants. Returns the removed message ids.

        When the current branch is removed, the newest remaining sibling at the
        same fork point becomes current, else the parent branch.

        Raises:
            ValueError: For the root branch.
            UnknownBranchError: For an unknown id.
        """
        if branch_id == ROOT_BRANCH_ID:
            raise ValueError("the root branch cannot be deleted")
        target = self._record(branch_id)

        doomed = {branch_id}
        frontier = [branch_id]
        while frontier:
            parent = frontier.pop()
            for child in self.children(parent):
                doomed.add(child)
                frontier.append(child)

        current_lost = self._current in doomed
        removed_messages = [
            m for r in self._records if r.id in doomed for m in r.message_ids
        ]
        self._records = [r for r in self._records if r.id not in doomed]
        self._index = {r.id: i for i, r in enumerate(self._records)}
        for message_id in removed_messages:
            del self._owner[message_id]

        if current_lost:
            siblings = [
                r
                for r in self._records
                if r.parent_branch_id == target.parent_branch_id
                and r.parent_message_id == target.parent_message_id
            ]
            self._current = siblings[-1].id if siblings else target.parent_branch_id or ROOT_BRANCH_ID
        logger.info("branch %s deleted (%d branches, %d messages)", branch_id, len(doomed), len(removed_messages))
        return removed_messages

    def _view(self, branch_id: str) -> ConversationBranch:
        return next(b for b in self.branches() if b.id == branch_id)
