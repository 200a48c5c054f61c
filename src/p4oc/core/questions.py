"""Questions the agent asks the user mid-turn.

A QuestionRequest holds one or more questions. The server blocks the asking
tool call until the request is answered; the answer carries one list of
selected labels per question, in question order.

QuestionQueue is owned by the single writer, like PermissionProtocol. Open
requests are shown one at a time, oldest first.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)

Answers = tuple[tuple[str, ...], ...]


@dataclass(frozen=True)
class QuestionOption:
    label: str
    description: str = ""


@dataclass(frozen=True)
class Question:
    """One question. custom=True allows free-text answers beyond the options."""

    question: str
    header: str = ""
    options: tuple[QuestionOption, ...] = ()
    multiple: bool = False
    custom: bool = True


@dataclass(frozen=True)
class QuestionRequest:
    """id addresses the reply endpoint; call_id ties it to the asking tool call."""

    id: str
    session_id: str
    questions: tuple[Question, ...]
    message_id: str = ""
    call_id: str = ""

    @property
    def title(self) -> str:
        first = self.questions[0] if self.questions else None
        if first is None:
            return ""
        return f"{first.header}: {first.question}" if first.header else first.question


def validate_answers(request: QuestionRequest, answers: Answers) -> None:
    """Check answers fit the request's questions.

    Raises:
        ValueError: When the answers do not fit the questions.
    """
    if len(answers) != len(request.questions):
        raise ValueError(
            f"question {request.id}: {len(answers)} answers for {len(request.questions)} questions"
        )
    for index, (question, selected) in enumerate(zip(request.questions, answers)):
        if not question.multiple and len(selected) > 1:
            raise ValueError(f"question {request.id}[{index}]: only one answer allowed")
        if question.custom:
            continue
        labels = {o.label for o in question.options}
        unknown = [label for label in selected if label not in labels]
        if unknown:
            raise ValueError(f"question {request.id}[{index}]: not an option: {unknown[0]!r}")


class QuestionQueue:
    """Open question requests for one session, in arrival order."""

    def __init__(self) -> None:
        self._open: dict[str, QuestionRequest] = {}

    def __len__(self) -> int:
        return len(self._open)

    def get(self, request_id: str) -> QuestionRequest | None:
        return self._open.get(request_id)

    @property
    def current(self) -> QuestionRequest | None:
        """The request to show now: the oldest open one."""
        return next(iter(self._open.values()), None)

    def pending(self) -> list[QuestionRequest]:
        return list(self._open.values())

    def ask(self, request: QuestionRequest) -> bool:
        """Queue a request. A repeated id replaces the request in place."""
        if request.id in self._open:
            if self._open[request.id] == request:
                return False
            logger.debug("question %s re-sent; replacing", request.id)
        self._open[request.id] = request
        return True

    def take(self, request_id: str) -> QuestionRequest | None:
        """Remove a request, answered or dismissed. None when it is not open."""
        return self._open.pop(request_id, None)

    def close_session(self, session_id: str) -> list[QuestionRequest]:
        closed = [r for r in self._open.values() if r.session_id == session_id]
        for request in closed:
            del self._open[request.id]
        return closed
