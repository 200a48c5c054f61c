"""Event log recording and loading (JSON Lines).

EventLogRecorder is a router subscriber: every ServerEventReceived it sees is
appended as the raw decoded JSON, one object per line. Replaying a log
through parse_server_event reproduces the same snapshots the live session
produced.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path

from p4oc.pipeline.event_types import ServerEventReceived

logger = logging.getLogger(__name__)


class EventLogRecorder:
    """Append raw server events to a .jsonl file.

    The file is created lazily on the first event, so a session that never
    received anything leaves no empty file behind.
    """

    def __init__(self, path: str) -> None:
        self.path = path
        self._file = None
        self.events_written = 0

    def on_event(self, event: object) -> None:
        if not isinstance(event, ServerEventReceived):
            return
        if self._file is None:
            Path(self.path).parent.mkdir(parents=True, exist_ok=True)
            self._file = open(self.path, "a", encoding="utf-8")
            logger.info("recording events to %s", self.path)
        self._file.write(json.dumps(event.raw, separators=(",", ":")) + "\n")
        self._file.flush()
        self.events_written += 1

    def close(self) -> None:
        if self._file is None:
            return
        self._file.close()
        self._file = None
        logger.info("%s: %d events recorded", os.path.basename(self.path), self.events_written)


def load_event_log(path: str) -> list[dict]:
    """Load raw event dicts from a .jsonl log. Blank lines are skipped.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        ValueError: If a line is not a JSON object (message names the line).
    """
    events: list[dict] = []
    with open(path, "r", encoding="utf-8") as f:
        for lineno, line in enumerate(f, start=1):
            if not line.strip():
                continue
            try:
                raw = json.loads(line)
            except json.JSONDecodeError as e:
                raise ValueError(f"{path}:{lineno}: invalid JSON: {e.msg}") from e
            if not isinstance(raw, dict):
                raise ValueError(f"{path}:{lineno}: expected a JSON object")
            events.append(raw)
    return events
