"""Event fan-out from one inbound queue to subscribers.

The router thread is the only consumer of its source queue, so subscribers
are called strictly in arrival order, one event at a time. Subscribers that
mutate state therefore need no locks as long as they are only reached
through a router.
"""

from __future__ import annotations

import logging
import queue
import threading
from collections.abc import Callable

logger = logging.getLogger(__name__)


class QueueSubscriber:
    """Re-queues events for a consumer on another thread (e.g. a display loop)."""

    def __init__(self) -> None:
        self.queue: queue.Queue = queue.Queue()

    def on_event(self, event: object) -> None:
        self.queue.put(event)


class DirectSubscriber:
    """Calls a function inline on the router thread."""

    def __init__(self, fn: Callable[[object], None]) -> None:
        self._fn = fn

    def on_event(self, event: object) -> None:
        self._fn(event)


class EventRouter:
    """Drains a source queue on a daemon thread and fans events out."""

    def __init__(self, source: queue.Queue, poll_interval: float = 0.1) -> None:
        self._source = source
        self._poll_interval = poll_interval
        self._subscribers: list = []
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def add_subscriber(self, subscriber) -> None:
        """Register a subscriber. Call before start()."""
        self._subscribers.append(subscriber)

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="p4oc-router", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 1.0) -> None:
        """Stop the router thread. Idempotent; safe before start()."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    def dispatch(self, event: object) -> None:
        """Deliver one event to every subscriber; a failing subscriber does not stop the rest."""
        for subscriber in self._subscribers:
            try:
                subscriber.on_event(event)
            except Exception:
                logger.exception("router subscriber error on %s", type(event).__name__)

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                event = self._source.get(timeout=self._poll_interval)
            except queue.Empty:
                continue
            self.dispatch(event)
