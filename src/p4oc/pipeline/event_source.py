"""Server-sent event reader for the server's global event stream.

Runs on its own daemon thread, parses every data frame through
parse_server_event, and hands the results to a sink (normally the
single-writer queue's put). It never touches conversation state.

On a dropped or refused connection it reports TransportStateChanged and
re-subscribes after reconnect_delay seconds. Missed events are not replayed.
"""

from __future__ import annotations

import http.client
import json
import logging
import threading
import urllib.error
import urllib.request
from collections.abc import Callable, Iterable, Iterator

from p4oc.pipeline.event_types import (
    InboundEvent,
    ServerEventReceived,
    TransportStateChanged,
    parse_server_event,
)

logger = logging.getLogger(__name__)

EVENT_PATH = "/global/event"

# Read timeout only; the server sends heartbeats well inside it.
_READ_TIMEOUT_S = 120.0


def iter_sse_data(lines: Iterable[bytes | str]) -> Iterator[str]:
    """Yield the data payload of each SSE frame.

    Multi-line data fields are joined with "\\n". Comment lines (":") and
    fields other than data are ignored. A trailing frame without a blank
    line terminator is still yielded.
    """
    data_lines: list[str] = []
    for raw in lines:
        line = raw.decode("utf-8", errors="replace") if isinstance(raw, bytes) else raw
        line = line.rstrip("\r\n")
        if not line:
            if data_lines:
                yield "\n".join(data_lines)
                data_lines = []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if field == "data":
            data_lines.append(value[1:] if value.startswith(" ") else value)
    if data_lines:
        yield "\n".join(data_lines)


def decode_frame(data: str) -> ServerEventReceived | None:
    """Decode one data payload. Malformed or unhandled frames give None (logged)."""
    try:
        raw = json.loads(data)
    except json.JSONDecodeError as e:
        logger.warning("dropping undecodable event frame: %s", e)
        return None
    try:
        event = parse_server_event(raw)
    except ValueError as e:
        logger.warning("dropping malformed server event: %s", e)
        return None
    if event is None:
        return None
    return ServerEventReceived(event=event, raw=raw)


class ServerEventSource:
    """Background SSE subscription feeding InboundEvents to a sink."""

    def __init__(
        self,
        base_url: str,
        sink: Callable[[InboundEvent], None],
        *,
        reconnect_delay: float = 3.0,
        opener: Callable = urllib.request.urlopen,
    ) -> None:
        self._url = base_url.rstrip("/") + EVENT_PATH
        self._sink = sink
        self._reconnect_delay = reconnect_delay
        self._opener = opener
        self._stop_event = threading.Event()
        self._response = None
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None

    @property
    def url(self) -> str:
        return self._url

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, name="p4oc-events", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        """Cancel the subscription. Already-delivered events stay valid."""
        self._stop_event.set()
        with self._lock:
            response = self._response
        if response is not None:
            try:
                response.close()
            except OSError as e:
                logger.debug("closing event stream: %s", e)
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=timeout)

    @property
    def stopped(self) -> bool:
        return self._stop_event.is_set()

    def _run(self) -> None:
        while not self._stop_event.is_set():
            error = self.run_once()
            if self._stop_event.is_set():
                break
            logger.info("event stream lost (%s); reconnecting in %.1fs", error, self._reconnect_delay)
            self._stop_event.wait(self._reconnect_delay)

    def run_once(self) -> str:
        """One connect-and-read cycle. Returns why the stream ended."""
        request = urllib.request.Request(self._url, headers={"Accept": "text/event-stream"})
        try:
            response = self._opener(request, timeout=_READ_TIMEOUT_S)
        except (urllib.error.URLError, http.client.HTTPException, OSError) as e:
            error = f"connect failed: {e}"
            self._sink(TransportStateChanged(connected=False, error=error))
            return error

        with self._lock:
            self._response = response
        self._sink(TransportStateChanged(connected=True))
        error = "stream closed"
        try:
            for data in iter_sse_data(response):
                if self._stop_event.is_set():
                    break
                received = decode_frame(data)
                if received is not None:
                    self._sink(received)
        except (http.client.HTTPException, OSError, ValueError) as e:
            # ValueError: read on a response closed by stop()
            error = f"read failed: {e}"
        finally:
            with self._lock:
                self._response = None
            response.close()

        if not self._stop_event.is_set():
            self._sink(TransportStateChanged(connected=False, error=error))
        return error
