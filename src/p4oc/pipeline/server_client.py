"""Control channel: replies and history requests sent to the server."""

from __future__ import annotations

import http.client
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from collections.abc import Callable

from p4oc.core.permissions import Decision
from p4oc.core.questions import Answers

logger = logging.getLogger(__name__)

_TIMEOUT_S = 30.0


class ServerRequestError(Exception):
    """A control request failed or returned an unusable body."""

    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class DecisionDeliveryError(Exception):
    """A permission decision or question answer could not be delivered."""

    def __init__(self, request_id: str, reason: str, kind: str = "permission") -> None:
        super().__init__(f"{kind} {request_id}: {reason}")
        self.request_id = request_id
        self.reason = reason
        self.kind = kind


def _quote(value: str) -> str:
    return urllib.parse.quote(value, safe="")


class ServerClient:
    """Thin HTTP client for the server's control endpoints."""

    def __init__(self, base_url: str, *, opener: Callable = urllib.request.urlopen) -> None:
        self._base_url = base_url.rstrip("/")
        self._opener = opener

    @property
    def base_url(self) -> str:
        return self._base_url

    def _request(self, method: str, path: str, payload: object = None) -> bytes:
        """Send one request; returns the response body.

        Raises:
            ServerRequestError: On connection failure or a non-2xx status.
        """
        data = None if payload is None else json.dumps(payload).encode()
        headers = {"Accept": "application/json"}
        if data is not None:
            headers["Content-Type"] = "application/json"
        request = urllib.request.Request(self._base_url + path, data=data, headers=headers, method=method)
        try:
            with self._opener(request, timeout=_TIMEOUT_S) as response:
                status = getattr(response, "status", 200)
                body = response.read()
        except urllib.error.HTTPError as e:
            raise ServerRequestError(path, f"HTTP {e.code} {e.reason}") from e
        except (urllib.error.URLError, http.client.HTTPException, OSError) as e:
            raise ServerRequestError(path, str(e)) from e
        if not 200 <= status < 300:
            raise ServerRequestError(path, f"HTTP {status}")
        return body

    def reply_permission(self, permission_id: str, decision: Decision) -> None:
        """POST /permission/<id>/reply with {"response": decision}.

        Raises:
            DecisionDeliveryError: On connection failure or a non-2xx status.
        """
        try:
            self._request("POST", f"/permission/{_quote(permission_id)}/reply", {"response": decision.value})
        except ServerRequestError as e:
            raise DecisionDeliveryError(permission_id, e.reason) from e
        logger.info("permission %s answered %s", permission_id, decision.value)

    def reply_question(self, request_id: str, answers: Answers) -> None:
        """POST /question/<id>/reply with {"answers": [[label, ...], ...]}.

        Raises:
            DecisionDeliveryError: On connection failure or a non-2xx status.
        """
        body = {"answers": [list(selected) for selected in answers]}
        try:
            self._request("POST", f"/question/{_quote(request_id)}/reply", body)
        except ServerRequestError as e:
            raise DecisionDeliveryError(request_id, e.reason, kind="question") from e
        logger.info("question %s answered", request_id)

    def get_messages(self, session_id: str) -> list:
        """GET /session/<id>/message: the session's history, oldest first.

        Raises:
            ServerRequestError: On transport failure or a body that is not a JSON list.
        """
        path = f"/session/{_quote(session_id)}/message"
        body = self._request("GET", path)
        try:
            history = json.loads(body)
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise ServerRequestError(path, f"undecodable body: {e}") from e
        if not isinstance(history, list):
            raise ServerRequestError(path, "expected a list of messages")
        logger.info("session %s: %d messages in history", session_id, len(history))
        return history
