"""Tests for server_client.py - replies and history requests."""

import io
import json
import urllib.error

import pytest

from p4oc.core.permissions import Decision
from p4oc.pipeline.server_client import DecisionDeliveryError, ServerClient, ServerRequestError


class FakeResponse:
    def __init__(self, status=200, body=b"true"):
        self.status = status
        self._body = body

    def read(self):
        return self._body

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False


class FakeOpener:
    def __init__(self, result):
        self.result = result
        self.requests = []

    def __call__(self, request, timeout=None):
        self.requests.append(request)
        if isinstance(self.result, Exception):
            raise self.result
        return self.result


def test_reply_permission_posts_decision():
    opener = FakeOpener(FakeResponse())
    client = ServerClient("http://localhost:4096/", opener=opener)

    client.reply_permission("per_1", Decision.ALWAYS)

    request = opener.requests[0]
    assert request.get_method() == "POST"
    assert request.full_url == "http://localhost:4096/permission/per_1/reply"
    assert request.get_header("Content-type") == "application/json"
    assert json.loads(request.data) == {"response": "always"}


def test_reply_permission_quotes_id():
    opener = FakeOpener(FakeResponse())
    ServerClient("http://h", opener=opener).reply_permission("a/b c", Decision.DENY)
    assert opener.requests[0].full_url == "http://h/permission/a%2Fb%20c/reply"


def test_http_error_raises_delivery_error():
    error = urllib.error.HTTPError("http://h", 404, "Not Found", {}, io.BytesIO(b""))
    client = ServerClient("http://h", opener=FakeOpener(error))

    with pytest.raises(DecisionDeliveryError) as excinfo:
        client.reply_permission("per_9", Decision.ALLOW)

    assert excinfo.value.request_id == "per_9"
    assert excinfo.value.reason == "HTTP 404 Not Found"
    assert "per_9" in str(excinfo.value)


def test_connection_error_raises_delivery_error():
    client = ServerClient("http://h", opener=FakeOpener(urllib.error.URLError("refused")))
    with pytest.raises(DecisionDeliveryError) as excinfo:
        client.reply_permission("per_1", Decision.ALLOW)
    assert "refused" in excinfo.value.reason


def test_non_2xx_status_raises_delivery_error():
    client = ServerClient("http://h", opener=FakeOpener(FakeResponse(status=500)))
    with pytest.raises(DecisionDeliveryError, match="HTTP 500"):
        client.reply_permission("per_1", Decision.DENY)


# ─── Questions ────────────────────────────────────────────────────────────────


def test_reply_question_posts_answers():
    opener = FakeOpener(FakeResponse())
    client = ServerClient("http://h", opener=opener)

    client.reply_question("que_1", (("Yes",), ("a", "b"), ()))

    request = opener.requests[0]
    assert request.get_method() == "POST"
    assert request.full_url == "http://h/question/que_1/reply"
    assert json.loads(request.data) == {"answers": [["Yes"], ["a", "b"], []]}


def test_reply_question_failure_names_the_question():
    client = ServerClient("http://h", opener=FakeOpener(urllib.error.URLError("refused")))
    with pytest.raises(DecisionDeliveryError) as excinfo:
        client.reply_question("que_1", (("Yes",),))
    assert excinfo.value.kind == "question"
    assert str(excinfo.value).startswith("question que_1:")


# ─── History ──────────────────────────────────────────────────────────────────


def test_get_messages_returns_history():
    history = [{"info": {"id": "msg_1", "role": "user"}, "parts": []}]
    opener = FakeOpener(FakeResponse(body=json.dumps(history).encode()))

    assert ServerClient("http://h/", opener=opener).get_messages("ses 1") == history

    request = opener.requests[0]
    assert request.get_method() == "GET"
    assert request.full_url == "http://h/session/ses%201/message"
    assert request.data is None


@pytest.mark.parametrize("body", [b"{not json", b'{"info": {}}'])
def test_get_messages_rejects_bad_body(body):
    client = ServerClient("http://h", opener=FakeOpener(FakeResponse(body=body)))
    with pytest.raises(ServerRequestError) as excinfo:
        client.get_messages("ses_1")
    assert excinfo.value.path == "/session/ses_1/message"


def test_get_messages_transport_failure():
    error = urllib.error.HTTPError("http://h", 404, "Not Found", {}, io.BytesIO(b""))
    client = ServerClient("http://h", opener=FakeOpener(error))
    with pytest.raises(ServerRequestError, match="HTTP 404 Not Found"):
        client.get_messages("ses_1")
