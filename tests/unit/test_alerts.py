"""Tests for the log alert handler and Slack notifier."""

from __future__ import annotations

import base64
import gzip
import json

import httpx
import pytest

from stackgraph import alerts
from stackgraph.alerts import (
    SlackNotifier,
    contains_error,
    decode_log_payload,
    filter_lines,
    handler,
    notify_matching,
)
from stackgraph.errors import AlertDeliveryError

WEBHOOK = "https://hooks.slack.com/services/T000/B000/XXXX"

# ---------------------------------------------------------------------------
# Helper factories
# ---------------------------------------------------------------------------


def _make_payload(*messages: str) -> str:
    body = {
        "messageType": "DATA_MESSAGE",
        "logGroup": "test-backend-logs",
        "logEvents": [{"id": str(i), "timestamp": 0, "message": m} for i, m in enumerate(messages)],
    }
    return base64.b64encode(gzip.compress(json.dumps(body).encode("utf-8"))).decode("ascii")


def _make_client(status_code: int = 200, sink: list | None = None) -> httpx.Client:
    def respond(request: httpx.Request) -> httpx.Response:
        if sink is not None:
            sink.append(request)
        return httpx.Response(status_code, text="ok" if status_code < 400 else "invalid_token")

    return httpx.Client(transport=httpx.MockTransport(respond))


# ---------------------------------------------------------------------------
# Decoding and filtering
# ---------------------------------------------------------------------------


class TestDecode:
    def test_decode_log_payload(self) -> None:
        parsed = decode_log_payload(_make_payload("started", "error: db down"))
        assert [e["message"] for e in parsed["logEvents"]] == ["started", "error: db down"]

    def test_contains_error_is_case_sensitive(self) -> None:
        assert contains_error("an error occurred")
        assert not contains_error("ERROR in caps")

    def test_filter_lines_is_lazy(self) -> None:
        lines = filter_lines(iter(["ok", "error 1", "error 2"]), contains_error)
        assert next(lines) == "error 1"
        assert list(lines) == ["error 2"]


# ---------------------------------------------------------------------------
# Notifier
# ---------------------------------------------------------------------------


class TestSlackNotifier:
    def test_posts_text_payload(self) -> None:
        requests: list = []
        notifier = SlackNotifier(WEBHOOK, client=_make_client(sink=requests))
        response = notifier.send("error: boom")
        assert response.status_code == 200
        assert len(requests) == 1
        assert str(requests[0].url) == WEBHOOK
        assert json.loads(requests[0].content) == {"text": "error: boom"}

    def test_non_success_status_raises(self) -> None:
        notifier = SlackNotifier(WEBHOOK, client=_make_client(status_code=403))
        with pytest.raises(AlertDeliveryError) as exc_info:
            notifier("error: boom")
        assert exc_info.value.status_code == 403
        assert str(exc_info.value) == "Error: 403"

    def test_empty_webhook_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            SlackNotifier("")


class TestNotifyMatching:
    def test_counts_sent_messages(self) -> None:
        sent: list = []
        count = notify_matching(["ok", "error a", "fine", "error b"], contains_error, sent.append)
        assert count == 2
        assert sent == ["error a", "error b"]

    def test_nothing_matches(self) -> None:
        assert notify_matching(["ok"], contains_error, lambda _: pytest.fail("should not notify")) == 0

    def test_delivery_failure_propagates(self) -> None:
        notifier = SlackNotifier(WEBHOOK, client=_make_client(status_code=500))
        with pytest.raises(AlertDeliveryError):
            notify_matching(["error"], contains_error, notifier)


# ---------------------------------------------------------------------------
# Lambda handler
# ---------------------------------------------------------------------------


class TestHandler:
    def test_handler_forwards_error_lines(self, monkeypatch) -> None:
        requests: list = []
        real_client = httpx.Client

        def client_factory(**kwargs):
            return real_client(transport=httpx.MockTransport(
                lambda request: requests.append(request) or httpx.Response(200, text="ok")
            ), **kwargs)

        monkeypatch.setenv("SLACK_WEBHOOK_URL", WEBHOOK)
        monkeypatch.setattr(alerts.httpx, "Client", client_factory)
        event = {"awslogs": {"data": _make_payload("booting", "error: timeout", "error: retry failed")}}

        assert handler(event, None) == {"sent": 2}
        assert [json.loads(r.content)["text"] for r in requests] == ["error: timeout", "error: retry failed"]

    def test_handler_requires_webhook_env(self, monkeypatch) -> None:
        monkeypatch.delenv("SLACK_WEBHOOK_URL", raising=False)
        with pytest.raises(KeyError):
            handler({"awslogs": {"data": _make_payload("error")}}, None)
