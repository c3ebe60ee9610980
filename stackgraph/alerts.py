"""
Log alerting for the backend log group.

CloudWatch Logs delivers subscription data as base64-encoded gzip JSON.
Every log line that matches the predicate is posted to a Slack incoming
webhook as ``{"text": <line>}``.
"""

import base64
import gzip
import json
import os
from typing import Any, Callable, Dict, Iterable, Iterator, Optional

import httpx

from stackgraph.errors import AlertDeliveryError


def decode_log_payload(data: str) -> Dict[str, Any]:
    payload = base64.b64decode(data)
    return json.loads(gzip.decompress(payload).decode("utf-8"))


def contains_error(line: str) -> bool:
    return "error" in line


def filter_lines(lines: Iterable[str], predicate: Callable[[str], bool]) -> Iterator[str]:
    for line in lines:
        if predicate(line):
            yield line


class SlackNotifier:
    """Posts messages to a Slack incoming webhook."""

    def __init__(self, webhook_url: str, timeout: float = 10.0, client: Optional[httpx.Client] = None):
        if not webhook_url:
            raise ValueError("Webhook url must not be empty")
        self.webhook_url = webhook_url
        self.timeout = timeout
        self._client = client

    def __call__(self, message: str) -> None:
        self.send(message)

    def send(self, message: str) -> httpx.Response:
        client = self._client or httpx.Client(timeout=self.timeout)
        try:
            response = client.post(
                self.webhook_url,
                json={"text": message},
                headers={"Content-Type": "application/json"},
            )
        finally:
            if self._client is None:
                client.close()
        if not response.is_success:
            raise AlertDeliveryError(response.status_code, response.text[:200])
        return response


def notify_matching(
    lines: Iterable[str],
    predicate: Callable[[str], bool],
    notify: Callable[[str], Any],
) -> int:
    sent = 0
    for line in filter_lines(lines, predicate):
        notify(line)
        sent += 1
    return sent


def handler(event: Dict[str, Any], context: Any = None) -> Dict[str, Any]:
    """Lambda entry point for a CloudWatch Logs subscription."""
    parsed = decode_log_payload(event["awslogs"]["data"])
    notifier = SlackNotifier(os.environ["SLACK_WEBHOOK_URL"])
    messages = (event_["message"] for event_ in parsed.get("logEvents", []))
    sent = notify_matching(messages, contains_error, notifier)
    return {"sent": sent}
