"""Tests for metric_push.delivery."""

from __future__ import annotations

import datetime
import http.client
import json
import threading
import urllib.error
from io import BytesIO
from unittest.mock import MagicMock, patch

import pytest

from metric_push.config import CardStyle, Destination, TaskDefinition
from metric_push.delivery import (
    MemorySendHistory,
    SendRecord,
    WebhookClient,
    default_delivery_policy,
    deliver_to_all,
    is_rate_limited,
)
from metric_push.document import DocumentBuilder, TextBlock
from metric_push.errors import DeliveryRateLimited, DeliveryTransportError
from metric_push.locks import ConcurrencyController

NOW = datetime.datetime(2024, 3, 5, 12, 0)
DOC = DocumentBuilder(title="日报").add(TextBlock(title="a")).build()


def _make_response(data) -> MagicMock:
    """Create a mock urllib response."""
    body = data if isinstance(data, bytes) else json.dumps(data).encode("utf-8")
    mock = MagicMock()
    mock.read.return_value = body
    mock.__enter__ = MagicMock(return_value=mock)
    mock.__exit__ = MagicMock(return_value=False)
    return mock


def _client(max_attempts: int = 3) -> tuple[WebhookClient, list[float]]:
    sleeps: list[float] = []
    policy = default_delivery_policy(max_attempts=max_attempts)
    policy.sleep_fn = sleeps.append
    return WebhookClient(retry=policy), sleeps


DEST = Destination(id="1", url="https://hooks.example/abc")


# ---------------------------------------------------------------------------
# WebhookClient
# ---------------------------------------------------------------------------


class TestWebhookClient:
    def test_success(self):
        client, sleeps = _client()
        resp = _make_response({"code": 0, "msg": "success"})

        with patch("urllib.request.urlopen", return_value=resp) as mock:
            client.deliver(DEST, DOC)
            req = mock.call_args[0][0]

        assert req.full_url == DEST.url
        assert req.get_method() == "POST"
        body = json.loads(req.data.decode("utf-8"))
        assert body["msg_type"] == "interactive"
        assert body["card"]["header"]["title"]["content"] == "日报"
        assert sleeps == []

    @pytest.mark.parametrize("body", [b"", b"ok", {"StatusCode": 0}, []])
    def test_lenient_success_bodies(self, body):
        client, _ = _client()
        with patch("urllib.request.urlopen", return_value=_make_response(body)):
            client.deliver(DEST, DOC)

    def test_error_code_retried_then_raised(self):
        client, sleeps = _client()
        resp = _make_response({"code": 19001, "msg": "param invalid"})

        with patch("urllib.request.urlopen", return_value=resp) as mock:
            with pytest.raises(DeliveryTransportError, match="param invalid") as info:
                client.deliver(DEST, DOC)

        assert info.value.error_code == 19001
        assert mock.call_count == 3
        assert sleeps == [2.0, 4.0]

    def test_recovers_on_retry(self):
        client, sleeps = _client()
        responses = [
            urllib.error.URLError("Connection refused"),
            _make_response({"code": 0}),
        ]
        with patch("urllib.request.urlopen", side_effect=responses):
            client.deliver(DEST, DOC)
        assert sleeps == [2.0]

    def test_rate_limit_message(self):
        client, _ = _client(max_attempts=1)
        resp = _make_response({"code": 11232, "msg": "frequency limited psm[lark.oapi]"})
        with patch("urllib.request.urlopen", return_value=resp):
            with pytest.raises(DeliveryRateLimited):
                client.deliver(DEST, DOC)

    def test_http_429(self):
        client, _ = _client(max_attempts=1)
        exc = urllib.error.HTTPError(DEST.url, 429, "Too Many", {}, BytesIO(b"slow down"))
        with patch("urllib.request.urlopen", side_effect=exc):
            with pytest.raises(DeliveryRateLimited) as info:
                client.deliver(DEST, DOC)
        assert info.value.status_code == 429

    def test_http_error(self):
        client, _ = _client(max_attempts=1)
        exc = urllib.error.HTTPError(DEST.url, 500, "Server Error", {}, BytesIO(b"oops"))
        with patch("urllib.request.urlopen", side_effect=exc):
            with pytest.raises(DeliveryTransportError, match="HTTP 500") as info:
                client.deliver(DEST, DOC)
        assert not isinstance(info.value, DeliveryRateLimited)

    def test_truncated_body_retried_then_raised(self):
        client, sleeps = _client(max_attempts=2)
        resp = _make_response(b"")
        resp.read.side_effect = http.client.IncompleteRead(b"{\"co")
        with patch("urllib.request.urlopen", return_value=resp) as mock:
            with pytest.raises(DeliveryTransportError, match="Read failed"):
                client.deliver(DEST, DOC)
        assert mock.call_count == 2
        assert sleeps == [2.0]


class TestIsRateLimited:
    def test_patterns(self):
        assert is_rate_limited("Frequency Limited")
        assert is_rate_limited("too many requests")
        assert not is_rate_limited("param invalid")
        assert not is_rate_limited("")


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


class TestMemorySendHistory:
    def _record(self, message: str) -> SendRecord:
        return SendRecord(
            timestamp=NOW, status="success", message=message, destination="d", task_name="t"
        )

    def test_bounded_newest_first(self):
        history = MemorySendHistory(max_records=2)
        for message in ("a", "b", "c"):
            history.append(self._record(message))

        assert len(history) == 2
        assert [r.message for r in history.recent()] == ["c", "b"]
        assert [r.message for r in history.recent(1)] == ["c"]

    def test_clear(self):
        history = MemorySendHistory()
        history.append(self._record("a"))
        history.clear()
        assert len(history) == 0

    def test_to_dict(self):
        data = self._record("a").to_dict()
        assert data["timestamp"] == "2024-03-05T12:00:00"
        assert data["status"] == "success"


# ---------------------------------------------------------------------------
# deliver_to_all
# ---------------------------------------------------------------------------


class FakeWebhook:
    def __init__(self, failures: dict[str, Exception] | None = None):
        self.failures = failures or {}
        self.calls: list[str] = []

    def deliver(self, destination, document):
        self.calls.append(destination.url)
        if destination.url in self.failures:
            raise self.failures[destination.url]


def _task(*urls: str) -> TaskDefinition:
    return TaskDefinition(
        id="t1",
        name="每日",
        destinations=tuple(Destination(id=str(i), url=u) for i, u in enumerate(urls, 1)),
        card=CardStyle(button_text="查看", button_url="https://grafana"),
    )


class TestDeliverToAll:
    def test_duplicate_urls_delivered_once(self):
        webhook = FakeWebhook()
        history = MemorySendHistory()
        records = deliver_to_all(
            webhook, _task("https://a", "https://a", "https://b"), DOC,
            history=history, clock=lambda: NOW,
        )

        assert webhook.calls == ["https://a", "https://b"]
        assert [r.destination for r in records] == ["https://a", "https://b"]
        assert all(r.status == "success" for r in records)
        assert records[0].message == "sent card: 日报"
        assert records[0].task_name == "每日"
        assert records[0].button_url == "https://grafana"
        assert len(history) == 2

    def test_failed_url_retried_by_duplicate(self):
        webhook = FakeWebhook({"https://a": DeliveryTransportError("down")})
        records = deliver_to_all(
            webhook, _task("https://a", "https://a"), DOC, history=MemorySendHistory()
        )
        assert [r.status for r in records] == ["failed", "failed"]
        assert records[0].message == "down"

    def test_rate_limit_cooldown_between_destinations(self):
        webhook = FakeWebhook({"https://a": DeliveryRateLimited("frequency limited")})
        sleeps: list[float] = []
        records = deliver_to_all(
            webhook,
            _task("https://a", "https://b"),
            DOC,
            history=MemorySendHistory(),
            rate_limit_cooldown_s=3,
            sleep_fn=sleeps.append,
        )
        assert [r.status for r in records] == ["failed", "success"]
        assert sleeps == [3]

    def test_no_cooldown_after_last_destination(self):
        webhook = FakeWebhook({"https://b": DeliveryRateLimited("frequency limited")})
        sleeps: list[float] = []
        deliver_to_all(
            webhook,
            _task("https://a", "https://b"),
            DOC,
            history=MemorySendHistory(),
            sleep_fn=sleeps.append,
        )
        assert sleeps == []

    def test_holds_destination_lock(self):
        controller = ConcurrencyController()
        held = []

        class LockCheckingWebhook(FakeWebhook):
            def deliver(self, destination, document):
                held.append(controller._destinations.is_locked(destination.url))

        deliver_to_all(
            LockCheckingWebhook(),
            _task("https://a"),
            DOC,
            history=MemorySendHistory(),
            controller=controller,
        )
        assert held == [True]

    def test_explicit_destinations(self):
        webhook = FakeWebhook()
        deliver_to_all(
            webhook,
            _task("https://a", "https://b"),
            DOC,
            history=MemorySendHistory(),
            destinations=[Destination(id="x", url="https://x")],
        )
        assert webhook.calls == ["https://x"]

    def test_tasks_sharing_a_url_serialize(self):
        controller = ConcurrencyController()
        webhook = FakeWebhook()
        other = TaskDefinition(
            id="t2",
            name="周报",
            destinations=(Destination(id="ops", url="https://hook/one"),),
        )
        worker = threading.Thread(
            target=deliver_to_all,
            args=(webhook, other, DOC),
            kwargs={"history": MemorySendHistory(), "controller": controller},
        )

        # First task's destination "1" holds the same URL.
        with controller.destination_lock(_task("https://hook/one").destinations[0].url):
            worker.start()
            worker.join(timeout=0.2)
            assert worker.is_alive()
            assert webhook.calls == []

        worker.join(timeout=5)
        assert not worker.is_alive()
        assert webhook.calls == ["https://hook/one"]
