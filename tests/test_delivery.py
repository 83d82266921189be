import json
import threading
import time
from pathlib import Path
from typing import Any, Dict, List

import pytest
import requests

from app.imagescraper import config, delivery
from app.imagescraper.delivery import DeadLetterStore, DeliveryClient, DeliveryQueue
from app.imagescraper.error_codes import DeliveryError
from tests.fakes import FakeResponse, RecordingClient

URL = "https://hook.test/in?token=secret"
PAYLOAD = {"sessionId": "session-1", "products": []}


class _ScriptedPost:
    """Replays a list of statuses (or exceptions) for consecutive POSTs."""

    def __init__(self, script: List[Any]) -> None:
        self.script = list(script)
        self.calls: List[Dict[str, Any]] = []

    def __call__(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append({"url": url, **kwargs})
        step = self.script.pop(0)
        if isinstance(step, Exception):
            raise step
        return FakeResponse(step, reason="Server Error" if step >= 500 else "Bad Request")


def _client(monkeypatch: pytest.MonkeyPatch, script: List[Any]) -> tuple:
    post = _ScriptedPost(script)
    monkeypatch.setattr(delivery.requests, "post", post)
    sleeps: List[float] = []
    client = DeliveryClient(DeadLetterStore(), max_retries=3, base_delay=1.0, sleep=sleeps.append)
    return client, post, sleeps


def test_server_errors_retry_then_dead_letter(data_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client, post, sleeps = _client(monkeypatch, [500, 500, 500])

    result = client.send(URL, PAYLOAD)

    assert result.success is False
    assert result.attempts == 3
    assert result.status == 500
    assert len(post.calls) == 3
    assert sleeps == [1.0, 2.0]
    entries = client.dead_letters.list()
    assert len(entries) == 1
    assert entries[0]["webhookUrl"] == URL
    assert entries[0]["payload"] == PAYLOAD
    assert entries[0]["error"].startswith("HTTP 500")
    assert entries[0]["timestamp"].endswith("Z")


def test_client_error_is_not_retried(data_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client, post, sleeps = _client(monkeypatch, [400])

    result = client.send(URL, PAYLOAD)

    assert result.success is False
    assert result.attempts == 1
    assert len(post.calls) == 1
    assert sleeps == []
    assert len(client.dead_letters) == 1


def test_rate_limit_and_network_errors_are_retried(data_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client, post, sleeps = _client(monkeypatch, [429, requests.ConnectionError("reset"), 200])

    result = client.send(URL, PAYLOAD)

    assert result.success is True
    assert result.attempts == 3
    assert sleeps == [1.0, 2.0]
    assert len(client.dead_letters) == 0


def test_request_headers(data_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client, post, _ = _client(monkeypatch, [503, 204])

    client.send(URL, PAYLOAD)

    first, second = post.calls
    assert first["json"] == PAYLOAD
    assert first["headers"]["Content-Type"] == "application/json"
    assert first["headers"]["X-Extension"] == config.CLIENT_ID
    assert first["headers"]["X-Attempt"] == "1"
    assert second["headers"]["X-Attempt"] == "2"
    assert first["timeout"] == client.timeout


def test_send_without_any_attempt_raises(data_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client, post, _ = _client(monkeypatch, [])
    client.max_retries = 0

    with pytest.raises(DeliveryError):
        client.send(URL, PAYLOAD)

    assert post.calls == []
    assert len(client.dead_letters) == 0


def test_dead_letter_store_keeps_the_newest_entries(data_dir: Path) -> None:
    store = DeadLetterStore(limit=10)
    for n in range(12):
        store.append(URL, {"n": n}, "HTTP 500")

    entries = store.list()
    assert len(entries) == 10
    assert [e["payload"]["n"] for e in entries] == list(range(2, 12))
    assert len({e["id"] for e in entries}) == 10

    on_disk = json.loads(config.DEAD_LETTERS_FILE.read_text(encoding="utf-8"))
    assert [e["payload"]["n"] for e in on_disk] == list(range(2, 12))
    assert len(DeadLetterStore()) == 10


def test_retry_dead_letter_success_removes_only_that_entry(data_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client, post, _ = _client(monkeypatch, [200])
    ids = [client.dead_letters.append(URL, {"n": n}, "HTTP 500")["id"] for n in range(3)]

    result = client.retry_dead_letter(ids[1])

    assert result.success is True
    assert [e["id"] for e in client.dead_letters.list()] == [ids[0], ids[2]]
    assert post.calls[0]["json"] == {"n": 1}


def test_failed_retry_keeps_entry_without_duplicating(data_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    client, _, _ = _client(monkeypatch, [404])
    entry = client.dead_letters.append(URL, PAYLOAD, "HTTP 500")

    result = client.retry_dead_letter(entry["id"])

    assert result.success is False
    assert [e["id"] for e in client.dead_letters.list()] == [entry["id"]]


def test_retry_unknown_dead_letter(data_dir: Path) -> None:
    result = DeliveryClient(DeadLetterStore()).retry_dead_letter(12345)

    assert result.success is False
    assert result.error == "Webhook not found"


def test_queue_is_fifo_with_priority_and_single_consumer(data_dir: Path) -> None:
    gate = threading.Event()
    client = RecordingClient(gate=gate)
    queue = DeliveryQueue(client, delay_seconds=0)

    queue.enqueue(URL, {"n": 1})
    deadline = time.monotonic() + 5
    while len(queue) and time.monotonic() < deadline:
        time.sleep(0.01)
    assert queue.is_processing is True

    queue.enqueue(URL, {"n": 2})
    queue.enqueue(URL, {"n": 3})
    queue.enqueue(URL, {"n": 4}, priority=True)
    assert len(queue) == 3
    assert threading.active_count() >= 2

    gate.set()
    assert queue.wait_idle(5) is True

    assert [body["n"] for _, body in client.sent] == [1, 4, 2, 3]
    assert queue.is_processing is False
    assert len(queue) == 0


def test_queue_restarts_after_draining(data_dir: Path) -> None:
    client = RecordingClient()
    queue = DeliveryQueue(client, delay_seconds=0)

    queue.enqueue(URL, {"n": 1})
    assert queue.wait_idle(5) is True
    queue.enqueue(URL, {"n": 2})
    assert queue.wait_idle(5) is True

    assert [body["n"] for _, body in client.sent] == [1, 2]
    assert len(queue) == 0
    assert queue.is_processing is False
