import threading
import time
from pathlib import Path
from typing import Any, Dict, List, Tuple

from app.imagescraper import config
from app.imagescraper.delivery import DeadLetterStore, DeliveryQueue
from app.imagescraper.events import EventBus
from app.imagescraper.fingerprints import FingerprintStore
from app.imagescraper.orchestrator import SessionManager
from app.imagescraper.page_workers import PageWorkerPool
from app.imagescraper.session import SessionStatus
from app.imagescraper.settings import Settings
from tests.fakes import FakeBackend, RecordingClient, item_ids

SETTINGS = Settings(target_zone="10016", inter_item_delay_ms=1000, webhook_url="https://hook.test/in")


def _manager(backend: FakeBackend, *, background: bool = False, chunk_size: int = 5):
    events: List[Tuple[str, Dict[str, Any]]] = []
    bus = EventBus()
    bus.subscribe(lambda event_type, payload: events.append((event_type, payload)))
    client = RecordingClient(DeadLetterStore())
    manager = SessionManager(
        pool=PageWorkerPool(backend),
        fingerprints=FingerprintStore(),
        delivery=DeliveryQueue(client, delay_seconds=0),
        events=bus,
        chunk_size=chunk_size,
        ready_timeout=5.0,
        poll_interval=0.01,
        sleep=lambda _s: None,
        background=background,
    )
    return manager, client, events


def _wait_until(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def test_session_runs_to_completion_and_delivers(data_dir: Path) -> None:
    ids = item_ids(7)
    manager, client, events = _manager(FakeBackend(no_images={ids[6]}))

    response = manager.start_session(ids, SETTINGS)

    assert response == {
        "success": True,
        "sessionId": response["sessionId"],
        "totalItems": 7,
        "skippedItems": 0,
    }
    session = manager.last_session
    assert session.status == SessionStatus.COMPLETE
    assert session.processed_count == 7
    assert manager.query_active_session() == {"active": False}

    assert manager.delivery.wait_idle(5) is True
    assert len(client.sent) == 1
    url, payload = client.sent[0]
    assert url == SETTINGS.webhook_url
    assert payload["successfulExtractions"] == 6
    assert {p["itemId"] for p in payload["products"]} == set(ids[:6])

    kinds = [event_type for event_type, _ in events]
    assert kinds == ["progress", "progress", "complete"]
    assert events[0][1] == {"sessionId": session.id, "completed": 5, "total": 7}
    assert events[-1][1] == {"sessionId": session.id, "total": 7, "successful": 6}


def test_second_run_skips_fingerprinted_items(data_dir: Path) -> None:
    manager, _, _ = _manager(FakeBackend())
    manager.start_session(item_ids(2), SETTINGS)

    again = manager.start_session(item_ids(3), SETTINGS)
    assert again["totalItems"] == 1
    assert again["skippedItems"] == 2

    rejected = manager.start_session(item_ids(2), SETTINGS)
    assert rejected == {"success": False, "error": "All items have already been processed"}


def test_only_one_active_session(data_dir: Path) -> None:
    gate = threading.Event()
    backend = FakeBackend(gate=gate)
    manager, client, events = _manager(backend, background=True, chunk_size=2)

    first = manager.start_session(item_ids(10), SETTINGS)
    assert first["success"] is True
    assert manager.query_active_session()["sessionId"] == first["sessionId"]

    second = manager.start_session(item_ids(3, prefix="C"), SETTINGS)
    assert second["success"] is False
    assert "already running" in second["error"]

    assert _wait_until(lambda: len(manager.last_session.active_workers) == 2)
    assert manager.stop_session(first["sessionId"]) == {"success": True}
    assert manager.wait_for_session(first["sessionId"], timeout=5) is True

    session = manager.last_session
    assert session.status == SessionStatus.STOPPED
    assert len(backend.opened) == 2
    assert [e for e in events if e[0] != "progress"] == [
        ("error", {"sessionId": first["sessionId"], "error": "Stopped by user"})
    ]
    assert client.sent == []
    assert manager.stop_session(first["sessionId"]) == {"success": False, "error": "Session not found"}

    third = manager.start_session(item_ids(3, prefix="C"), SETTINGS)
    assert third["success"] is True
    gate.set()
    assert manager.wait_for_session(third["sessionId"], timeout=5) is True


def test_stop_mid_chunk_delivers_partial_results_and_emits_error_last(data_dir: Path) -> None:
    ids = item_ids(4)
    backend = FakeBackend(never_ready={ids[1]})
    manager, client, events = _manager(backend, background=True, chunk_size=2)

    started = manager.start_session(ids, SETTINGS)
    session = manager.last_session
    assert _wait_until(lambda: len(session.results) == 1)

    assert manager.stop_session(started["sessionId"]) == {"success": True}
    assert manager.wait_for_session(started["sessionId"], timeout=5) is True

    assert [event_type for event_type, _ in events] == ["error"]
    assert sorted(backend.opened) == ids[:2]

    assert manager.delivery.wait_idle(5) is True
    assert len(client.sent) == 1
    assert [p["itemId"] for p in client.sent[0][1]["products"]] == [ids[0]]

    # Nothing from the interrupted chunk is fingerprinted, so it can run again.
    assert not manager.fingerprints.has(ids[0])
    again = manager.start_session([ids[0]], SETTINGS)
    assert again["success"] is True
    assert manager.wait_for_session(again["sessionId"], timeout=5) is True
    assert manager.fingerprints.has(ids[0])


def test_report_extraction_upserts_into_active_session(data_dir: Path) -> None:
    gate = threading.Event()
    backend = FakeBackend(gate=gate)
    manager, _, _ = _manager(backend, background=True, chunk_size=1)
    ids = item_ids(2)

    assert manager.report_extraction(ids[0], {"images": []}) == {"success": False, "error": "No active session"}

    started = manager.start_session(ids, SETTINGS)
    assert _wait_until(lambda: len(backend.opened) == 1)

    data = {"title": "Reported", "images": ["https://img.example/x.jpg"]}
    assert manager.report_extraction(ids[1], data) == {"success": True}
    from_url = dict(data, url=f"https://www.amazon.com/Widget/dp/{ids[1]}/ref=sr_1")
    assert manager.report_extraction("", from_url) == {"success": True}
    assert manager.report_extraction("not valid", data)["success"] is False
    assert manager.report_extraction("ZZZZZZZZZZ", data)["success"] is False
    assert manager.report_extraction(ids[1], data, worker_id=999999) == {
        "success": False,
        "error": "Worker not associated with any session",
    }

    session = manager.last_session
    assert [r.title for r in session.results] == ["Reported"]
    assert session.processed_count == 0

    gate.set()
    assert manager.wait_for_session(started["sessionId"], timeout=5) is True
    titles = {r.item_id: r.title for r in session.results}
    assert titles[ids[1]] == f"Product {ids[1]}"
    assert session.processed_count == 2


def test_report_worker_closed_marks_handle(data_dir: Path) -> None:
    backend = FakeBackend(never_ready=set(item_ids(1)))
    manager, _, _ = _manager(backend, background=True)

    started = manager.start_session(item_ids(1), SETTINGS)
    assert _wait_until(lambda: len(manager.last_session.active_workers) == 1)
    worker_id = next(iter(manager.last_session.active_workers.values())).worker_id

    assert manager.report_worker_closed(worker_id) == {"success": True}
    assert manager.wait_for_session(started["sessionId"], timeout=5) is True

    session = manager.last_session
    assert session.status == SessionStatus.COMPLETE
    assert session.results == []
    assert "closed" in session.failures[item_ids(1)[0]]
    assert manager.report_worker_closed(worker_id) == {"success": False, "error": "Worker not found"}


def test_start_validation_errors_are_returned(data_dir: Path) -> None:
    manager, _, _ = _manager(FakeBackend())

    response = manager.start_session(item_ids(1), Settings(webhook_url=""))

    assert response == {"success": False, "error": "Please enter a webhook URL"}
    assert manager.query_active_session() == {"active": False}


def test_delivery_status_and_dead_letter_operations(data_dir: Path) -> None:
    manager, _, _ = _manager(FakeBackend())
    first = manager.dead_letters.append("https://hook.test/in", {"n": 1}, "HTTP 500")
    manager.dead_letters.append("https://hook.test/in", {"n": 2}, "HTTP 500")

    status = manager.get_delivery_status()
    assert status["queueLength"] == 0
    assert status["isProcessing"] is False
    assert status["deadLetterCount"] == 2
    assert [e["payload"]["n"] for e in status["deadLetterEntries"]] == [1, 2]

    assert manager.retry_dead_letter(first["id"]) == {"success": True}
    assert manager.retry_dead_letter(first["id"]) == {"success": False, "error": "Webhook not found"}
    assert manager.get_delivery_status()["deadLetterCount"] == 1

    assert manager.clear_dead_letters() == {"success": True}
    assert manager.get_delivery_status()["deadLetterCount"] == 0


def test_export_results(data_dir: Path) -> None:
    manager, _, _ = _manager(FakeBackend())
    assert manager.export_results("csv") == {"success": False, "error": "No results to export"}

    manager.start_session(item_ids(2), SETTINGS)

    exported = manager.export_results("csv")
    assert exported["success"] is True
    assert (config.EXPORTS_DIR / exported["filename"]).exists()

    bad = manager.export_results("xml")
    assert bad["success"] is False
    assert "Unsupported export format" in bad["error"]


def test_listener_failures_are_ignored(data_dir: Path) -> None:
    manager, _, events = _manager(FakeBackend())

    def _broken(_event_type: str, _payload: Dict[str, Any]) -> None:
        raise RuntimeError("listener went away")

    manager.events.subscribe(_broken)
    response = manager.start_session(item_ids(1), SETTINGS)

    assert response["success"] is True
    assert [event_type for event_type, _ in events] == ["progress", "complete"]
