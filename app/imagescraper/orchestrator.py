"""Session manager: the operations behind the HTTP API and the CLI.

Every public method returns a JSON-ready dict (``{"success": ...}``) so the
Flask routes can hand the result straight to ``jsonify``.
"""

from __future__ import annotations

import threading
from typing import Any, Callable, Dict, Iterable, Mapping, Optional, Union

from .delivery import DeadLetterStore, DeliveryClient, DeliveryQueue
from .error_codes import OrchestrationError, ValidationError
from .events import EventBus
from .export import export_results as write_export
from .fingerprints import FingerprintStore
from .items import is_valid_item_id, item_id_from_url, normalize_item_id
from .logging_utils import _scraper_event
from .page_workers import PageWorkerPool
from .scheduler import BatchScheduler
from .session import ExtractionResult, Session, SessionRegistry, SessionStatus
from .settings import Settings, load_settings
from .utils import log_line, setup_session_logger, short_error_message


class SessionManager:
    """Owns the process-wide registries and runs sessions on background threads.

    Only one session may be Active at a time; a second start is rejected.
    """

    def __init__(
        self,
        *,
        pool: Optional[PageWorkerPool] = None,
        fingerprints: Optional[FingerprintStore] = None,
        delivery: Optional[DeliveryQueue] = None,
        events: Optional[EventBus] = None,
        chunk_size: Optional[int] = None,
        ready_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        sleep: Optional[Callable[[float], None]] = None,
        background: bool = True,
    ) -> None:
        self.pool = pool or PageWorkerPool()
        self.fingerprints = fingerprints if fingerprints is not None else FingerprintStore()
        self.delivery = delivery if delivery is not None else DeliveryQueue(DeliveryClient(DeadLetterStore()))
        self.events = events or EventBus()
        self.registry = SessionRegistry()
        scheduler_kwargs: Dict[str, Any] = {}
        if sleep is not None:
            scheduler_kwargs["sleep"] = sleep
        self.scheduler = BatchScheduler(
            self.pool,
            chunk_size=chunk_size,
            ready_timeout=ready_timeout,
            poll_interval=poll_interval,
            **scheduler_kwargs,
        )
        self.background = background
        self._start_lock = threading.Lock()
        self._publish_lock = threading.Lock()
        self._threads: Dict[str, threading.Thread] = {}
        self.last_session: Optional[Session] = None

    @property
    def dead_letters(self) -> DeadLetterStore:
        return self.delivery.client.dead_letters

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    def start_session(
        self,
        items: Union[Iterable[object], str],
        settings: Union[Settings, Mapping[str, Any], None] = None,
    ) -> Dict[str, Any]:
        if not isinstance(settings, Settings):
            settings = Settings.from_dict(settings or {}, base=load_settings())

        with self._start_lock:
            active = self.registry.active()
            if active is not None:
                return {"success": False, "error": f"Session {active.id} is already running"}
            try:
                session = Session.create(
                    items,
                    settings,
                    fingerprints=self.fingerprints,
                    registry=self.registry,
                    delivery=self.delivery,
                )
            except ValidationError as exc:
                log_line(f"[SESSION] Start rejected: {exc}")
                return {"success": False, "error": str(exc)}
            self.registry.register(session)
            self.last_session = session

        if self.background:
            thread = threading.Thread(
                target=self._run_session,
                args=(session,),
                name=f"scrape-{session.id}",
                daemon=True,
            )
            self._threads[session.id] = thread
            thread.start()
        else:
            self._run_session(session)

        return {
            "success": True,
            "sessionId": session.id,
            "totalItems": len(session.items),
            "skippedItems": session.skipped,
        }

    def _run_session(self, session: Session) -> None:
        setup_session_logger(session.id)
        log_line(f"[SESSION] Starting {session.id} with {len(session.items)} item(s)")
        try:
            if self.registry.get(session.id) is not session:
                raise OrchestrationError("Session registry is out of sync")

            self.scheduler.run(
                session,
                cooldown_seconds=session.settings.inter_item_delay_ms / 1000.0,
                on_progress=lambda completed, total: self._publish_progress(session, completed, total),
            )

            if session.status != SessionStatus.ACTIVE:
                return
            if session.complete():
                log_line(
                    f"[SESSION] {session.id} complete: "
                    f"{len(session.results)}/{session.processed_count} item(s) extracted"
                )
                self.events.publish(
                    "complete",
                    sessionId=session.id,
                    total=session.processed_count,
                    successful=len(session.results),
                )
        except Exception as exc:  # noqa: BLE001
            message = short_error_message(exc)
            log_line(f"[SESSION] {session.id} failed: {message}")
            if session.fail(message):
                self.events.publish("error", sessionId=session.id, error=message)
        finally:
            self._threads.pop(session.id, None)

    def _publish_progress(self, session: Session, completed: int, total: int) -> None:
        # Held together with the stop transition so "progress" never follows
        # the terminal event.
        with self._publish_lock:
            if session.is_active:
                self.events.publish("progress", sessionId=session.id, completed=completed, total=total)

    def stop_session(self, session_id: str) -> Dict[str, Any]:
        session = self.registry.get(session_id)
        if session is None:
            return {"success": False, "error": "Session not found"}
        with self._publish_lock:
            if not session.stop(self.pool):
                return {"success": False, "error": "Session is not active"}
            self.events.publish("error", sessionId=session.id, error="Stopped by user")
        log_line(f"[SESSION] {session.id} stopped by user after {session.processed_count} item(s)")
        return {"success": True}

    def query_active_session(self) -> Dict[str, Any]:
        session = self.registry.active()
        if session is None:
            return {"active": False}
        return {"active": True, "sessionId": session.id, "session": session.summary()}

    def wait_for_session(self, session_id: str, timeout: Optional[float] = None) -> bool:
        """Join the session's background thread; True once it has finished."""

        thread = self._threads.get(session_id)
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def report_extraction(
        self,
        item_id: str,
        data: Mapping[str, Any],
        worker_id: Optional[int] = None,
    ) -> Dict[str, Any]:
        """Record an out-of-band extraction result (upsert by item id).

        When ``item_id`` is blank the identifier is recovered from ``data["url"]``.
        """

        norm = normalize_item_id(item_id)
        if not norm and isinstance(data, Mapping):
            norm = item_id_from_url(str(data.get("url") or "")) or ""
        if not is_valid_item_id(norm):
            return {"success": False, "error": "Invalid item identifier"}
        if not isinstance(data, Mapping):
            return {"success": False, "error": "Extraction data must be an object"}

        if worker_id is not None:
            owner = self.pool.owner_of(int(worker_id))
            if owner is None:
                return {"success": False, "error": "Worker not associated with any session"}
            session = self.registry.get(owner[0] or "")
        else:
            session = self.registry.active()

        if session is None or not session.is_active:
            return {"success": False, "error": "No active session"}
        if norm not in session.items:
            return {"success": False, "error": "Item is not part of the active session"}

        session.advance(norm, ExtractionResult.from_data(norm, data), attempted=False)
        _scraper_event("extract", kind="reported", session_id=session.id, item_id=norm, worker_id=worker_id)
        return {"success": True}

    def report_worker_closed(self, worker_id: int) -> Dict[str, Any]:
        if not self.pool.mark_closed(int(worker_id)):
            return {"success": False, "error": "Worker not found"}
        return {"success": True}

    # ------------------------------------------------------------------
    # Delivery
    # ------------------------------------------------------------------

    def get_delivery_status(self) -> Dict[str, Any]:
        entries = self.dead_letters.list()
        return {
            "queueLength": len(self.delivery),
            "isProcessing": self.delivery.is_processing,
            "deadLetterCount": len(entries),
            "deadLetterEntries": entries,
        }

    def retry_dead_letter(self, dead_letter_id: int) -> Dict[str, Any]:
        result = self.delivery.client.retry_dead_letter(int(dead_letter_id))
        if result.success:
            return {"success": True}
        return {"success": False, "error": result.error or "Delivery failed"}

    def clear_dead_letters(self) -> Dict[str, Any]:
        self.dead_letters.clear()
        return {"success": True}

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def export_results(self, fmt: str) -> Dict[str, Any]:
        session = self.registry.active() or self.last_session
        if session is None or not session.results:
            return {"success": False, "error": "No results to export"}
        try:
            path = write_export(session.results, fmt, session_id=session.id)
        except ValueError as exc:
            return {"success": False, "error": str(exc)}
        log_line(f"[EXPORT] Wrote {len(session.results)} result(s) to {path}")
        return {"success": True, "filename": path.name}


__all__ = ["SessionManager"]
