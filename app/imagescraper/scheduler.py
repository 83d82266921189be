from __future__ import annotations

import time
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Dict, List, Optional, Sequence

from . import config
from .error_codes import CommunicationError, ErrorCode, ExtractionError, ScraperError
from .logging_utils import _scraper_event
from .page_workers import PageWorkerPool, WorkerHandle
from .session import ExtractionResult, Session
from .utils import short_error_message

ProgressFn = Callable[[int, int], None]


def chunk_items(items: Sequence[str], size: int) -> List[List[str]]:
    """Split ``items`` into consecutive chunks of at most ``size`` entries."""

    size = max(1, int(size))
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


@dataclass
class ItemOutcome:
    item_id: str
    result: Optional[ExtractionResult] = None
    error_code: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.result is not None


@dataclass
class BatchSummary:
    total: int
    attempted: int = 0
    succeeded: int = 0
    chunks_run: int = 0
    stopped: bool = False
    peak_in_flight: int = 0


class BatchScheduler:
    """
    Run a session's items through page workers in bounded chunks.

    IMPORTANT:
    - At most ``chunk_size`` items are in flight; the next chunk starts only
      after every item of the current one has settled.
    - The cooldown is slept between chunks, never after the last one.
    - Session status is checked before each chunk and each item, so a stop
      request prevents any further item from starting.
    - Outcomes are recorded in settle order and fingerprints are committed once
      per chunk.
    """

    def __init__(
        self,
        pool: PageWorkerPool,
        *,
        chunk_size: Optional[int] = None,
        ready_timeout: Optional[float] = None,
        poll_interval: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.pool = pool
        self.chunk_size = max(1, chunk_size if chunk_size is not None else config.MAX_CONCURRENT_TABS)
        self.ready_timeout = ready_timeout
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._lock = Lock()
        self._in_flight = 0
        self._peak_in_flight = 0

    def process_item(self, session: Session, item_id: str) -> ItemOutcome:
        """Acquire a worker, wait for the page, request extraction, release.

        Never raises; failures come back as an outcome without a result.
        """

        url = config.product_url(item_id, session.settings.target_zone)
        handle: Optional[WorkerHandle] = None
        try:
            handle = self.pool.acquire(url, session_id=session.id, item_id=item_id)
            if not session.attach_worker(item_id, handle):
                raise CommunicationError("Session is no longer active")
            self.pool.wait_ready(handle, timeout=self.ready_timeout, interval=self.poll_interval)
            response = self.pool.invoke(handle, {"action": "extractImages", "item_id": item_id})
            if not response.get("success"):
                raise ExtractionError(str(response.get("error") or "Extraction failed"))
            data = response.get("data") or {}
            return ItemOutcome(item_id=item_id, result=ExtractionResult.from_data(item_id, data))
        except ScraperError as exc:
            return self._failed(session, item_id, exc.error_code, exc)
        except Exception as exc:  # noqa: BLE001
            return self._failed(session, item_id, ErrorCode.INTERNAL, exc)
        finally:
            if handle is not None:
                session.detach_worker(item_id)
                self.pool.release(handle)

    def _failed(self, session: Session, item_id: str, code: str, exc: BaseException) -> ItemOutcome:
        message = short_error_message(exc)
        _scraper_event(
            "item",
            kind="failed",
            session_id=session.id,
            item_id=item_id,
            error_code=code,
            error=message,
        )
        return ItemOutcome(item_id=item_id, error_code=code, error=message)

    def _tracked(self, session: Session, item_id: str) -> ItemOutcome:
        with self._lock:
            self._in_flight += 1
            self._peak_in_flight = max(self._peak_in_flight, self._in_flight)
        try:
            return self.process_item(session, item_id)
        finally:
            with self._lock:
                self._in_flight -= 1

    def run(
        self,
        session: Session,
        *,
        cooldown_seconds: float = 0.0,
        on_progress: Optional[ProgressFn] = None,
    ) -> BatchSummary:
        items = list(session.items)
        chunks = chunk_items(items, self.chunk_size)
        summary = BatchSummary(total=len(items))

        _scraper_event(
            "batch",
            kind="start",
            session_id=session.id,
            total=len(items),
            chunks=len(chunks),
            chunk_size=self.chunk_size,
        )

        with ThreadPoolExecutor(max_workers=self.chunk_size, thread_name_prefix="page-worker") as executor:
            for index, chunk in enumerate(chunks):
                if index > 0 and cooldown_seconds > 0:
                    self._sleep(cooldown_seconds)
                if not session.is_active:
                    summary.stopped = True
                    break

                futures: Dict[Future[ItemOutcome], str] = {}
                for item_id in chunk:
                    if not session.is_active:
                        summary.stopped = True
                        break
                    futures[executor.submit(self._tracked, session, item_id)] = item_id

                for future in as_completed(futures):
                    outcome = future.result()
                    session.advance(outcome.item_id, outcome.result, error=outcome.error)
                    summary.attempted += 1
                    if outcome.ok:
                        summary.succeeded += 1
                        session.stage_fingerprint(outcome.item_id)

                session.commit_chunk()
                summary.chunks_run += 1
                _scraper_event(
                    "batch",
                    kind="chunk_settled",
                    session_id=session.id,
                    chunk=index + 1,
                    processed=session.processed_count,
                    total=len(items),
                )
                if on_progress is not None and session.is_active:
                    on_progress(session.processed_count, len(items))
                if summary.stopped:
                    break

        if not summary.stopped and not session.is_active:
            summary.stopped = summary.attempted < len(items)
        summary.peak_in_flight = self.peak_in_flight
        _scraper_event(
            "batch",
            kind="end",
            session_id=session.id,
            attempted=summary.attempted,
            succeeded=summary.succeeded,
            stopped=summary.stopped,
            peak_in_flight=summary.peak_in_flight,
            live_workers=self.pool.live_count,
        )
        return summary

    @property
    def peak_in_flight(self) -> int:
        with self._lock:
            return self._peak_in_flight


__all__ = ["BatchScheduler", "BatchSummary", "ItemOutcome", "chunk_items"]
