from __future__ import annotations

import random
import string
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Dict, Iterable, List, Mapping, Optional, Set

from . import config
from .error_codes import OrchestrationError, ValidationError
from .fingerprints import FingerprintStore
from .items import coerce_item_ids, normalize_item_id
from .logging_utils import _scraper_event
from .settings import Settings
from .utils import now_iso, now_ms

if TYPE_CHECKING:
    from .delivery import DeliveryQueue
    from .page_workers import PageWorkerPool, WorkerHandle


class SessionStatus(str, Enum):
    ACTIVE = "active"
    STOPPED = "stopped"
    COMPLETE = "complete"
    FAILED = "failed"


TERMINAL_STATUSES = {SessionStatus.STOPPED, SessionStatus.COMPLETE, SessionStatus.FAILED}

_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_session_id() -> str:
    suffix = "".join(random.choice(_ID_ALPHABET) for _ in range(9))
    return f"session-{now_ms()}-{suffix}"


@dataclass
class ExtractionResult:
    item_id: str
    title: str = ""
    image_urls: List[str] = field(default_factory=list)
    main_image: Optional[str] = None
    url: str = ""
    metadata: Dict[str, Any] = field(default_factory=dict)
    extracted_at: str = field(default_factory=now_iso)

    @classmethod
    def from_data(cls, item_id: str, data: Mapping[str, Any]) -> "ExtractionResult":
        """Build a result from an extractor payload (``images``/``mainImage`` keys)."""

        images = data.get("images") or data.get("image_urls") or []
        image_urls = [str(url) for url in images if url]
        main_image = data.get("mainImage") or data.get("main_image") or (image_urls[0] if image_urls else None)
        metadata = data.get("metadata")
        return cls(
            item_id=normalize_item_id(item_id),
            title=str(data.get("title") or ""),
            image_urls=image_urls,
            main_image=main_image,
            url=str(data.get("url") or ""),
            metadata=dict(metadata) if isinstance(metadata, Mapping) else {},
        )

    def to_product(self) -> Dict[str, Any]:
        return {
            "itemId": self.item_id,
            "title": self.title,
            "url": self.url,
            "images": list(self.image_urls),
            "mainImage": self.main_image,
            "extractedAt": self.extracted_at,
            "metadata": dict(self.metadata),
        }


class SessionRegistry:
    """Process-wide registry of sessions that have not reached a terminal state."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: Dict[str, "Session"] = {}

    def register(self, session: "Session") -> None:
        with self._lock:
            if session.id in self._sessions:
                raise OrchestrationError(f"Session {session.id} is already registered")
            self._sessions[session.id] = session

    def remove(self, session_id: str) -> Optional["Session"]:
        with self._lock:
            return self._sessions.pop(session_id, None)

    def get(self, session_id: str) -> Optional["Session"]:
        with self._lock:
            return self._sessions.get(session_id)

    def active(self) -> Optional["Session"]:
        with self._lock:
            for session in self._sessions.values():
                if session.status == SessionStatus.ACTIVE:
                    return session
        return None

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


class Session:
    """Lifecycle of one scraping run: items, results, counters and status.

    Results are keyed by item id (a later result replaces the earlier one).
    Successful items are staged for fingerprinting while a chunk runs and
    committed when the chunk settles.
    """

    def __init__(
        self,
        session_id: str,
        items: List[str],
        settings: Settings,
        *,
        skipped: int = 0,
        fingerprints: Optional[FingerprintStore] = None,
        registry: Optional[SessionRegistry] = None,
        delivery: Optional["DeliveryQueue"] = None,
    ) -> None:
        self.id = session_id
        self.items = list(items)
        self.settings = settings
        self.skipped = skipped
        self.status = SessionStatus.ACTIVE
        self.started_at = now_iso()
        self._started_monotonic = time.monotonic()
        self.error: Optional[str] = None
        self.active_workers: Dict[str, "WorkerHandle"] = {}

        self._fingerprints = fingerprints
        self._registry = registry
        self._delivery = delivery
        self._lock = threading.RLock()
        self._results: Dict[str, ExtractionResult] = {}
        self._failures: Dict[str, str] = {}
        self._attempted: Set[str] = set()
        self._staged: List[str] = []
        self._stopping = False

    @classmethod
    def create(
        cls,
        items: Iterable[object] | str,
        settings: Settings,
        *,
        fingerprints: FingerprintStore,
        registry: Optional[SessionRegistry] = None,
        delivery: Optional["DeliveryQueue"] = None,
        session_id: Optional[str] = None,
    ) -> "Session":
        """Validate the request and build an Active session.

        Raises ``ValidationError`` when no item survives deduplication or when
        no webhook URL is configured.
        """

        if not (settings.webhook_url or "").strip():
            raise ValidationError("Please enter a webhook URL")

        requested = coerce_item_ids(items)
        fresh, skipped = fingerprints.filter_new(requested)
        if not fresh:
            if requested:
                raise ValidationError("All items have already been processed")
            raise ValidationError("Please enter at least one valid item identifier")
        if len(fresh) > config.MAX_ITEMS_PER_SESSION:
            raise ValidationError(f"At most {config.MAX_ITEMS_PER_SESSION} items can be processed per session")

        session = cls(
            session_id or generate_session_id(),
            fresh,
            settings,
            skipped=skipped,
            fingerprints=fingerprints,
            registry=registry,
            delivery=delivery,
        )
        _scraper_event(
            "session",
            kind="create",
            session_id=session.id,
            total_items=len(fresh),
            skipped_items=skipped,
        )
        return session

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def is_active(self) -> bool:
        return self.status == SessionStatus.ACTIVE

    @property
    def processed_count(self) -> int:
        with self._lock:
            return len(self._attempted)

    @property
    def results(self) -> List[ExtractionResult]:
        with self._lock:
            return list(self._results.values())

    @property
    def failures(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._failures)

    @property
    def duration_ms(self) -> int:
        return int((time.monotonic() - self._started_monotonic) * 1000)

    # ------------------------------------------------------------------
    # Progress
    # ------------------------------------------------------------------

    def advance(
        self,
        item_id: str,
        result: Optional[ExtractionResult] = None,
        *,
        error: Optional[str] = None,
        attempted: bool = True,
    ) -> None:
        """Record the outcome for ``item_id``; repeated calls overwrite it."""

        norm = normalize_item_id(item_id)
        with self._lock:
            if attempted:
                self._attempted.add(norm)
            if result is not None:
                self._results[norm] = result
                self._failures.pop(norm, None)
            elif norm not in self._results:
                self._failures[norm] = error or "No result"

    def stage_fingerprint(self, item_id: str) -> None:
        with self._lock:
            if self.status != SessionStatus.ACTIVE:
                return
            self._staged.append(normalize_item_id(item_id))

    def commit_chunk(self) -> int:
        """Persist the fingerprints staged during the chunk that just settled.

        Nothing is persisted once the session has left the Active state.
        """

        with self._lock:
            staged, self._staged = self._staged, []
            if self.status != SessionStatus.ACTIVE:
                return 0
        if not staged or self._fingerprints is None:
            return 0
        return self._fingerprints.add_all(staged)

    def attach_worker(self, item_id: str, handle: "WorkerHandle") -> bool:
        """Track ``handle``; refused once a stop has begun."""

        with self._lock:
            if self._stopping or self.status != SessionStatus.ACTIVE:
                return False
            self.active_workers[item_id] = handle
            return True

    def detach_worker(self, item_id: str) -> None:
        with self._lock:
            self.active_workers.pop(item_id, None)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _transition(self, target: SessionStatus, *, reason: Optional[str] = None) -> bool:
        with self._lock:
            if self.status in TERMINAL_STATUSES:
                _scraper_event(
                    "error",
                    session_id=self.id,
                    current_status=self.status.value,
                    attempted_status=target.value,
                    error="invalid_transition_after_terminal",
                )
                return False
            prev = self.status
            self.status = target
            if reason is not None:
                self.error = reason

        payload: Dict[str, Any] = dict(
            session_id=self.id,
            from_status=prev.value,
            to_status=target.value,
            processed=self.processed_count,
            results=len(self._results),
        )
        if reason is not None:
            payload["reason"] = reason
        _scraper_event("state", **payload)
        return True

    def _unregister(self) -> None:
        if self._registry is not None:
            self._registry.remove(self.id)

    def build_payload(self) -> Dict[str, Any]:
        """Return the aggregate webhook body for this session."""

        results = self.results
        return {
            "sessionId": self.id,
            "timestamp": now_iso(),
            "duration_ms": self.duration_ms,
            "totalItems": len(self.items),
            "successfulExtractions": len(results),
            "products": [result.to_product() for result in results],
        }

    def _deliver(self) -> None:
        if self._delivery is None:
            return
        self._delivery.enqueue(self.settings.webhook_url, self.build_payload())

    def complete(self) -> bool:
        if not self._transition(SessionStatus.COMPLETE):
            return False
        self._deliver()
        self._unregister()
        return True

    def fail(self, reason: str) -> bool:
        if not self._transition(SessionStatus.FAILED, reason=reason):
            return False
        self._deliver()
        self._unregister()
        return True

    def stop(self, pool: Optional["PageWorkerPool"] = None) -> bool:
        """Cancel the session, closing every outstanding worker first.

        Results gathered before the stop are still delivered; a session
        stopped before any success sends nothing.
        """

        with self._lock:
            if self.status in TERMINAL_STATUSES:
                return False
            self._stopping = True
            handles = list(self.active_workers.values())

        if pool is not None:
            for handle in handles:
                pool.release(handle)

        if not self._transition(SessionStatus.STOPPED, reason="Stopped by user"):
            return False
        if self.results:
            self._deliver()
        self._unregister()
        return True

    def summary(self) -> Dict[str, Any]:
        return {
            "sessionId": self.id,
            "status": self.status.value,
            "totalItems": len(self.items),
            "skippedItems": self.skipped,
            "processed": self.processed_count,
            "successful": len(self.results),
            "startedAt": self.started_at,
            "error": self.error,
        }


__all__ = [
    "ExtractionResult",
    "Session",
    "SessionRegistry",
    "SessionStatus",
    "TERMINAL_STATUSES",
    "generate_session_id",
]
