"""Webhook delivery: HTTP client with retries, dead letters and a FIFO queue.

The queue has a single consumer thread; the ``is_processing`` flag is read and
written under one lock so two drains can never run at the same time.
"""

from __future__ import annotations

import itertools
import threading
import time
import urllib.parse
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Deque, Dict, List, Optional

import requests

from . import config
from .error_codes import DeliveryError, ErrorCode, classify_http_status
from .logging_utils import _scraper_event
from .retry_policy import compute_backoff_seconds, decide_retry
from .utils import load_json_file, log_line, now_iso, now_ms, save_json_file, short_error_message

_QUEUE_IDS = itertools.count(1)


def _redact_url(url: str) -> str:
    try:
        parsed = urllib.parse.urlparse(url)
        return urllib.parse.urlunparse(parsed._replace(query=""))
    except Exception:
        return url


@dataclass
class WebhookItem:
    destination_url: str
    body: Dict[str, Any]
    priority: bool = False
    id: int = field(default_factory=lambda: next(_QUEUE_IDS))
    queued_at: str = field(default_factory=now_iso)


@dataclass
class DeliveryResult:
    success: bool
    status: Optional[int] = None
    attempts: int = 0
    error: Optional[str] = None
    error_code: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success, "attempts": self.attempts}
        if self.status is not None:
            payload["status"] = self.status
        if self.error:
            payload["error"] = self.error
        return payload


class DeadLetterStore:
    """Bounded, persisted list of deliveries that exhausted their retries.

    Entries are kept oldest first; once ``limit`` is reached the oldest entry
    is evicted.
    """

    def __init__(self, path: Optional[Path] = None, *, limit: Optional[int] = None) -> None:
        self.path = Path(path) if path is not None else config.DEAD_LETTERS_FILE
        self.limit = max(1, limit if limit is not None else config.DEAD_LETTER_LIMIT)
        self._lock = threading.Lock()
        stored = load_json_file(self.path, [])
        self._entries: List[Dict[str, Any]] = [e for e in stored if isinstance(e, dict)] if isinstance(stored, list) else []
        self._last_id = max((int(e.get("id") or 0) for e in self._entries), default=0)

    def _persist(self) -> None:
        save_json_file(self.path, self._entries)

    def append(self, webhook_url: str, payload: Dict[str, Any], error: str) -> Dict[str, Any]:
        with self._lock:
            entry_id = max(now_ms(), self._last_id + 1)
            self._last_id = entry_id
            entry = {
                "id": entry_id,
                "timestamp": now_iso(),
                "webhookUrl": webhook_url,
                "payload": payload,
                "error": error,
            }
            self._entries.append(entry)
            evicted = 0
            while len(self._entries) > self.limit:
                self._entries.pop(0)
                evicted += 1
            self._persist()
        _scraper_event("dead_letter", kind="append", id=entry_id, evicted=evicted, error=error)
        return entry

    def get(self, entry_id: int) -> Optional[Dict[str, Any]]:
        with self._lock:
            for entry in self._entries:
                if entry.get("id") == entry_id:
                    return dict(entry)
        return None

    def remove(self, entry_id: int) -> bool:
        with self._lock:
            remaining = [entry for entry in self._entries if entry.get("id") != entry_id]
            if len(remaining) == len(self._entries):
                return False
            self._entries = remaining
            self._persist()
        _scraper_event("dead_letter", kind="remove", id=entry_id)
        return True

    def clear(self) -> int:
        with self._lock:
            count = len(self._entries)
            self._entries = []
            self._persist()
        _scraper_event("dead_letter", kind="clear", removed=count)
        return count

    def list(self) -> List[Dict[str, Any]]:
        with self._lock:
            return [dict(entry) for entry in self._entries]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


class DeliveryClient:
    """POST JSON payloads to a webhook, retrying transient failures."""

    def __init__(
        self,
        dead_letters: Optional[DeadLetterStore] = None,
        *,
        max_retries: Optional[int] = None,
        base_delay: Optional[float] = None,
        timeout: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.dead_letters = dead_letters if dead_letters is not None else DeadLetterStore()
        self.max_retries = max(1, max_retries if max_retries is not None else config.WEBHOOK_MAX_RETRIES)
        self.base_delay = config.WEBHOOK_BASE_DELAY_SECONDS if base_delay is None else base_delay
        self.timeout = config.WEBHOOK_TIMEOUT_SECONDS if timeout is None else timeout
        self._sleep = sleep

    def _post_once(self, url: str, payload: Dict[str, Any], attempt: int) -> int:
        headers = dict(config.COMMON_HEADERS)
        headers["X-Attempt"] = str(attempt)
        try:
            response = requests.post(url, json=payload, headers=headers, timeout=self.timeout)
        except (requests.Timeout, requests.ConnectionError) as exc:
            raise DeliveryError(short_error_message(exc), error_code=ErrorCode.NETWORK) from exc
        except requests.RequestException as exc:
            raise DeliveryError(short_error_message(exc), error_code=ErrorCode.INTERNAL) from exc

        status = response.status_code
        if not 200 <= status < 300:
            reason = getattr(response, "reason", "") or ""
            raise DeliveryError(
                f"HTTP {status}: {reason}".rstrip(": "),
                error_code=classify_http_status(status),
                http_status=status,
            )
        return status

    def send(self, url: str, payload: Dict[str, Any], *, dead_letter: bool = True) -> DeliveryResult:
        """Deliver ``payload``; on final failure record a dead letter (if asked)."""

        safe_url = _redact_url(url)
        last_error: Optional[DeliveryError] = None
        attempt = 0

        for attempt in range(1, self.max_retries + 1):
            try:
                status = self._post_once(url, payload, attempt)
            except DeliveryError as exc:
                last_error = exc
            else:
                _scraper_event(
                    "delivery",
                    kind="sent",
                    url=safe_url,
                    attempt=attempt,
                    http_status=status,
                )
                return DeliveryResult(success=True, status=status, attempts=attempt)

            should_retry = decide_retry(
                attempt,
                self.max_retries,
                error_code=last_error.error_code,
                http_status=last_error.http_status,
            )
            backoff = compute_backoff_seconds(attempt, self.base_delay)
            _scraper_event(
                "state",
                phase="delivery_retry",
                url=safe_url,
                attempt=attempt,
                max_attempts=self.max_retries,
                error_code=last_error.error_code,
                http_status=last_error.http_status,
                will_retry=should_retry,
                backoff_seconds=backoff if should_retry else None,
                error_message=str(last_error),
            )
            log_line(f"[WEBHOOK] Attempt {attempt} to {safe_url} failed: {last_error}")
            if not should_retry:
                break
            self._sleep(backoff)

        if last_error is None:
            raise DeliveryError("No delivery attempt was made", error_code=ErrorCode.INTERNAL)
        if dead_letter:
            self.dead_letters.append(url, payload, str(last_error))
        return DeliveryResult(
            success=False,
            status=last_error.http_status,
            attempts=attempt,
            error=str(last_error),
            error_code=last_error.error_code,
        )

    def retry_dead_letter(self, entry_id: int) -> DeliveryResult:
        """Re-send a dead letter once through the retry policy.

        The entry is removed only when delivery succeeds; a failed retry leaves
        it in place without adding a second entry.
        """

        entry = self.dead_letters.get(entry_id)
        if entry is None:
            return DeliveryResult(success=False, error="Webhook not found")

        result = self.send(str(entry.get("webhookUrl") or ""), entry.get("payload") or {}, dead_letter=False)
        if result.success:
            self.dead_letters.remove(entry_id)
        return result


class DeliveryQueue:
    """FIFO of pending webhook deliveries drained by one background thread."""

    def __init__(
        self,
        client: Optional[DeliveryClient] = None,
        *,
        delay_seconds: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.client = client if client is not None else DeliveryClient()
        self.delay_seconds = config.WEBHOOK_QUEUE_DELAY_SECONDS if delay_seconds is None else delay_seconds
        self._sleep = sleep
        self._lock = threading.Lock()
        self._queue: Deque[WebhookItem] = deque()
        self._processing = False
        self._idle = threading.Event()
        self._idle.set()
        self._thread: Optional[threading.Thread] = None

    def enqueue(self, url: str, body: Dict[str, Any], *, priority: bool = False) -> WebhookItem:
        item = WebhookItem(destination_url=url, body=body, priority=priority)
        with self._lock:
            if priority:
                self._queue.appendleft(item)
            else:
                self._queue.append(item)
            length = len(self._queue)
            start = not self._processing
            if start:
                self._processing = True
                self._idle.clear()

        _scraper_event("delivery", kind="enqueue", id=item.id, priority=priority, queue_length=length)
        if start:
            self._thread = threading.Thread(target=self._drain, name="webhook-queue", daemon=True)
            self._thread.start()
        return item

    def _drain(self) -> None:
        while True:
            with self._lock:
                if not self._queue:
                    self._processing = False
                    self._idle.set()
                    return
                item = self._queue.popleft()

            try:
                self.client.send(item.destination_url, item.body)
            except Exception as exc:  # noqa: BLE001
                log_line(f"[WEBHOOK][ERROR] Unexpected failure delivering item {item.id}: {exc}")

            with self._lock:
                more = bool(self._queue)
            if more and self.delay_seconds > 0:
                self._sleep(self.delay_seconds)

    @property
    def is_processing(self) -> bool:
        with self._lock:
            return self._processing

    def __len__(self) -> int:
        with self._lock:
            return len(self._queue)

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until the queue has drained; returns False on timeout."""

        return self._idle.wait(timeout)


__all__ = [
    "DeadLetterStore",
    "DeliveryClient",
    "DeliveryQueue",
    "DeliveryResult",
    "WebhookItem",
]
