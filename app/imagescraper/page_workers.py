"""Page worker pool: isolated browser tabs that load one product page each.

The pool is backend-agnostic. :class:`PlaywrightWorkerBackend` is the default
backend; tests plug in fakes implementing the same four calls.

IMPORTANT:
- Playwright's sync API is bound to the thread that started it, so a
  worker's browser is only ever touched by the thread that acquired it.
- ``release`` from any other thread (a stop request) marks the handle closed;
  further polls and sends fail as unreachable and the owner thread performs
  the teardown when it releases the handle itself.
"""

from __future__ import annotations

import itertools
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Protocol, Tuple

from playwright.sync_api import Error as PWError, sync_playwright

from . import config
from .error_codes import CommunicationError, ExtractionError, WorkerTimeoutError
from .extraction import HtmlImageExtractor, PageExtractor, has_product_content
from .logging_utils import _scraper_event
from .utils import log_line

_WORKER_IDS = itertools.count(1)


class PageWorkerBackend(Protocol):
    def open(self, target_url: str) -> Any:
        ...

    def is_ready(self, native: Any) -> bool:
        ...

    def send(self, native: Any, request: Dict[str, Any]) -> Dict[str, Any]:
        ...

    def close(self, native: Any) -> None:
        ...


@dataclass(eq=False)
class WorkerHandle:
    worker_id: int
    target_url: str
    session_id: Optional[str] = None
    item_id: Optional[str] = None
    native: Any = None
    owner_thread: int = field(default_factory=threading.get_ident)
    opened_at: float = field(default_factory=time.monotonic)
    closed: bool = False
    torn_down: bool = False


def _is_target_closed_error(exc: Exception) -> bool:
    message = str(exc).lower()
    return "target closed" in message or "has been closed" in message


@dataclass
class _PlaywrightTab:
    playwright: Any
    browser: Any
    context: Any
    page: Any
    loaded_at: Optional[float] = None


class PlaywrightWorkerBackend:
    """One headless Chromium per worker, navigated to the product page."""

    def __init__(
        self,
        extractor: Optional[PageExtractor] = None,
        *,
        headless: Optional[bool] = None,
        nav_timeout_seconds: Optional[float] = None,
        content_wait_seconds: Optional[float] = None,
    ) -> None:
        self.extractor = extractor or HtmlImageExtractor()
        self.headless = config.PLAYWRIGHT_HEADLESS if headless is None else headless
        self.nav_timeout_seconds = (
            config.PLAYWRIGHT_NAV_TIMEOUT_SECONDS if nav_timeout_seconds is None else nav_timeout_seconds
        )
        self.content_wait_seconds = (
            config.CONTENT_WAIT_SECONDS if content_wait_seconds is None else content_wait_seconds
        )

    def open(self, target_url: str) -> _PlaywrightTab:
        pw = sync_playwright().start()
        browser = context = None
        try:
            browser = pw.chromium.launch(headless=self.headless)
            context = browser.new_context(user_agent=config.USER_AGENT, locale="en-US")
            page = context.new_page()
            page.goto(
                target_url,
                wait_until="domcontentloaded",
                timeout=self.nav_timeout_seconds * 1000,
            )
        except Exception as exc:  # noqa: BLE001
            self._shutdown(pw, browser, context)
            raise CommunicationError(f"Unable to open page: {exc}") from exc
        return _PlaywrightTab(playwright=pw, browser=browser, context=context, page=page)

    def is_ready(self, tab: _PlaywrightTab) -> bool:
        try:
            if tab.page.evaluate("document.readyState") != "complete":
                return False
            if tab.loaded_at is None:
                tab.loaded_at = time.monotonic()
            if has_product_content(tab.page.content()):
                return True
        except PWError as exc:
            if _is_target_closed_error(exc):
                raise CommunicationError("Page was closed") from exc
            return False
        # Gallery never showed up; let the extractor decide after the budget.
        return time.monotonic() - tab.loaded_at >= self.content_wait_seconds

    def send(self, tab: _PlaywrightTab, request: Dict[str, Any]) -> Dict[str, Any]:
        action = request.get("action")
        if action == "getStatus":
            return {"ready": self.is_ready(tab)}
        if action != "extractImages":
            return {"success": False, "error": "Unknown action"}

        try:
            html = tab.page.content()
            page_url = tab.page.url
        except PWError as exc:
            raise CommunicationError(f"Page unreachable: {exc}") from exc

        try:
            data = self.extractor.extract(html, item_id=str(request.get("item_id") or ""), url=page_url)
        except ExtractionError as exc:
            return {"success": False, "error": str(exc)}
        return {"success": True, "data": data}

    def close(self, tab: _PlaywrightTab) -> None:
        self._shutdown(tab.playwright, tab.browser, tab.context)

    @staticmethod
    def _shutdown(pw: Any, browser: Any, context: Any) -> None:
        for closer in (
            getattr(context, "close", None),
            getattr(browser, "close", None),
            getattr(pw, "stop", None),
        ):
            if closer is None:
                continue
            try:
                closer()
            except Exception:  # noqa: BLE001
                # Already gone.
                continue


class PageWorkerPool:
    """Acquire, poll, message and release page workers.

    No hard cap is enforced here; the batch scheduler's chunk size bounds how
    many workers are live at once.
    """

    def __init__(
        self,
        backend: Optional[PageWorkerBackend] = None,
        *,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backend: PageWorkerBackend = backend or PlaywrightWorkerBackend()
        self._sleep = sleep
        self._clock = clock
        self._lock = threading.Lock()
        self._handles: Dict[int, WorkerHandle] = {}

    def acquire(
        self,
        target_url: str,
        *,
        session_id: Optional[str] = None,
        item_id: Optional[str] = None,
    ) -> WorkerHandle:
        try:
            native = self.backend.open(target_url)
        except CommunicationError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise CommunicationError(f"Unable to open worker: {exc}") from exc

        handle = WorkerHandle(
            worker_id=next(_WORKER_IDS),
            target_url=target_url,
            session_id=session_id,
            item_id=item_id,
            native=native,
        )
        with self._lock:
            self._handles[handle.worker_id] = handle
            live = len(self._handles)

        _scraper_event(
            "worker",
            kind="acquire",
            worker_id=handle.worker_id,
            session_id=session_id,
            item_id=item_id,
            live=live,
        )
        return handle

    def wait_ready(
        self,
        handle: WorkerHandle,
        timeout: Optional[float] = None,
        interval: Optional[float] = None,
    ) -> None:
        """Poll the worker until it reports ready, or raise ``WorkerTimeoutError``."""

        timeout = config.TAB_LOAD_TIMEOUT_SECONDS if timeout is None else timeout
        interval = config.READY_POLL_INTERVAL_SECONDS if interval is None else interval
        deadline = self._clock() + timeout

        while self._clock() < deadline:
            if handle.closed:
                raise CommunicationError("Worker was closed before it became ready")
            try:
                if self.backend.is_ready(handle.native):
                    return
            except CommunicationError:
                raise
            except Exception:  # noqa: BLE001
                # Not ready yet.
                pass
            self._sleep(interval)

        raise WorkerTimeoutError("Timeout waiting for page to load")

    def invoke(self, handle: WorkerHandle, request: Dict[str, Any]) -> Dict[str, Any]:
        if handle.closed:
            raise CommunicationError("Worker is closed")
        try:
            response = self.backend.send(handle.native, request)
        except CommunicationError:
            raise
        except Exception as exc:  # noqa: BLE001
            raise CommunicationError(f"Worker unreachable: {exc}") from exc
        if handle.closed:
            raise CommunicationError("Worker was closed during the request")
        if not isinstance(response, dict):
            raise CommunicationError("Worker returned no response")
        return response

    def release(self, handle: WorkerHandle) -> None:
        """Close the worker. Safe to call repeatedly and from any thread."""

        with self._lock:
            handle.closed = True
            if handle.torn_down:
                return
            if threading.get_ident() != handle.owner_thread:
                # Owner thread tears down when it releases the handle.
                return
            handle.torn_down = True
            self._handles.pop(handle.worker_id, None)
            live = len(self._handles)

        try:
            self.backend.close(handle.native)
        except Exception as exc:  # noqa: BLE001
            log_line(f"[WORKER][WARN] close failed for worker {handle.worker_id}: {exc}")

        _scraper_event(
            "worker",
            kind="release",
            worker_id=handle.worker_id,
            session_id=handle.session_id,
            item_id=handle.item_id,
            live=live,
        )

    def mark_closed(self, worker_id: int) -> bool:
        """Record that a worker went away outside our control (e.g. tab closed)."""

        with self._lock:
            handle = self._handles.get(worker_id)
            if handle is None:
                return False
            handle.closed = True
        _scraper_event("worker", kind="closed_externally", worker_id=worker_id)
        return True

    def owner_of(self, worker_id: int) -> Optional[Tuple[Optional[str], Optional[str]]]:
        with self._lock:
            handle = self._handles.get(worker_id)
            if handle is None:
                return None
            return handle.session_id, handle.item_id

    @property
    def live_count(self) -> int:
        with self._lock:
            return len(self._handles)


__all__ = [
    "PageWorkerBackend",
    "PageWorkerPool",
    "PlaywrightWorkerBackend",
    "WorkerHandle",
]
