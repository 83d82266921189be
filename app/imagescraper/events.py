"""Fire-and-forget session notifications (progress, complete, error).

Delivery is at-most-once: a subscriber that raises or whose buffer is full
simply misses the event.
"""

from __future__ import annotations

import json
import queue
import threading
from typing import Any, Callable, Dict, List

from .logging_utils import _scraper_event

Listener = Callable[[str, Dict[str, Any]], None]


class EventBus:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: List[Listener] = []

    def subscribe(self, listener: Listener) -> Listener:
        with self._lock:
            self._listeners.append(listener)
        return listener

    def unsubscribe(self, listener: Listener) -> None:
        with self._lock:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

    def publish(self, event_type: str, **payload: Any) -> None:
        with self._lock:
            listeners = list(self._listeners)
        _scraper_event("event", type=event_type, listeners=len(listeners), **payload)
        for listener in listeners:
            try:
                listener(event_type, dict(payload))
            except Exception:  # noqa: BLE001
                # Subscribers are best effort.
                continue

    def open_stream(self, maxsize: int = 100) -> "EventStream":
        stream = EventStream(self, maxsize=maxsize)
        self.subscribe(stream.push)
        return stream


class EventStream:
    """Buffered subscription used by the SSE endpoint."""

    def __init__(self, bus: EventBus, *, maxsize: int = 100) -> None:
        self._bus = bus
        self._queue: "queue.Queue[tuple[str, Dict[str, Any]]]" = queue.Queue(maxsize=maxsize)

    def push(self, event_type: str, payload: Dict[str, Any]) -> None:
        try:
            self._queue.put_nowait((event_type, payload))
        except queue.Full:
            pass

    def next_message(self, timeout: float) -> str:
        """Return the next SSE frame, or a heartbeat comment after ``timeout``."""

        try:
            event_type, payload = self._queue.get(timeout=timeout)
        except queue.Empty:
            return ": heartbeat\n\n"
        return f"event: {event_type}\ndata: {json.dumps(payload)}\n\n"

    def close(self) -> None:
        self._bus.unsubscribe(self.push)


__all__ = ["EventBus", "EventStream"]
