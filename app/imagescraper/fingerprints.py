"""Durable set of item identifiers that were already processed successfully."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Iterable, List, Optional, Set, Tuple

from . import config
from .items import normalize_item_id
from .logging_utils import _scraper_event
from .utils import load_json_file, save_json_file


class FingerprintStore:
    """Persisted fingerprint set.

    Every mutation is written to disk (atomic replace) before it returns, so a
    crash after ``add`` cannot lose the mark. Append-only except ``clear``.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self.path = Path(path) if path is not None else config.FINGERPRINTS_FILE
        self._lock = threading.Lock()
        self._ids: List[str] = []
        self._index: Set[str] = set()

        stored = load_json_file(self.path, {"items": []})
        values = stored.get("items", []) if isinstance(stored, dict) else []
        for value in values:
            norm = normalize_item_id(value)
            if norm and norm not in self._index:
                self._index.add(norm)
                self._ids.append(norm)

    def _persist(self) -> None:
        save_json_file(self.path, {"items": list(self._ids)})

    def has(self, item_id: str) -> bool:
        with self._lock:
            return normalize_item_id(item_id) in self._index

    def add(self, item_id: str) -> None:
        self.add_all([item_id])

    def add_all(self, item_ids: Iterable[str]) -> int:
        """Add identifiers and persist; returns how many were new."""

        added = 0
        with self._lock:
            for item_id in item_ids:
                norm = normalize_item_id(item_id)
                if not norm or norm in self._index:
                    continue
                self._index.add(norm)
                self._ids.append(norm)
                added += 1
            if added:
                self._persist()
        if added:
            _scraper_event("fingerprint", kind="add", added=added, total=len(self))
        return added

    def clear(self) -> None:
        with self._lock:
            self._ids = []
            self._index = set()
            self._persist()
        _scraper_event("fingerprint", kind="clear")

    def filter_new(self, item_ids: Iterable[str]) -> Tuple[List[str], int]:
        """Return (fresh ids in order, skipped count).

        Duplicates inside ``item_ids`` and ids already fingerprinted are both
        counted as skipped.
        """

        fresh: List[str] = []
        seen: Set[str] = set()
        skipped = 0
        with self._lock:
            for item_id in item_ids:
                norm = normalize_item_id(item_id)
                if norm in self._index or norm in seen:
                    skipped += 1
                    continue
                seen.add(norm)
                fresh.append(norm)
        return fresh, skipped

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)

    def __contains__(self, item_id: object) -> bool:
        return isinstance(item_id, str) and self.has(item_id)


__all__ = ["FingerprintStore"]
