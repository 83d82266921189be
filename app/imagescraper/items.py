"""Item identifier parsing and normalisation."""

from __future__ import annotations

import re
from typing import Iterable, List, Optional

ITEM_ID_PATTERN = re.compile(r"^[A-Z0-9]{10}$")
_SPLIT_PATTERN = re.compile(r"[\n,;]+")
_URL_PATTERNS = (
    re.compile(r"/dp/([A-Z0-9]{10})"),
    re.compile(r"/gp/product/([A-Z0-9]{10})"),
    re.compile(r"/ASIN/([A-Z0-9]{10})"),
)


def normalize_item_id(raw: object) -> str:
    """Return ``raw`` trimmed and upper-cased; empty string for non-strings."""

    if not isinstance(raw, str):
        return ""
    return raw.strip().upper()


def is_valid_item_id(value: str) -> bool:
    return bool(ITEM_ID_PATTERN.match(value or ""))


def parse_item_ids(text: str) -> List[str]:
    """Split free text on newlines, commas and semicolons into valid identifiers.

    Order and duplicates are preserved; deduplication is the session's job.
    """

    tokens = (normalize_item_id(token) for token in _SPLIT_PATTERN.split(text or ""))
    return [token for token in tokens if is_valid_item_id(token)]


def coerce_item_ids(values: Iterable[object] | str) -> List[str]:
    """Accept either free text or an iterable of raw identifiers."""

    if isinstance(values, str):
        return parse_item_ids(values)
    normalized = (normalize_item_id(value) for value in values)
    return [value for value in normalized if is_valid_item_id(value)]


def item_id_from_url(url: str) -> Optional[str]:
    for pattern in _URL_PATTERNS:
        match = pattern.search(url or "")
        if match:
            return match.group(1)
    return None


__all__ = [
    "ITEM_ID_PATTERN",
    "normalize_item_id",
    "is_valid_item_id",
    "parse_item_ids",
    "coerce_item_ids",
    "item_id_from_url",
]
