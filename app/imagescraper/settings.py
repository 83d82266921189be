"""Persisted scraper settings (delivery zone, pacing and webhook URL)."""

from __future__ import annotations

from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from . import config
from .utils import load_json_file, save_json_file


@dataclass(frozen=True)
class Settings:
    target_zone: str = config.DEFAULT_ZONE
    inter_item_delay_ms: int = config.DEFAULT_DELAY_MS
    webhook_url: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], *, base: Optional["Settings"] = None) -> "Settings":
        """Build settings from a JSON-ish mapping, falling back to ``base``.

        Both the snake_case field names and the short UI names (``zone``,
        ``delay_ms``/``delayTime``, ``webhookUrl``) are accepted.
        """

        base = base or cls()
        zone = _first(data, "target_zone", "zone", "zipCode")
        delay = _first(data, "inter_item_delay_ms", "delay_ms", "delayTime")
        webhook = _first(data, "webhook_url", "webhookUrl")

        try:
            delay_ms = int(delay) if delay not in (None, "") else base.inter_item_delay_ms
        except (TypeError, ValueError):
            delay_ms = base.inter_item_delay_ms

        return cls(
            target_zone=str(zone).strip() if zone not in (None, "") else base.target_zone,
            inter_item_delay_ms=clamp_delay_ms(delay_ms),
            webhook_url=str(webhook).strip() if webhook is not None else base.webhook_url,
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        if key in data:
            return data[key]
    return None


def clamp_delay_ms(value: int) -> int:
    return max(config.MIN_DELAY_MS, min(config.MAX_DELAY_MS, int(value)))


def load_settings(path: Optional[Path] = None) -> Settings:
    """Load the persisted settings, or defaults when nothing is stored yet."""

    stored = load_json_file(path or config.SETTINGS_FILE, {})
    if not isinstance(stored, dict):
        stored = {}
    return Settings.from_dict(stored)


def save_settings(settings: Settings, path: Optional[Path] = None) -> None:
    save_json_file(path or config.SETTINGS_FILE, settings.to_dict())


__all__ = ["Settings", "clamp_delay_ms", "load_settings", "save_settings"]
