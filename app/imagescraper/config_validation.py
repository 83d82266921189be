from __future__ import annotations

from typing import Literal

from . import config
from .logging_utils import _scraper_event
from .utils import log_line

Entrypoint = Literal["ui", "cli", "tests"]


def _raise_config_error(message: str, *, entrypoint: Entrypoint, error: str) -> None:
    _scraper_event(
        "error",
        phase="config",
        context="runtime_validation",
        error=error,
        entrypoint=entrypoint,
    )
    log_line(f"[CONFIG] {message} (entrypoint={entrypoint})")
    raise ValueError(message)


def _clamp(field_name: str, value: int, adjusted: int, *, entrypoint: Entrypoint) -> None:
    _scraper_event(
        "state",
        phase="config",
        context="runtime_validation",
        kind="config_adjustment",
        field=field_name,
        value=value,
        adjusted=adjusted,
        entrypoint=entrypoint,
    )
    log_line(f"[CONFIG] {field_name}={value} is out of range; clamping to {adjusted}.")
    setattr(config, field_name, adjusted)


def validate_runtime_config(entrypoint: Entrypoint) -> None:
    """Validate runtime configuration for the given entrypoint.

    Raises ``ValueError`` when a blocking misconfiguration is detected.
    Non-fatal adjustments (e.g. clamping concurrency knobs) are logged but do
    not raise.
    """

    if not config.PRODUCT_BASE_URL.startswith(("http://", "https://")):
        _raise_config_error(
            "IMAGESCRAPER_PRODUCT_BASE_URL must be an http(s) URL.",
            entrypoint=entrypoint,
            error="invalid_product_base_url",
        )

    if config.MAX_CONCURRENT_TABS < 1:
        _clamp("MAX_CONCURRENT_TABS", config.MAX_CONCURRENT_TABS, 1, entrypoint=entrypoint)

    if config.DEAD_LETTER_LIMIT < 1:
        _clamp("DEAD_LETTER_LIMIT", config.DEAD_LETTER_LIMIT, 1, entrypoint=entrypoint)

    if config.MAX_ITEMS_PER_SESSION < 1:
        _clamp("MAX_ITEMS_PER_SESSION", config.MAX_ITEMS_PER_SESSION, 1, entrypoint=entrypoint)

    if not config.MIN_DELAY_MS <= config.DEFAULT_DELAY_MS <= config.MAX_DELAY_MS:
        adjusted = max(config.MIN_DELAY_MS, min(config.MAX_DELAY_MS, config.DEFAULT_DELAY_MS))
        _clamp("DEFAULT_DELAY_MS", config.DEFAULT_DELAY_MS, adjusted, entrypoint=entrypoint)

    if config.WEBHOOK_MAX_RETRIES < 1:
        _raise_config_error(
            "IMAGESCRAPER_WEBHOOK_MAX_RETRIES must be at least 1.",
            entrypoint=entrypoint,
            error="invalid_webhook_retries",
        )

    if config.MIN_FREE_MB < 0:
        _raise_config_error(
            "IMAGESCRAPER_MIN_FREE_MB must be non-negative.",
            entrypoint=entrypoint,
            error="min_free_mb_invalid",
        )

    timeout_fields = [
        ("TAB_LOAD_TIMEOUT_SECONDS", config.TAB_LOAD_TIMEOUT_SECONDS),
        ("READY_POLL_INTERVAL_SECONDS", config.READY_POLL_INTERVAL_SECONDS),
        ("PLAYWRIGHT_NAV_TIMEOUT_SECONDS", config.PLAYWRIGHT_NAV_TIMEOUT_SECONDS),
        ("WEBHOOK_TIMEOUT_SECONDS", config.WEBHOOK_TIMEOUT_SECONDS),
    ]

    for field_name, value in timeout_fields:
        if value <= 0:
            _raise_config_error(
                f"{field_name} must be greater than zero.",
                entrypoint=entrypoint,
                error="invalid_timeout",
            )

    if config.READY_POLL_INTERVAL_SECONDS >= config.TAB_LOAD_TIMEOUT_SECONDS:
        _raise_config_error(
            "READY_POLL_INTERVAL_SECONDS must be shorter than TAB_LOAD_TIMEOUT_SECONDS.",
            entrypoint=entrypoint,
            error="invalid_poll_interval",
        )


__all__ = ["validate_runtime_config", "Entrypoint"]
