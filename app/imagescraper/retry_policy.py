from __future__ import annotations

from typing import Optional

from . import config
from .error_codes import ErrorCode
from .logging_utils import _scraper_event

RETRYABLE_ERROR_CODES = {
    ErrorCode.NETWORK,
    ErrorCode.HTTP_5XX,
    ErrorCode.RATE_LIMITED,
}

NON_RETRYABLE_ERROR_CODES = {
    ErrorCode.HTTP_4XX,
    ErrorCode.VALIDATION,
    ErrorCode.INTERNAL,
}


def compute_backoff_seconds(attempt_index: int, base_delay: Optional[float] = None) -> float:
    """Return the exponential backoff after the given attempt (1-based)."""

    base = config.WEBHOOK_BASE_DELAY_SECONDS if base_delay is None else base_delay
    return float(base * (2 ** max(0, attempt_index - 1)))


def decide_retry(
    attempt_index: int,
    max_attempts: int,
    *,
    error_code: Optional[str] = None,
    http_status: Optional[int] = None,
) -> bool:
    """Decide whether a failed delivery attempt should be retried."""

    code = (error_code or "").strip()

    if code in NON_RETRYABLE_ERROR_CODES:
        _scraper_event(
            "state",
            phase="retry_decision",
            kind="non_retryable",
            error_code=code,
            attempt=attempt_index,
            max_attempts=max_attempts,
            http_status=http_status,
            will_retry=False,
        )
        return False

    if attempt_index >= max_attempts:
        _scraper_event(
            "state",
            phase="retry_decision",
            kind="capped",
            attempt=attempt_index,
            max_attempts=max_attempts,
            error_code=code or None,
            http_status=http_status,
            will_retry=False,
        )
        return False

    if code in RETRYABLE_ERROR_CODES or (http_status is not None and http_status >= 500):
        _scraper_event(
            "state",
            phase="retry_decision",
            kind="retryable",
            error_code=code or None,
            attempt=attempt_index,
            max_attempts=max_attempts,
            http_status=http_status,
            will_retry=True,
        )
        return True

    _scraper_event(
        "state",
        phase="retry_decision",
        kind="no_retry_policy" if code else "missing_error_code",
        error_code=code or None,
        attempt=attempt_index,
        max_attempts=max_attempts,
        http_status=http_status,
        will_retry=False,
    )
    return False


__all__ = ["decide_retry", "compute_backoff_seconds", "NON_RETRYABLE_ERROR_CODES"]
