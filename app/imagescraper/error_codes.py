from __future__ import annotations

"""Error taxonomy for session, worker and delivery failures.

Codes are included in structured logs and in delivery results so that we
can explain why an item or a webhook delivery failed. The exception classes
wrap a code and a short human readable message; raw internal state is never
put in the message.
"""

from typing import Optional


class ErrorCode:
    VALIDATION = "validation_error"
    WORKER_TIMEOUT = "worker_timeout"
    WORKER_UNREACHABLE = "worker_unreachable"
    EXTRACTION_FAILED = "extraction_failed"
    NETWORK = "network_error"
    HTTP_4XX = "http_4xx"
    HTTP_5XX = "http_5xx"
    RATE_LIMITED = "rate_limited"
    ORCHESTRATION = "orchestration_error"
    INTERNAL = "internal_error"


class ScraperError(Exception):
    error_code: str = ErrorCode.INTERNAL

    def __init__(self, message: str, *, error_code: Optional[str] = None) -> None:
        super().__init__(message)
        if error_code is not None:
            self.error_code = error_code

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class ValidationError(ScraperError):
    """Bad input at session start; surfaced immediately and never retried."""

    error_code = ErrorCode.VALIDATION


class WorkerTimeoutError(ScraperError, TimeoutError):
    """A page worker never signalled readiness within its budget."""

    error_code = ErrorCode.WORKER_TIMEOUT


class CommunicationError(ScraperError):
    """A page worker could not be reached (closed, crashed or never opened)."""

    error_code = ErrorCode.WORKER_UNREACHABLE


class ExtractionError(ScraperError):
    """The page extractor reported a failure for an item."""

    error_code = ErrorCode.EXTRACTION_FAILED


class DeliveryError(ScraperError):
    def __init__(
        self,
        message: str,
        *,
        error_code: str = ErrorCode.NETWORK,
        http_status: Optional[int] = None,
    ) -> None:
        super().__init__(message, error_code=error_code)
        self.http_status = http_status


class OrchestrationError(ScraperError):
    """Integrity violation inside the orchestration layer; fails the session."""

    error_code = ErrorCode.ORCHESTRATION


def classify_http_status(status: Optional[int]) -> str:
    if status is None:
        return ErrorCode.INTERNAL
    if status == 429:
        return ErrorCode.RATE_LIMITED
    if 400 <= status < 500:
        return ErrorCode.HTTP_4XX
    if status >= 500:
        return ErrorCode.HTTP_5XX
    return ErrorCode.INTERNAL


__all__ = [
    "ErrorCode",
    "ScraperError",
    "ValidationError",
    "WorkerTimeoutError",
    "CommunicationError",
    "ExtractionError",
    "DeliveryError",
    "OrchestrationError",
    "classify_http_status",
]
