"""Shared error types for the relay and its outbound calls."""
from __future__ import annotations

from dataclasses import dataclass


@dataclass
class APIError(Exception):
    code: str
    message: str
    detail: dict | None = None
    status_code: int = 400


class UpstreamError(Exception):
    """Failure reported by (or while reaching) the upstream API."""

    def __init__(self, status: int | None, message: str, retry_after: float | None = None):
        self.status = status
        self.message = message
        self.retry_after = retry_after
        super().__init__(f"[{status}] {message}" if status is not None else message)


class RateLimitExhausted(Exception):
    """Raised once the retry budget for rate-limited calls is used up."""

    code = "QUOTA_EXHAUSTED"

    def __init__(self, attempts: int, last_error: BaseException, retry_after: float | None = None):
        self.attempts = attempts
        self.last_error = last_error
        self.retry_after = retry_after
        super().__init__(
            f"Upstream quota exhausted after {attempts} attempts. "
            "Try again later or reduce the batch size."
        )


class RetryCancelled(Exception):
    """Raised when the caller cancels a pending call during a wait."""

    code = "REQUEST_CANCELLED"

    def __init__(self, attempts: int):
        self.attempts = attempts
        super().__init__(f"Request cancelled after {attempts} attempts")
