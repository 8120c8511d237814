"""Rate limiting data models.

This module contains the value objects exchanged between the window store,
the admission controller and the request layer.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class ActionClass(str, Enum):
    """Independent quotas a caller is admitted against."""
    REQUESTS = "requests"
    POSTS = "posts"
    COMMENTS = "comments"


@dataclass(frozen=True)
class RateLimit:
    """Configured ceiling: at most max_requests per window_seconds."""
    max_requests: int
    window_seconds: int

    def __post_init__(self) -> None:
        if self.max_requests < 1:
            raise ValueError("max_requests must be at least 1")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be positive")


@dataclass(frozen=True)
class WindowCount:
    """Outcome of one record-and-count step on a key.

    count and oldest describe the window before the new event was (maybe)
    appended; now is the timestamp the step was evaluated at.
    """
    count: int
    oldest: Optional[float]
    recorded: bool
    now: float


@dataclass(frozen=True)
class AdmissionDecision:
    """Result of an admission check."""
    allowed: bool
    limit: int
    remaining: int
    reset_at: float
    retry_after: int = 0

    @property
    def reset_epoch(self) -> int:
        """reset_at as whole epoch seconds, for the X-RateLimit-Reset header."""
        return int(self.reset_at)

    def headers(self) -> dict[str, str]:
        """Response metadata rendered on every checked request."""
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_epoch),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers
