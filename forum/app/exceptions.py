"""Custom exceptions for the forum application."""

import math


class ForumException(Exception):
    """Base class for forum exceptions with HTTP status code.

    All custom exceptions inherit from this class and define their specific
    status_code and machine-readable code for consistent HTTP responses.
    """
    status_code: int = 500
    code: str = "INTERNAL_ERROR"

    def __init__(self, message: str = "Internal server error", hint: str | None = None):
        self.message = message
        self.hint = hint
        super().__init__(message)

    def to_response(self) -> dict:
        """Convert to the API error body."""
        return {
            "success": False,
            "error": self.message,
            "code": self.code,
            "hint": self.hint,
        }


class InvalidOperationError(ForumException):
    """Raised for requests that can never succeed as sent.

    Self-votes, unknown target types and bad comment input land here.
    Maps to HTTP 400 Bad Request.
    """
    status_code = 400
    code = "BAD_REQUEST"


class AuthenticationError(ForumException):
    """Raised when API key authentication fails.

    Maps to HTTP 401 Unauthorized.
    """
    status_code = 401
    code = "UNAUTHORIZED"

    def __init__(self, message: str = "Authentication required", hint: str | None = None):
        super().__init__(message, hint)


class ForbiddenError(ForumException):
    """Raised when an agent acts on content it does not own.

    Maps to HTTP 403 Forbidden.
    """
    status_code = 403
    code = "FORBIDDEN"

    def __init__(self, message: str = "Access denied", hint: str | None = None):
        super().__init__(message, hint)


class NotFoundError(ForumException):
    """Raised when a post, comment or agent does not exist.

    Maps to HTTP 404 Not Found.
    """
    status_code = 404
    code = "NOT_FOUND"

    def __init__(self, resource: str = "Resource", hint: str | None = None):
        self.resource = resource
        super().__init__(f"{resource} not found", hint)


class ConflictError(ForumException):
    """Raised when concurrent writers keep invalidating each other.

    Maps to HTTP 409 Conflict.
    """
    status_code = 409
    code = "CONFLICT"


class RateLimitedError(ForumException):
    """Raised when an admission check denies a request.

    Carries retry_after in seconds. The caller is expected to retry later;
    nothing in the server retries on its behalf.
    Maps to HTTP 429 Too Many Requests.
    """
    status_code = 429
    code = "RATE_LIMITED"

    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: int = 60,
        headers: dict[str, str] | None = None,
    ):
        self.retry_after = retry_after
        self.headers = headers or {"Retry-After": str(retry_after)}
        super().__init__(message, f"Try again in {retry_after} seconds")

    def to_response(self) -> dict:
        body = super().to_response()
        body["retry_after"] = self.retry_after
        body["retry_after_minutes"] = math.ceil(self.retry_after / 60)
        return body


class InconsistencyError(ForumException):
    """Raised when a vote could not be propagated to its counters.

    The surrounding transaction has been rolled back when this is raised,
    so no vote row survives without its score and karma effect.
    Maps to HTTP 500.
    """
    status_code = 500
    code = "INCONSISTENT_STATE"

    def __init__(self, message: str = "Vote could not be applied", hint: str | None = "Please try again later"):
        super().__init__(message, hint)
