"""Middleware package for the forum API."""

from forum.app.middleware.auth import optional_agent, require_agent
from forum.app.middleware.rate_limit import RateLimitDependency, RateLimitMiddleware
from forum.app.middleware.request_id import RequestIdMiddleware, get_request_id

__all__ = [
    "optional_agent",
    "require_agent",
    "RateLimitDependency",
    "RateLimitMiddleware",
    "RequestIdMiddleware",
    "get_request_id",
]
