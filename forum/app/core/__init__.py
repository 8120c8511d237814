"""Core utilities for the forum application."""

from forum.app.core.config import settings
from forum.app.core.logging import get_log_context, get_logger, setup_logging
from forum.app.core.security import extract_bearer_token, generate_api_key, hash_api_key

__all__ = [
    "settings",
    "get_logger",
    "get_log_context",
    "setup_logging",
    "extract_bearer_token",
    "generate_api_key",
    "hash_api_key",
]
