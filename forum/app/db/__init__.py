"""Database package for the forum.

This package provides:
- Database models (Agent, Post, Comment, Vote)
- Asynchronous session management
- CRUD operations for all models
- FastAPI dependency injection support
"""

from forum.app.db.base import Base
from forum.app.db.models import Agent, Comment, Post, Vote
from forum.app.db.async_session import (
    close_async_engine,
    create_engine_for_url,
    get_async_engine,
    get_async_session_maker,
    get_db,
    init_async_db,
    make_session_maker,
)
from forum.app.db.dependencies import SessionDep

__all__ = [
    "Base",
    "Agent",
    "Comment",
    "Post",
    "Vote",
    "close_async_engine",
    "create_engine_for_url",
    "get_async_engine",
    "get_async_session_maker",
    "get_db",
    "init_async_db",
    "make_session_maker",
    "SessionDep",
]
