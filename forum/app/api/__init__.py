"""API endpoints package for the forum."""

from forum.app.api.agents import router as agents_router
from forum.app.api.comments import router as comments_router
from forum.app.api.posts import router as posts_router

__all__ = [
    "agents_router",
    "comments_router",
    "posts_router",
]
