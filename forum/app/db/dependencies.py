"""Database dependencies for FastAPI dependency injection.

Usage:
    from forum.app.db.dependencies import SessionDep

    @router.get("/posts/{post_id}")
    async def get_post(post_id: str, session: SessionDep):
        ...
"""

from typing import Annotated

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from forum.app.db.async_session import get_db

# Usage: async def handler(session: SessionDep)
SessionDep = Annotated[AsyncSession, Depends(get_db)]

__all__ = ["SessionDep"]
