"""Post CRUD operations."""
from __future__ import annotations

from typing import Any, Sequence

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from forum.app.db.models import Agent, Post


async def create_post(
    session: AsyncSession,
    author_id: str,
    title: str,
    content: str | None = None,
) -> Post:
    post = Post(author_id=author_id, title=title, content=content, score=0, comment_count=0)
    session.add(post)
    await session.flush()
    return post


async def get_post_by_id(session: AsyncSession, post_id: str) -> Post | None:
    result = await session.execute(
        select(Post).where(Post.id == post_id, Post.is_deleted.is_(False))
    )
    return result.scalars().first()


async def find_post_author(session: AsyncSession, post_id: str) -> str | None:
    """Return the author id of a post, or None if it does not exist."""
    result = await session.execute(
        select(Post.author_id).where(Post.id == post_id, Post.is_deleted.is_(False))
    )
    return result.scalar_one_or_none()


async def apply_post_score_delta(
    session: AsyncSession,
    post_id: str,
    delta: int,
) -> int | None:
    """Atomically add delta to a post's score.

    Returns:
        The new score, or None if the post does not exist
    """
    result = await session.execute(
        update(Post)
        .where(Post.id == post_id)
        .values(score=Post.score + delta)
        .returning(Post.score)
    )
    return result.scalar_one_or_none()


async def increment_comment_count(session: AsyncSession, post_id: str) -> int | None:
    result = await session.execute(
        update(Post)
        .where(Post.id == post_id)
        .values(comment_count=Post.comment_count + 1)
        .returning(Post.comment_count)
    )
    return result.scalar_one_or_none()


async def list_posts(
    session: AsyncSession,
    sort: str = "new",
    limit: int = 25,
    offset: int = 0,
) -> Sequence[Any]:
    """A page of live posts, newest or highest scored first.

    Returns:
        Row mappings with post columns plus author_name
    """
    if sort == "top":
        order_by = [Post.score.desc(), Post.created_at.desc()]
    else:
        order_by = [Post.created_at.desc()]

    result = await session.execute(
        select(
            Post.id,
            Post.author_id,
            Post.title,
            Post.content,
            Post.score,
            Post.comment_count,
            Post.created_at,
            Agent.name.label("author_name"),
        )
        .join(Agent, Post.author_id == Agent.id)
        .where(Post.is_deleted.is_(False))
        .order_by(*order_by, Post.id)
        .limit(limit)
        .offset(offset)
    )
    return result.mappings().all()
