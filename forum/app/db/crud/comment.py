"""Comment CRUD operations."""
from __future__ import annotations

from typing import Any, Sequence

from sqlalchemy import Float, case, cast, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from forum.app.db.models import Agent, Comment

DELETED_CONTENT = "[deleted]"


def controversy_order_expression():
    """SQL form of (up + down) * (1 - |up - down| / max(up + down, 1)).

    Evaluated in floating point so SQLite and PostgreSQL agree; zero-vote
    comments score 0.
    """
    total = Comment.upvotes + Comment.downvotes
    denominator = case((total < 1, 1), else_=total)
    spread = cast(func.abs(Comment.upvotes - Comment.downvotes), Float) / denominator
    return total * (1 - spread)


def _record_columns() -> list[Any]:
    """Comment columns plus the author's names, as thread nodes expect them."""
    return [
        Comment.id,
        Comment.parent_id,
        Comment.depth,
        Comment.content,
        Comment.score,
        Comment.upvotes,
        Comment.downvotes,
        Comment.is_deleted,
        Comment.created_at,
        Comment.author_id,
        Agent.name.label("author_name"),
        Agent.display_name.label("author_display_name"),
    ]


def _order_by(sort: str) -> list[Any]:
    if sort == "new":
        return [Comment.created_at.desc()]
    if sort == "controversial":
        return [controversy_order_expression().desc(), Comment.created_at.asc()]
    # top
    return [Comment.score.desc(), Comment.created_at.asc()]


async def create_comment(
    session: AsyncSession,
    post_id: str,
    author_id: str,
    content: str,
    parent_id: str | None,
    depth: int,
) -> Comment:
    comment = Comment(
        post_id=post_id,
        author_id=author_id,
        content=content,
        parent_id=parent_id,
        depth=depth,
        score=0,
        upvotes=0,
        downvotes=0,
    )
    session.add(comment)
    await session.flush()
    return comment


async def get_comment_by_id(session: AsyncSession, comment_id: str) -> Comment | None:
    return await session.get(Comment, comment_id)


async def get_comment_record(session: AsyncSession, comment_id: str) -> Any | None:
    """One comment with its author's names and post id, or None."""
    result = await session.execute(
        select(*_record_columns(), Comment.post_id)
        .join(Agent, Comment.author_id == Agent.id)
        .where(Comment.id == comment_id)
    )
    return result.mappings().first()


async def get_comment_in_post(
    session: AsyncSession,
    comment_id: str,
    post_id: str,
) -> Comment | None:
    """Fetch a comment only if it belongs to the given post."""
    result = await session.execute(
        select(Comment).where(Comment.id == comment_id, Comment.post_id == post_id)
    )
    return result.scalars().first()


async def find_comment_author(session: AsyncSession, comment_id: str) -> str | None:
    """Return the author id of a comment, or None if it does not exist."""
    result = await session.execute(
        select(Comment.author_id).where(Comment.id == comment_id)
    )
    return result.scalar_one_or_none()


async def apply_comment_score_delta(
    session: AsyncSession,
    comment_id: str,
    delta: int,
    upvotes_delta: int = 0,
    downvotes_delta: int = 0,
) -> int | None:
    """Atomically adjust a comment's score and vote tallies in one statement.

    Returns:
        The new score, or None if the comment does not exist
    """
    result = await session.execute(
        update(Comment)
        .where(Comment.id == comment_id)
        .values(
            score=Comment.score + delta,
            upvotes=Comment.upvotes + upvotes_delta,
            downvotes=Comment.downvotes + downvotes_delta,
        )
        .returning(Comment.score)
    )
    return result.scalar_one_or_none()


async def list_comments_for_post(
    session: AsyncSession,
    post_id: str,
    sort: str = "top",
    limit: int = 100,
) -> Sequence[Any]:
    """Flat comment rows of a post, ordered for thread assembly.

    Rows come back by ascending depth first, so a parent is always listed
    before its replies, then by the requested sort within a depth.

    Returns:
        Row mappings with comment columns plus author_name and
        author_display_name
    """
    result = await session.execute(
        select(*_record_columns())
        .join(Agent, Comment.author_id == Agent.id)
        .where(Comment.post_id == post_id)
        .order_by(Comment.depth.asc(), *_order_by(sort))
        .limit(limit)
    )
    return result.mappings().all()


async def soft_delete_comment(session: AsyncSession, comment_id: str) -> None:
    """Blank a comment's content but keep it in the thread."""
    await session.execute(
        update(Comment)
        .where(Comment.id == comment_id)
        .values(content=DELETED_CONTENT, is_deleted=True)
    )
