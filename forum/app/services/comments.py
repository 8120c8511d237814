"""Comment creation and thread listing."""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from forum.app.core.config import settings
from forum.app.core.logging import get_logger
from forum.app.db.crud import (
    create_comment,
    get_comment_by_id,
    get_comment_in_post,
    get_post_by_id,
    increment_comment_count,
    list_comments_for_post,
    soft_delete_comment,
)
from forum.app.db.models import Comment
from forum.app.exceptions import ForbiddenError, InvalidOperationError, NotFoundError
from forum.app.services.comment_tree import CommentForest, CommentSort, assemble
from forum.app.services.vote_ledger import TargetType, VoteLedger

logger = get_logger(__name__)


def child_depth(parent_depth: Optional[int], max_depth: int) -> int:
    """Depth a new comment gets under a parent of parent_depth.

    Raises:
        InvalidOperationError: If the reply would nest deeper than max_depth
    """
    depth = 0 if parent_depth is None else parent_depth + 1
    if depth > max_depth:
        raise InvalidOperationError("Maximum comment depth exceeded")
    return depth


async def add_comment(
    session: AsyncSession,
    post_id: str,
    author_id: str,
    content: str,
    parent_id: Optional[str] = None,
) -> Comment:
    """Create a comment or reply.

    The depth is fixed here, from the parent's stored depth, and a reply that
    would exceed the cap is rejected before anything is written.

    Raises:
        InvalidOperationError: Empty or oversized content, or too deep
        NotFoundError: Missing post, or parent not in the same post
    """
    content = (content or "").strip()
    if not content:
        raise InvalidOperationError("Content is required")
    if len(content) > settings.max_comment_length:
        raise InvalidOperationError(
            f"Content must be {settings.max_comment_length} characters or less"
        )

    post = await get_post_by_id(session, post_id)
    if post is None:
        raise NotFoundError("Post")

    parent_depth = None
    if parent_id:
        parent = await get_comment_in_post(session, parent_id, post_id)
        if parent is None:
            raise NotFoundError("Parent comment")
        parent_depth = parent.depth

    depth = child_depth(parent_depth, settings.max_comment_depth)

    comment = await create_comment(
        session,
        post_id=post_id,
        author_id=author_id,
        content=content,
        parent_id=parent_id or None,
        depth=depth,
    )
    await increment_comment_count(session, post_id)
    logger.debug(f"Comment {comment.id} created on post {post_id} at depth {depth}")
    return comment


async def get_comment_thread(
    session: AsyncSession,
    post_id: str,
    sort: CommentSort = CommentSort.TOP,
    limit: Optional[int] = None,
    ledger: Optional[VoteLedger] = None,
    viewer_id: Optional[str] = None,
) -> CommentForest:
    """Read a post's comments and assemble them into threads.

    When a ledger and viewer are given, every node carries the viewer's own
    vote as user_vote ("up", "down" or None).

    Raises:
        NotFoundError: If the post does not exist
    """
    post = await get_post_by_id(session, post_id)
    if post is None:
        raise NotFoundError("Post")

    if limit is None:
        limit = settings.comment_list_default_limit
    limit = max(1, min(limit, settings.comment_list_max_limit))

    rows = await list_comments_for_post(session, post_id, sort=sort.value, limit=limit)
    records: List[Dict[str, Any]] = [dict(row) for row in rows]

    if ledger is not None and viewer_id is not None and records:
        votes = await ledger.get_votes(
            viewer_id, [(record["id"], TargetType.COMMENT) for record in records]
        )
        for record in records:
            vote = votes.get(record["id"])
            record["user_vote"] = vote.value if vote is not None else None

    return assemble(records)


async def remove_comment(session: AsyncSession, comment_id: str, agent_id: str) -> None:
    """Soft-delete a comment; only its author may do so."""
    comment = await get_comment_by_id(session, comment_id)
    if comment is None:
        raise NotFoundError("Comment")
    if comment.author_id != agent_id:
        raise ForbiddenError("You can only delete your own comments")
    await soft_delete_comment(session, comment_id)
