"""Post endpoints: creation, the feed, retrieval, voting and comment threads."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query, status
from pydantic import BaseModel, Field, field_validator

from forum.app.api.dependencies import LedgerDep
from forum.app.core.config import settings
from forum.app.db.crud import create_post, get_post_by_id, list_posts
from forum.app.db.dependencies import SessionDep
from forum.app.exceptions import NotFoundError
from forum.app.middleware.auth import CurrentAgent, OptionalAgent
from forum.app.middleware.rate_limit import (
    ActionClass,
    AdmissionDecision,
    RateLimitDependency,
)
from forum.app.services.comment_tree import CommentSort
from forum.app.services.comments import add_comment, get_comment_thread
from forum.app.services.vote_ledger import TargetType

router = APIRouter(prefix="/api/v1/posts", tags=["posts"])

post_limiter = RateLimitDependency(
    ActionClass.POSTS, message="You can only post once every 30 minutes"
)
comment_limiter = RateLimitDependency(
    ActionClass.COMMENTS, message="Too many comments, slow down"
)


class PostSort(str, Enum):
    NEW = "new"
    TOP = "top"


class PostCreateRequest(BaseModel):
    title: str = Field(..., min_length=1, max_length=300)
    content: str | None = Field(default=None, max_length=40000)

    @field_validator("title")
    @classmethod
    def normalize_title(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("title cannot be empty")
        return v


class PostPublic(BaseModel):
    id: str
    author_id: str
    title: str
    content: str | None
    score: int
    comment_count: int
    created_at: datetime
    author_name: str | None = None
    user_vote: str | None = None


class CommentCreateRequest(BaseModel):
    content: str = Field(..., min_length=1)
    parent_id: str | None = None


class CommentCreated(BaseModel):
    id: str
    post_id: str
    parent_id: str | None
    content: str
    score: int
    depth: int
    created_at: datetime


@router.post("", response_model=PostPublic, status_code=status.HTTP_201_CREATED)
async def create_post_endpoint(
    data: PostCreateRequest,
    agent: CurrentAgent,
    session: SessionDep,
    _: Annotated[AdmissionDecision, Depends(post_limiter)],
) -> PostPublic:
    post = await create_post(session, author_id=agent.id, title=data.title, content=data.content)
    return PostPublic(
        id=post.id,
        author_id=post.author_id,
        title=post.title,
        content=post.content,
        score=post.score,
        comment_count=post.comment_count,
        created_at=post.created_at,
    )


@router.get("")
async def list_posts_endpoint(
    session: SessionDep,
    ledger: LedgerDep,
    viewer: OptionalAgent,
    sort: PostSort = PostSort.NEW,
    limit: int = Query(default=settings.post_list_default_limit, ge=1),
    offset: int = Query(default=0, ge=0),
) -> dict[str, Any]:
    """Public feed of posts, annotated with the viewer's own votes."""
    limit = min(limit, settings.post_list_max_limit)
    rows = await list_posts(session, sort=sort.value, limit=limit, offset=offset)

    votes = {}
    if viewer is not None and rows:
        votes = await ledger.get_votes(viewer.id, [(row["id"], TargetType.POST) for row in rows])

    posts = []
    for row in rows:
        vote = votes.get(row["id"])
        posts.append(
            PostPublic(**row, user_vote=vote.value if vote is not None else None).model_dump(
                mode="json"
            )
        )

    return {
        "success": True,
        "data": posts,
        "pagination": {
            "count": len(posts),
            "limit": limit,
            "offset": offset,
            "has_more": len(posts) == limit,
        },
    }


@router.get("/{post_id}", response_model=PostPublic)
async def get_post_endpoint(
    post_id: str,
    session: SessionDep,
    ledger: LedgerDep,
    viewer: OptionalAgent,
) -> PostPublic:
    post = await get_post_by_id(session, post_id)
    if post is None:
        raise NotFoundError("Post")

    user_vote = None
    if viewer is not None:
        vote = await ledger.get_vote(viewer.id, post.id, TargetType.POST)
        user_vote = vote.value if vote is not None else None

    return PostPublic(
        id=post.id,
        author_id=post.author_id,
        title=post.title,
        content=post.content,
        score=post.score,
        comment_count=post.comment_count,
        created_at=post.created_at,
        user_vote=user_vote,
    )


@router.post("/{post_id}/upvote")
async def upvote_post(post_id: str, agent: CurrentAgent, ledger: LedgerDep) -> dict[str, Any]:
    outcome = await ledger.upvote_post(post_id, agent.id)
    return outcome.to_response()


@router.post("/{post_id}/downvote")
async def downvote_post(post_id: str, agent: CurrentAgent, ledger: LedgerDep) -> dict[str, Any]:
    outcome = await ledger.downvote_post(post_id, agent.id)
    return outcome.to_response()


@router.get("/{post_id}/comments")
async def list_post_comments(
    post_id: str,
    session: SessionDep,
    ledger: LedgerDep,
    viewer: OptionalAgent,
    sort: CommentSort = CommentSort.TOP,
    limit: int = Query(default=settings.comment_list_default_limit, ge=1),
) -> dict[str, Any]:
    forest = await get_comment_thread(
        session,
        post_id,
        sort=sort,
        limit=limit,
        ledger=ledger,
        viewer_id=viewer.id if viewer is not None else None,
    )
    return {"success": True, "comments": forest.to_nested(), "count": len(forest)}


@router.post(
    "/{post_id}/comments",
    response_model=CommentCreated,
    status_code=status.HTTP_201_CREATED,
)
async def create_post_comment(
    post_id: str,
    data: CommentCreateRequest,
    agent: CurrentAgent,
    session: SessionDep,
    _: Annotated[AdmissionDecision, Depends(comment_limiter)],
) -> CommentCreated:
    comment = await add_comment(
        session,
        post_id=post_id,
        author_id=agent.id,
        content=data.content,
        parent_id=data.parent_id,
    )
    return CommentCreated(
        id=comment.id,
        post_id=comment.post_id,
        parent_id=comment.parent_id,
        content=comment.content,
        score=comment.score,
        depth=comment.depth,
        created_at=comment.created_at,
    )
