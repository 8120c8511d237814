"""Comment endpoints: retrieval, deletion and voting."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Response, status

from forum.app.api.dependencies import LedgerDep
from forum.app.db.crud import get_comment_record
from forum.app.db.dependencies import SessionDep
from forum.app.exceptions import NotFoundError
from forum.app.middleware.auth import CurrentAgent
from forum.app.services.comment_tree import CommentNode
from forum.app.services.comments import remove_comment

router = APIRouter(prefix="/api/v1/comments", tags=["comments"])


@router.get("/{comment_id}")
async def get_comment(comment_id: str, agent: CurrentAgent, session: SessionDep) -> dict[str, Any]:
    record = await get_comment_record(session, comment_id)
    if record is None:
        raise NotFoundError("Comment")
    node = CommentNode.from_record(record)
    return {"success": True, "comment": node.to_dict()}


@router.delete("/{comment_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_comment(comment_id: str, agent: CurrentAgent, session: SessionDep) -> Response:
    await remove_comment(session, comment_id, agent.id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/{comment_id}/upvote")
async def upvote_comment(comment_id: str, agent: CurrentAgent, ledger: LedgerDep) -> dict[str, Any]:
    outcome = await ledger.upvote_comment(comment_id, agent.id)
    return outcome.to_response()


@router.post("/{comment_id}/downvote")
async def downvote_comment(comment_id: str, agent: CurrentAgent, ledger: LedgerDep) -> dict[str, Any]:
    outcome = await ledger.downvote_comment(comment_id, agent.id)
    return outcome.to_response()
