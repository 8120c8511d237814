"""Services package for the forum.

This package provides:
- The vote ledger (one vote per agent and target, score and karma upkeep)
- Comment creation and reply tree assembly
"""

from forum.app.services.comment_tree import (
    CommentForest,
    CommentNode,
    CommentSort,
    assemble,
    controversy_score,
)
from forum.app.services.comments import (
    add_comment,
    child_depth,
    get_comment_thread,
    remove_comment,
)
from forum.app.services.vote_ledger import (
    TargetType,
    VoteAction,
    VoteDirection,
    VoteLedger,
    VoteOutcome,
    VoteTransition,
    plan_vote,
)

__all__ = [
    # Comment tree
    "CommentForest",
    "CommentNode",
    "CommentSort",
    "assemble",
    "controversy_score",
    # Comments
    "add_comment",
    "child_depth",
    "get_comment_thread",
    "remove_comment",
    # Vote ledger
    "TargetType",
    "VoteAction",
    "VoteDirection",
    "VoteLedger",
    "VoteOutcome",
    "VoteTransition",
    "plan_vote",
]
