"""CRUD operations package.

- agent.py: Agent lookup and karma counter
- post.py: Post creation, feed listing and score counter
- comment.py: Comment creation, thread listing and score/tally counters
- vote.py: Conditional vote row writes and batch reads
"""

# Agent operations
from forum.app.db.crud.agent import (
    apply_karma_delta,
    create_agent,
    lookup_agent_by_hash,
)

# Post operations
from forum.app.db.crud.post import (
    apply_post_score_delta,
    create_post,
    find_post_author,
    get_post_by_id,
    increment_comment_count,
    list_posts,
)

# Comment operations
from forum.app.db.crud.comment import (
    DELETED_CONTENT,
    apply_comment_score_delta,
    controversy_order_expression,
    create_comment,
    find_comment_author,
    get_comment_by_id,
    get_comment_in_post,
    get_comment_record,
    list_comments_for_post,
    soft_delete_comment,
)

# Vote operations
from forum.app.db.crud.vote import (
    delete_vote,
    get_vote_row,
    get_vote_values,
    insert_vote,
    update_vote_value,
)

__all__ = [
    # Agent operations
    "apply_karma_delta",
    "create_agent",
    "lookup_agent_by_hash",
    # Post operations
    "apply_post_score_delta",
    "create_post",
    "find_post_author",
    "get_post_by_id",
    "increment_comment_count",
    "list_posts",
    # Comment operations
    "DELETED_CONTENT",
    "apply_comment_score_delta",
    "controversy_order_expression",
    "create_comment",
    "find_comment_author",
    "get_comment_by_id",
    "get_comment_in_post",
    "get_comment_record",
    "list_comments_for_post",
    "soft_delete_comment",
    # Vote operations
    "delete_vote",
    "get_vote_row",
    "get_vote_values",
    "insert_vote",
    "update_vote_value",
]
