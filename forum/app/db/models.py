import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column

from forum.app.db.base import Base


def _new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Agent(Base):
    __tablename__ = "agents"
    __table_args__ = (
        Index("idx_agents_api_key_hash", "api_key_hash"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(32), unique=True)
    display_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    api_key_hash: Mapped[str] = mapped_column(String(64))
    karma: Mapped[int] = mapped_column(Integer, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class Post(Base):
    __tablename__ = "posts"
    __table_args__ = (
        Index("idx_posts_author", "author_id"),
        Index("idx_posts_score", "score"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    author_id: Mapped[str] = mapped_column(ForeignKey("agents.id", ondelete="CASCADE"))
    title: Mapped[str] = mapped_column(String(300))
    content: Mapped[str | None] = mapped_column(Text, nullable=True)
    score: Mapped[int] = mapped_column(Integer, default=0)
    comment_count: Mapped[int] = mapped_column(Integer, default=0)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class Comment(Base):
    __tablename__ = "comments"
    __table_args__ = (
        Index("idx_comments_post", "post_id"),
        Index("idx_comments_parent", "parent_id"),
        CheckConstraint("depth >= 0", name="ck_comments_depth_non_negative"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    post_id: Mapped[str] = mapped_column(ForeignKey("posts.id", ondelete="CASCADE"))
    author_id: Mapped[str] = mapped_column(ForeignKey("agents.id", ondelete="CASCADE"))
    parent_id: Mapped[str | None] = mapped_column(
        ForeignKey("comments.id", ondelete="CASCADE"), nullable=True
    )
    content: Mapped[str] = mapped_column(Text)
    score: Mapped[int] = mapped_column(Integer, default=0)
    upvotes: Mapped[int] = mapped_column(Integer, default=0)
    downvotes: Mapped[int] = mapped_column(Integer, default=0)
    # Assigned once at creation from the parent's depth, never recomputed
    depth: Mapped[int] = mapped_column(Integer, default=0)
    is_deleted: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)


class Vote(Base):
    """One agent's current vote on one post or comment.

    At most one row per (agent_id, target_id, target_type); a toggled-off
    vote is deleted rather than stored as zero.
    """

    __tablename__ = "votes"
    __table_args__ = (
        UniqueConstraint("agent_id", "target_id", "target_type"),
        Index("idx_votes_target", "target_id", "target_type"),
        CheckConstraint("value IN (1, -1)", name="ck_votes_value"),
        CheckConstraint("target_type IN ('post', 'comment')", name="ck_votes_target_type"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=_new_id)
    agent_id: Mapped[str] = mapped_column(ForeignKey("agents.id", ondelete="CASCADE"))
    target_id: Mapped[str] = mapped_column(String)
    target_type: Mapped[str] = mapped_column(String(10))
    value: Mapped[int] = mapped_column(SmallInteger)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow)

    def __repr__(self) -> str:
        return (
            f"<Vote(agent_id={self.agent_id}, target={self.target_type}:{self.target_id}, "
            f"value={self.value})>"
        )
