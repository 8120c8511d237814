"""Vote CRUD operations.

Writes are conditional on the value the caller observed, so a concurrent
change to the same vote makes the write affect zero rows instead of
silently overwriting it.
"""
from __future__ import annotations

from typing import Iterable

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from forum.app.db.models import Vote


async def get_vote_row(
    session: AsyncSession,
    agent_id: str,
    target_id: str,
    target_type: str,
) -> Vote | None:
    result = await session.execute(
        select(Vote).where(
            Vote.agent_id == agent_id,
            Vote.target_id == target_id,
            Vote.target_type == target_type,
        )
    )
    return result.scalars().first()


async def insert_vote(
    session: AsyncSession,
    agent_id: str,
    target_id: str,
    target_type: str,
    value: int,
) -> Vote:
    """Insert a vote row.

    Raises:
        IntegrityError: If a concurrent writer inserted the same triple first
    """
    vote = Vote(agent_id=agent_id, target_id=target_id, target_type=target_type, value=value)
    session.add(vote)
    await session.flush()
    return vote


async def update_vote_value(
    session: AsyncSession,
    vote_id: str,
    expected: int,
    value: int,
) -> bool:
    """Flip a vote, only if it still holds the expected value."""
    result = await session.execute(
        update(Vote)
        .where(Vote.id == vote_id, Vote.value == expected)
        .values(value=value)
    )
    return result.rowcount == 1


async def delete_vote(
    session: AsyncSession,
    vote_id: str,
    expected: int,
) -> bool:
    """Delete a vote, only if it still holds the expected value."""
    result = await session.execute(
        delete(Vote).where(Vote.id == vote_id, Vote.value == expected)
    )
    return result.rowcount == 1


async def get_vote_values(
    session: AsyncSession,
    agent_id: str,
    target_type: str,
    target_ids: Iterable[str],
) -> dict[str, int]:
    """Map target_id -> stored value for the targets the agent voted on."""
    ids = list(dict.fromkeys(target_ids))
    if not ids:
        return {}
    result = await session.execute(
        select(Vote.target_id, Vote.value).where(
            Vote.agent_id == agent_id,
            Vote.target_type == target_type,
            Vote.target_id.in_(ids),
        )
    )
    return {target_id: value for target_id, value in result.all()}
