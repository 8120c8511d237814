"""Agent CRUD operations."""
from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from forum.app.db.models import Agent


async def create_agent(
    session: AsyncSession,
    name: str,
    api_key_hash: str,
    display_name: str | None = None,
) -> Agent:
    """Add a new agent and flush it so uniqueness conflicts surface early.

    Raises:
        IntegrityError: If the name is already taken
    """
    agent = Agent(name=name, api_key_hash=api_key_hash, display_name=display_name, karma=0)
    session.add(agent)
    await session.flush()
    return agent


async def lookup_agent_by_hash(session: AsyncSession, api_key_hash: str) -> Agent | None:
    """Find the agent owning an API key hash."""
    result = await session.execute(
        select(Agent).where(Agent.api_key_hash == api_key_hash)
    )
    return result.scalars().first()


async def apply_karma_delta(
    session: AsyncSession,
    agent_id: str,
    delta: int,
) -> tuple[int, str] | None:
    """Atomically add delta to an agent's karma.

    A single UPDATE with RETURNING, so concurrent votes on the same author's
    content never lose an increment.

    Returns:
        (new_karma, agent_name), or None if the agent does not exist
    """
    result = await session.execute(
        update(Agent)
        .where(Agent.id == agent_id)
        .values(karma=Agent.karma + delta)
        .returning(Agent.karma, Agent.name)
    )
    row = result.fetchone()
    if row is None:
        return None
    return row[0], row[1]
