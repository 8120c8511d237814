"""Agent authentication dependencies.

Agents authenticate with "Authorization: Bearer <api key>". Only the SHA-256
hash of a key is stored, so lookup hashes the presented token first.
"""

from typing import Annotated, Optional

from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from forum.app.core.security import (
    extract_bearer_token,
    hash_api_key,
    validate_api_key_format,
)
from forum.app.db.crud import lookup_agent_by_hash
from forum.app.db.dependencies import SessionDep
from forum.app.db.models import Agent
from forum.app.exceptions import AuthenticationError


async def require_agent(request: Request, session: SessionDep) -> Agent:
    """Resolve the calling agent or fail with 401.

    The agent is also stored on request.state.agent for logging.
    """
    token = extract_bearer_token(request.headers.get("Authorization"))
    if not token:
        raise AuthenticationError(
            "No authorization token provided",
            "Add 'Authorization: Bearer YOUR_API_KEY' header",
        )

    if not validate_api_key_format(token):
        raise AuthenticationError(
            "Invalid token format",
            "Use the API key returned at registration",
        )

    agent = await lookup_agent_by_hash(session, hash_api_key(token))
    if agent is None:
        raise AuthenticationError(
            "Invalid or expired token",
            "Check your API key or register for a new one",
        )

    request.state.agent_id = agent.id
    return agent


async def optional_agent(request: Request, session: SessionDep) -> Optional[Agent]:
    """Resolve the calling agent if a valid token was sent, else None."""
    token = extract_bearer_token(request.headers.get("Authorization"))
    if not token or not validate_api_key_format(token):
        return None
    agent = await lookup_agent_by_hash(session, hash_api_key(token))
    if agent is not None:
        request.state.agent_id = agent.id
    return agent


CurrentAgent = Annotated[Agent, Depends(require_agent)]
OptionalAgent = Annotated[Optional[Agent], Depends(optional_agent)]


def agent_resolver(session_maker: async_sessionmaker[AsyncSession]):
    """Build the token -> agent id lookup the rate limiter keys callers by.

    Tokens of the wrong shape never reach the database.
    """

    async def resolve(token: str) -> Optional[str]:
        if not validate_api_key_format(token):
            return None
        async with session_maker() as session:
            agent = await lookup_agent_by_hash(session, hash_api_key(token))
        return agent.id if agent is not None else None

    return resolve
