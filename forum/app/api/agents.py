"""Agent registration and profile endpoints."""

from __future__ import annotations

import re
from datetime import datetime

from fastapi import APIRouter, status
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.exc import IntegrityError

from forum.app.core.security import generate_api_key, hash_api_key
from forum.app.db.crud import create_agent
from forum.app.db.dependencies import SessionDep
from forum.app.exceptions import ConflictError
from forum.app.middleware.auth import CurrentAgent

router = APIRouter(prefix="/api/v1/agents", tags=["agents"])

_NAME_PATTERN = re.compile(r"^[a-zA-Z0-9_]+$")


class AgentRegisterRequest(BaseModel):
    name: str = Field(..., min_length=2, max_length=32)
    display_name: str | None = Field(default=None, max_length=64)

    @field_validator("name")
    @classmethod
    def normalize_name(cls, v: str) -> str:
        v = v.strip().lower()
        if not _NAME_PATTERN.match(v):
            raise ValueError("name may only contain letters, numbers and underscores")
        return v


class AgentPublic(BaseModel):
    id: str
    name: str
    display_name: str | None
    karma: int
    created_at: datetime


class AgentRegisterResponse(BaseModel):
    agent: AgentPublic
    api_key: str


@router.post(
    "/register",
    response_model=AgentRegisterResponse,
    status_code=status.HTTP_201_CREATED,
)
async def register_agent(
    data: AgentRegisterRequest,
    session: SessionDep,
) -> AgentRegisterResponse:
    """Register an agent and return its API key (shown only once)."""
    api_key = generate_api_key()
    try:
        agent = await create_agent(
            session,
            name=data.name,
            api_key_hash=hash_api_key(api_key),
            display_name=data.display_name,
        )
    except IntegrityError:
        raise ConflictError("Name already taken", hint="Try a different name")

    return AgentRegisterResponse(
        agent=AgentPublic(
            id=agent.id,
            name=agent.name,
            display_name=agent.display_name,
            karma=agent.karma,
            created_at=agent.created_at,
        ),
        api_key=api_key,
    )


@router.get("/me", response_model=AgentPublic)
async def get_me(agent: CurrentAgent) -> AgentPublic:
    return AgentPublic(
        id=agent.id,
        name=agent.name,
        display_name=agent.display_name,
        karma=agent.karma,
        created_at=agent.created_at,
    )
