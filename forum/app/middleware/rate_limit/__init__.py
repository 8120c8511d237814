"""Rate limiting for the forum API.

Every request is admitted against the general request quota by
RateLimitMiddleware. Routes that create content additionally depend on
RateLimitDependency for their own, stricter action class.
"""

from typing import Awaitable, Callable, Optional

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from forum.app.core.config import settings
from forum.app.core.logging import get_logger
from forum.app.core.security import extract_bearer_token
from forum.app.exceptions import InvalidOperationError, RateLimitedError

# Re-export models
from forum.app.middleware.rate_limit.models import (
    ActionClass,
    AdmissionDecision,
    RateLimit,
    WindowCount,
)
from forum.app.middleware.rate_limit.store import WindowCounterStore
from forum.app.middleware.rate_limit.controller import (
    ANONYMOUS_IDENTITY,
    AdmissionController,
    caller_identity,
    limits_from_settings,
    rate_limit_key,
)

logger = get_logger(__name__)

__all__ = [
    # Models
    "ActionClass",
    "AdmissionDecision",
    "RateLimit",
    "WindowCount",
    # Store and controller
    "WindowCounterStore",
    "AdmissionController",
    "ANONYMOUS_IDENTITY",
    "caller_identity",
    "limits_from_settings",
    "rate_limit_key",
    # Request layer
    "AgentResolver",
    "client_address",
    "client_identity",
    "get_admission_controller",
    "RateLimitDependency",
    "RateLimitMiddleware",
]

MAX_TOKEN_LENGTH = 512

# Resolves a bearer token to the id of the agent owning it, or None
AgentResolver = Callable[[str], Awaitable[Optional[str]]]


def client_address(request: Request, trusted_hops: Optional[int] = None) -> Optional[str]:
    """Network address of the caller.

    X-Forwarded-For is only honoured when trusted_hops proxies sit in front
    of the app. Each of them appends the address it received the request
    from, so the caller is trusted_hops entries from the right of the chain
    (the socket peer counted as the last entry). Entries further left are
    whatever the client chose to send.
    """
    if trusted_hops is None:
        trusted_hops = settings.rate_limit_trusted_proxy_hops

    peer = request.client.host if request.client else None
    forwarded = request.headers.get("X-Forwarded-For")
    if trusted_hops <= 0 or not forwarded:
        return peer

    chain = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
    if peer:
        chain.append(peer)
    if not chain:
        return None
    return chain[max(len(chain) - 1 - trusted_hops, 0)]


async def client_identity(request: Request) -> str:
    """Identity a request is counted under.

    A bearer token counts as identity only once it resolves to an agent,
    through the resolver on app.state.resolve_agent. Anything else is
    counted against the caller's address. The result is cached on the
    request so the route-level checks reuse the middleware's lookup.

    Raises:
        InvalidOperationError: If the bearer token is unreasonably long
    """
    cached = getattr(request.state, "rate_limit_identity", None)
    if cached is not None:
        return cached

    token = extract_bearer_token(request.headers.get("Authorization"))
    if token is not None and len(token) > MAX_TOKEN_LENGTH:
        raise InvalidOperationError(
            f"API key too long (max {MAX_TOKEN_LENGTH} characters)"
        )

    agent_id = None
    resolve_agent: Optional[AgentResolver] = getattr(request.app.state, "resolve_agent", None)
    if token and resolve_agent is not None:
        agent_id = await resolve_agent(token)

    identity = caller_identity(agent_id, client_address(request))
    request.state.rate_limit_identity = identity
    return identity


def get_admission_controller(request: Request) -> AdmissionController:
    return request.app.state.admission


class RateLimitDependency:
    """FastAPI dependency admitting the caller against one action class.

    Usage:
        @router.post("/posts", dependencies=[Depends(RateLimitDependency(ActionClass.POSTS))])
    """

    def __init__(self, action_class: ActionClass, message: str = "Rate limit exceeded"):
        self.action_class = action_class
        self.message = message

    async def __call__(self, request: Request, response: Response) -> AdmissionDecision:
        controller = get_admission_controller(request)
        decision = controller.check_action(
            await client_identity(request), self.action_class
        )

        if not decision.allowed:
            raise RateLimitedError(
                self.message,
                retry_after=decision.retry_after,
                headers=decision.headers(),
            )

        response.headers.update(decision.headers())
        request.state.rate_limit = decision
        return decision


class RateLimitMiddleware(BaseHTTPMiddleware):
    """Middleware admitting every request against the general quota.

    Rate limits are applied per authenticated agent if the bearer token
    resolves to one, otherwise per client address.
    """

    def __init__(self, app, controller: AdmissionController):
        super().__init__(app)
        self.controller = controller

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request with rate limiting."""
        try:
            identity = await client_identity(request)
        except InvalidOperationError as exc:
            return JSONResponse(status_code=exc.status_code, content=exc.to_response())

        decision = self.controller.check_action(identity, ActionClass.REQUESTS)

        if not decision.allowed:
            error = RateLimitedError(retry_after=decision.retry_after)
            return JSONResponse(
                status_code=error.status_code,
                content=error.to_response(),
                headers=decision.headers(),
            )

        response = await call_next(request)

        # A route-level check for a stricter class already set its own headers
        for name, value in decision.headers().items():
            response.headers.setdefault(name, value)

        return response
