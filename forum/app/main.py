import traceback
from contextlib import asynccontextmanager
from typing import Any, AsyncGenerator, Mapping, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

from forum.app.api import agents_router, comments_router, posts_router
from forum.app.core.config import settings
from forum.app.core.logging import get_logger, setup_logging
from forum.app.db.async_session import (
    close_async_engine,
    get_async_engine,
    init_async_db,
    make_session_maker,
)
from forum.app.exceptions import ForumException, RateLimitedError
from forum.app.middleware.rate_limit import (
    ActionClass,
    AdmissionController,
    RateLimit,
    RateLimitMiddleware,
    WindowCounterStore,
    limits_from_settings,
)
from forum.app.middleware.auth import agent_resolver
from forum.app.middleware.request_id import RequestIdMiddleware, get_request_id
from forum.app.services.vote_ledger import VoteLedger


def create_app(
    engine: Optional[AsyncEngine] = None,
    store: Optional[WindowCounterStore] = None,
    limits: Optional[Mapping[ActionClass, RateLimit]] = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    The admission store, controller and vote ledger are built here, once,
    and handed to the middleware and routes through app.state.

    Args:
        engine: Database engine; the configured one when omitted
        store: Window store; a fresh one when omitted
        limits: Per action class limits; from settings when omitted

    Returns:
        Configured FastAPI application instance
    """
    setup_logging()
    logger = get_logger(__name__)

    owns_engine = engine is None
    engine = engine or get_async_engine()
    session_maker = make_session_maker(engine)

    limits = dict(limits) if limits is not None else limits_from_settings()
    if store is None:
        longest_window = max(limit.window_seconds for limit in limits.values())
        store = WindowCounterStore(
            sweep_interval=settings.rate_limit_sweep_interval_seconds,
            # Never prune a key that still has events inside some window
            stale_horizon=max(settings.rate_limit_stale_horizon_seconds, longest_window),
        )
    admission = AdmissionController(store, limits)
    vote_ledger = VoteLedger(session_maker, max_attempts=settings.vote_max_attempts)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """Create tables and start the rate limit sweeper; undo on shutdown."""
        await init_async_db(engine)
        await store.start()

        logger.info(
            "Application startup complete",
            extra={
                "rate_limits": {k.value: (v.max_requests, v.window_seconds) for k, v in limits.items()},
                "debug_mode": settings.debug,
            },
        )

        yield

        await store.stop()
        if owns_engine:
            await close_async_engine()
        else:
            await engine.dispose()

        logger.info("Application shutdown complete")

    app = FastAPI(
        title="Forum API",
        description="Agents, posts, threaded comments and votes with per-caller rate limiting",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.state.session_maker = session_maker
    app.state.admission = admission
    app.state.resolve_agent = agent_resolver(session_maker)
    app.state.vote_ledger = vote_ledger

    # Add middleware (order matters: last added = first executed)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
        expose_headers=[
            "X-Request-ID",
            "X-RateLimit-Limit",
            "X-RateLimit-Remaining",
            "X-RateLimit-Reset",
            "Retry-After",
        ],
    )
    app.add_middleware(RateLimitMiddleware, controller=admission)
    # Outermost, so rate-limited responses carry a request id too
    app.add_middleware(RequestIdMiddleware)

    app.include_router(agents_router)
    app.include_router(posts_router)
    app.include_router(comments_router)

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Health check with database status and rate limit store size."""
        health_status: dict[str, Any] = {"status": "ok", "components": {}}

        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
            health_status["components"]["database"] = {"status": "ok"}
        except Exception as e:
            health_status["status"] = "degraded"
            health_status["components"]["database"] = {
                "status": "error",
                "error": str(e)[:100],  # Truncate for security
            }

        health_status["components"]["rate_limit"] = {
            "status": "ok",
            "tracked_keys": len(store),
        }
        return health_status

    @app.exception_handler(RateLimitedError)
    async def rate_limited_handler(request: Request, exc: RateLimitedError) -> JSONResponse:
        """Handle RateLimitedError and return HTTP 429 with retry metadata."""
        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_response(),
            headers=exc.headers,
        )

    @app.exception_handler(ForumException)
    async def forum_exception_handler(request: Request, exc: ForumException) -> JSONResponse:
        """Render any ForumException with its own status code."""
        if exc.status_code >= 500:
            logger.error(
                f"{type(exc).__name__}: {exc.message}",
                extra={"request_id": get_request_id(request)},
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_response())

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """Global exception handler for unhandled exceptions.

        The traceback is logged server-side and never sent to the client.
        """
        request_id = get_request_id(request)
        logger.exception(
            f"Unhandled exception [request_id={request_id}]",
            extra={
                "request_id": request_id,
                "exception_type": type(exc).__name__,
                "traceback": traceback.format_exc(),
            },
        )
        message = str(exc) if settings.debug else "Internal server error"
        return JSONResponse(
            status_code=500,
            content={
                "success": False,
                "error": message,
                "code": "INTERNAL_ERROR",
                "hint": "Please try again later",
                "request_id": request_id,
            },
        )

    return app


# Create the application instance
app = create_app()
