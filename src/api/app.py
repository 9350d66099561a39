"""
FastAPI application factory.

* Registers routes for events, rides, drivers, dispatch, batches, safety
  and admin.
* Maps engine errors onto HTTP status codes.
* Starts / stops the background no-show sweeper via lifespan events.
* Applies rate-limiting middleware.
* Swagger / OpenAPI UI available at ``/docs``.
"""

from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.exc import SQLAlchemyError

from src.api.middleware import limiter
from src.api.routes import admin, batches, dispatch, drivers, events, rides, safety
from src.config import settings
from src.domain.entities import (
    CapacityExceeded,
    ConsentRequired,
    CooldownActive,
    DispatchError,
    EventInactive,
    InvalidRideRequest,
    InvalidTransition,
    NotFound,
)
from src.infrastructure.redis_client import close_redis
from src.workers import noshow_sweeper as _sweeper

logging.basicConfig(level=settings.log_level)
logger = logging.getLogger(__name__)

_STATUS_BY_ERROR: list[tuple[type[DispatchError], int]] = [
    (NotFound, 404),
    (InvalidTransition, 409),
    (CapacityExceeded, 409),
    (EventInactive, 409),
    (InvalidRideRequest, 422),
    (ConsentRequired, 403),
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the sweeper on startup; stop it and the Redis pool on shutdown."""
    if settings.noshow_sweep_enabled:
        await _sweeper.start_sweep_loop()
    yield
    if settings.noshow_sweep_enabled:
        await _sweeper.stop_sweep_loop()
    await close_redis()


async def _dispatch_error_handler(request: Request, exc: DispatchError):
    if isinstance(exc, CooldownActive):
        return JSONResponse(
            status_code=429,
            content={"detail": str(exc), "remaining_minutes": exc.remaining_minutes},
        )
    for error_cls, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_cls):
            return JSONResponse(status_code=status_code, content={"detail": str(exc)})
    logger.error("Unmapped dispatch error on %s: %s", request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": str(exc)})


async def _database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("Database error on %s: %s", request.url.path, exc)
    return JSONResponse(
        status_code=503, content={"detail": "Database temporarily unavailable"}
    )


def create_app() -> FastAPI:
    app = FastAPI(
        title="Ralli Dispatch API",
        description=(
            "Dispatches sober rides for parties and events.  Matches waiting "
            "riders to the nearest driver, batches nearby pickups into "
            "multi-stop trips, and enforces no-show cooldowns."
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    # Rate limiter
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Engine errors
    app.add_exception_handler(DispatchError, _dispatch_error_handler)
    app.add_exception_handler(SQLAlchemyError, _database_error_handler)

    # Routers
    for module in (events, rides, drivers, dispatch, batches, safety, admin):
        app.include_router(module.router, prefix="/api/v1")

    return app
