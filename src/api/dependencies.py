"""FastAPI dependency injection helpers."""

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession

from src.domain.safety import rider_identifier_hash
from src.infrastructure.change_feed import publish_changes
from src.infrastructure.database import async_session_factory
from src.infrastructure.redis_client import get_redis
from src.infrastructure.repositories import pop_changes
from src.infrastructure.routing_client import build_routing_client
from src.services.eta import EtaEstimator


async def publish_committed(changes) -> None:
    """Fan out committed changes; Redis errors are logged by the publisher."""
    if changes:
        await publish_changes(await get_redis(), changes)


async def get_db() -> AsyncSession:  # type: ignore[misc]
    """Yield an async DB session; commit on success, rollback on error."""
    async with async_session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        changes = pop_changes(session)
    await publish_committed(changes)


def get_eta_estimator() -> EtaEstimator:
    return EtaEstimator(build_routing_client())


def client_origin(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def rider_hash_for(request: Request, event_id: int, rider_name: str) -> str:
    return rider_identifier_hash(event_id, rider_name, client_origin(request))
