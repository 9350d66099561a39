"""
Shared test fixtures.

Uses an in-memory SQLite database (via aiosqlite) so tests run without
Docker / PostgreSQL / Redis.  The production models are used as-is; the
connection is configured so SQLite honours ``SAVEPOINT`` the way the
batch dispatcher relies on.
"""

from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator, Optional
from unittest.mock import AsyncMock, patch

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from src.domain.enums import DriverStatus, RideStatus
from src.infrastructure.database import Base
from src.infrastructure.models import DriverModel, EventModel, RideRequestModel


# ── Test DB (SQLite in-memory) ────────────────────────────────────────

TEST_DB_URL = "sqlite+aiosqlite:///:memory:"

test_engine = create_async_engine(
    TEST_DB_URL,
    echo=False,
    poolclass=StaticPool,
    connect_args={"check_same_thread": False},
)
TestSessionFactory = async_sessionmaker(
    test_engine, class_=AsyncSession, expire_on_commit=False
)


# pysqlite's own transaction handling breaks SAVEPOINT; emit BEGIN ourselves
@event.listens_for(test_engine.sync_engine, "connect")
def _disable_pysqlite_transactions(dbapi_connection, connection_record):
    dbapi_connection.isolation_level = None


@event.listens_for(test_engine.sync_engine, "begin")
def _emit_begin(conn):
    conn.exec_driver_sql("BEGIN")


T0 = datetime(2026, 5, 1, 22, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock for services that take ``clock=``."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now = self.now + timedelta(**delta)


# ── Builders ──────────────────────────────────────────────────────────


async def make_event(
    session: AsyncSession,
    *,
    access_code: str = "PARTY1",
    is_active: bool = True,
    batch_mode_enabled: bool = False,
) -> EventModel:
    event_row = EventModel(
        event_name="Spring Formal",
        organization_name="Test Org",
        access_code=access_code,
        start_time=T0 - timedelta(hours=1),
        end_time=T0 + timedelta(hours=5),
        is_active=is_active,
        batch_mode_enabled=batch_mode_enabled,
    )
    session.add(event_row)
    await session.flush()
    return event_row


async def make_driver(
    session: AsyncSession,
    event_id: int,
    *,
    name: Optional[str] = None,
    lat: Optional[float] = 30.0,
    lng: Optional[float] = -97.0,
    max_capacity: int = 4,
    load: int = 0,
    status: DriverStatus = DriverStatus.AVAILABLE,
) -> DriverModel:
    driver = DriverModel(
        event_id=event_id,
        driver_name=name or f"driver-{lat}-{lng}-{max_capacity}",
        is_online=status is not DriverStatus.OFFLINE,
        current_status=status,
        current_lat=lat,
        current_lng=lng,
        max_capacity=max_capacity,
        current_passenger_load=load,
    )
    session.add(driver)
    await session.flush()
    return driver


async def make_ride(
    session: AsyncSession,
    event_id: int,
    *,
    lat: float = 30.0,
    lng: float = -97.0,
    passengers: int = 1,
    created_at: Optional[datetime] = None,
    rider_hash: Optional[str] = None,
    status: RideStatus = RideStatus.WAITING,
) -> RideRequestModel:
    ride = RideRequestModel(
        event_id=event_id,
        rider_name="rider",
        pickup_address="Somewhere",
        pickup_lat=lat,
        pickup_lng=lng,
        passenger_count=passengers,
        status=status,
        rider_confirmed=False,
        rider_identifier_hash=rider_hash,
        created_at=created_at or T0,
    )
    session.add(ride)
    await session.flush()
    return ride


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def tables() -> AsyncGenerator[None, None]:
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def db_session(tables) -> AsyncGenerator[AsyncSession, None]:
    """Create tables, yield a session, then drop everything."""
    async with TestSessionFactory() as session:
        yield session


@pytest.fixture
def session_factory(tables) -> async_sessionmaker:
    return TestSessionFactory


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest_asyncio.fixture
async def client(tables) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient backed by SQLite; sweeper, Redis and provider stubbed out."""
    from src.api.middleware import limiter

    with (
        patch("src.workers.noshow_sweeper.start_sweep_loop", new_callable=AsyncMock),
        patch("src.workers.noshow_sweeper.stop_sweep_loop", new_callable=AsyncMock),
        patch("src.api.app.close_redis", new_callable=AsyncMock),
        patch("src.api.dependencies.publish_committed", new_callable=AsyncMock),
        patch("src.api.routes.safety.async_session_factory", TestSessionFactory),
        patch("src.api.routes.safety.publish_committed", new_callable=AsyncMock),
        patch("src.api.dependencies.build_routing_client", return_value=None),
        patch.object(limiter, "enabled", False),
    ):

        async def _test_db():
            async with TestSessionFactory() as session:
                try:
                    yield session
                    await session.commit()
                except Exception:
                    await session.rollback()
                    raise

        from src.api.app import create_app
        from src.api.dependencies import get_db

        app = create_app()
        app.dependency_overrides[get_db] = _test_db

        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as ac:
            yield ac
