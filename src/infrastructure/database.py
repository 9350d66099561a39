"""
Async SQLAlchemy engine and session factory.

One session is one unit of work: multi-row engine operations (ride
transitions, batch creation and completion, no-show processing) commit or
roll back together.  The API opens a session per request; the no-show
sweeper opens one per expired ride.
"""

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from src.config import settings

engine = create_async_engine(
    settings.database_url,
    echo=False,
    pool_size=settings.db_pool_size,
    max_overflow=settings.db_max_overflow,
    pool_pre_ping=True,
)

async_session_factory = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Declarative base for the dispatch tables."""
