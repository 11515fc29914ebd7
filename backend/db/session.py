"""
Canopy Database Session Management

Async SQLAlchemy engine, session factory, and the unit-of-work scope every
core operation runs inside.
"""

from contextlib import asynccontextmanager

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from core.config import get_settings

settings = get_settings()

engine = create_async_engine(
    settings.database_url,
    echo=settings.database_echo,
    pool_pre_ping=True,
)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Declarative base for all SQLAlchemy models."""
    pass


@asynccontextmanager
async def unit_of_work(session_factory: async_sessionmaker = AsyncSessionLocal):
    """
    Short-lived transaction scope.

    Commits when the block exits cleanly; any exception, cancellation
    included, rolls the whole unit back.
    """
    async with session_factory() as session:
        async with session.begin():
            yield session
