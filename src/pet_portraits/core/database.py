"""Database engine and session management."""

from collections.abc import AsyncIterator
from typing import Any

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from pet_portraits.core.config import settings


def _get_engine_kwargs(database_url: str) -> dict[str, Any]:
    """Get engine kwargs based on database type."""
    kwargs: dict[str, Any] = {"echo": settings.debug}

    # SQLite doesn't support connection pooling options
    if not database_url.startswith("sqlite"):
        kwargs.update(
            {
                "pool_size": 5,
                "max_overflow": 10,
                "pool_pre_ping": True,
            }
        )

    return kwargs


def build_engine(database_url: str) -> AsyncEngine:
    """Create an async engine for the given URL."""
    return create_async_engine(database_url, **_get_engine_kwargs(database_url))


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create a session factory whose objects survive commit.

    Background jobs read attributes after committing, so instances must not
    expire on commit.
    """
    return async_sessionmaker(bind, class_=AsyncSession, expire_on_commit=False)


engine = build_engine(settings.database_url)

async_session_factory = build_session_factory(engine)


async def get_session() -> AsyncIterator[AsyncSession]:
    """Get a database session."""
    async with async_session_factory() as session:
        yield session


async def close_database() -> None:
    """Close database connections."""
    await engine.dispose()
