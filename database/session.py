"""
Async database session management for the Lead Engagement Engine.

Provides the async engine and session factory wrapped in a ``Database``
object that is created once at startup and passed to whoever needs it.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

from sqlalchemy.ext.asyncio import (
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
    AsyncEngine,
)
from sqlalchemy.pool import StaticPool

from .models import Base

logger = logging.getLogger(__name__)


def normalize_database_url(database_url: str) -> str:
    """Ensure the URL uses an async driver (asyncpg / aiosqlite)."""
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if database_url.startswith("sqlite://"):
        return database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return database_url


class Database:
    """Owns the async engine and session factory."""

    def __init__(self, database_url: str, pool_size: int = 5, max_overflow: int = 10):
        """
        Args:
            database_url: PostgreSQL or SQLite connection string
            pool_size: Connection pool size (ignored for SQLite)
            max_overflow: Max overflow connections (ignored for SQLite)
        """
        self.url = normalize_database_url(database_url)

        if self.url.startswith("sqlite"):
            # In-memory SQLite must share one connection across sessions
            kwargs = {"connect_args": {"check_same_thread": False}}
            if ":memory:" in self.url or self.url.endswith("://"):
                kwargs["poolclass"] = StaticPool
        else:
            kwargs = {"pool_size": pool_size, "max_overflow": max_overflow}

        self.engine: AsyncEngine = create_async_engine(self.url, echo=False, **kwargs)
        self.session_factory: async_sessionmaker[AsyncSession] = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    async def create_all(self):
        """Create tables (use Alembic in production)."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database initialized")

    async def close(self):
        await self.engine.dispose()
        logger.info("Database connection closed")

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        """Transactional scope: commit on success, roll back on error."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise


async def init_db(database_url: str, pool_size: int = 5, max_overflow: int = 10) -> Database:
    """Create a ``Database`` and its tables."""
    database = Database(database_url, pool_size=pool_size, max_overflow=max_overflow)
    await database.create_all()
    return database
