"""Async engine and unit-of-work sessions for the gap store.

PostgreSQL is the production target. SQLite (via aiosqlite) is accepted
for local runs and tests; its schema is created on demand instead of
through alembic.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from futures_gap_monitor.storage.models import Base

logger = logging.getLogger(__name__)

_SYNC_TO_ASYNC_DRIVERS = {
    "postgresql://": "postgresql+asyncpg://",
    "sqlite://": "sqlite+aiosqlite://",
}


def to_async_url(database_url: str) -> str:
    """Swap a sync driver prefix for its async counterpart."""
    for sync_prefix, async_prefix in _SYNC_TO_ASYNC_DRIVERS.items():
        if database_url.startswith(sync_prefix):
            logger.warning("DATABASE_URL uses %s; switching to %s", sync_prefix, async_prefix)
            return async_prefix + database_url[len(sync_prefix) :]
    return database_url


def build_engine(database_url: str, *, pool_size: int = 5, max_overflow: int = 10, echo: bool = False) -> AsyncEngine:
    """Create the async engine, dropping pool sizing for SQLite."""
    url = to_async_url(database_url)
    options: dict[str, Any] = {"echo": echo}
    if not url.startswith("sqlite"):
        options.update(pool_size=pool_size, max_overflow=max_overflow, pool_pre_ping=True)
    return create_async_engine(url, **options)


class DatabaseManager:
    """Owns the engine and hands out committed-or-rolled-back sessions.

    The engine is created lazily so that constructing the manager never
    touches the network.
    """

    def __init__(
        self,
        database_url: str,
        *,
        pool_size: int = 5,
        max_overflow: int = 10,
        echo: bool = False,
    ) -> None:
        self.database_url = to_async_url(database_url)
        self._engine_options = {"pool_size": pool_size, "max_overflow": max_overflow, "echo": echo}
        self._engine: AsyncEngine | None = None
        self._sessions: async_sessionmaker[AsyncSession] | None = None

    @classmethod
    def from_engine(cls, engine: AsyncEngine) -> DatabaseManager:
        """Wrap an engine created elsewhere, e.g. an in-memory SQLite one."""
        manager = cls(engine.url.render_as_string(hide_password=False))
        manager._engine = engine
        return manager

    @property
    def is_sqlite(self) -> bool:
        return self.database_url.startswith("sqlite")

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            self._engine = build_engine(self.database_url, **self._engine_options)
        return self._engine

    @asynccontextmanager
    async def get_async_session(self) -> AsyncIterator[AsyncSession]:
        """Yield a session that commits when the block exits cleanly.

        Any exception rolls the whole unit of work back and is re-raised.
        """
        if self._sessions is None:
            self._sessions = async_sessionmaker(bind=self.engine, expire_on_commit=False)

        async with self._sessions() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def ensure_schema(self) -> None:
        """Create any missing tables. Used for SQLite; PostgreSQL goes through alembic."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Schema ensured on %s", self.engine.url.render_as_string(hide_password=True))

    async def dispose_async(self) -> None:
        """Close pooled connections; the next session recreates the engine."""
        if self._engine is not None:
            await self._engine.dispose()
        self._engine = None
        self._sessions = None
        logger.info("Database connections disposed")
