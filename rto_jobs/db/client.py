"""
Async Database Client

Uses SQLAlchemy 2.0 async sessions. Postgres (asyncpg) in production;
SQLite (aiosqlite) is accepted for local runs and tests.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool

from rto_jobs.config import Settings
from rto_jobs.db.models import Base

logger = structlog.get_logger()


class Database:
    """Engine + session factory owned by one process (or one test)."""

    def __init__(self, engine: AsyncEngine) -> None:
        self.engine = engine
        self._session_factory = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @classmethod
    def from_url(cls, database_url: str, *, echo: bool = False, **engine_kwargs: object) -> "Database":
        if database_url.startswith("sqlite"):
            # One connection per session; SQLite serializes writers itself.
            engine_kwargs.setdefault("poolclass", NullPool)
        engine = create_async_engine(database_url, echo=echo, **engine_kwargs)
        logger.info("Database engine initialized", url=database_url[:50] + "...")
        return cls(engine)

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        database_url = str(settings.database_url)
        engine_kwargs: dict[str, object] = {}
        if not database_url.startswith("sqlite"):
            engine_kwargs["pool_size"] = max(1, int(settings.db_pool_size))
            engine_kwargs["max_overflow"] = max(0, int(settings.db_pool_max_overflow))
            engine_kwargs["pool_timeout"] = max(1, int(settings.db_pool_timeout_seconds))
            engine_kwargs["pool_recycle"] = max(60, int(settings.db_pool_recycle_seconds))
            engine_kwargs["pool_pre_ping"] = True
        return cls.from_url(
            database_url,
            echo=settings.log_level == "DEBUG",
            **engine_kwargs,
        )

    async def create_schema(self) -> None:
        """Create any missing tables for the registered models."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        await self.engine.dispose()
        logger.info("Database engine disposed")

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """
        Transactional session scope.

        Usage:
            async with db.session() as session:
                await session.execute(...)

        Commits on clean exit, rolls back on error.
        """
        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()
