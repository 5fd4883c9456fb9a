"""Database engine and per-event transaction scope.

The indexer applies each event inside one ``DatabaseManager.get_async_session()``
block. The block commits when it exits normally and rolls back on any
exception, so an event's rows, balance changes and counters land together or
not at all.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from escrow_indexer.storage.models import Base

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

    from escrow_indexer.config import DatabaseSettings

logger = logging.getLogger(__name__)


def _normalize_async_database_url(database_url: str) -> str:
    if database_url.startswith("postgresql://"):
        logger.warning(
            "DATABASE_URL has no async driver; connecting with postgresql+asyncpg"
        )
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return database_url


def create_async_db_engine(database_url: str, **kwargs: Any) -> AsyncEngine:
    """Create an async engine, upgrading plain ``postgresql://`` URLs to asyncpg."""
    return create_async_engine(_normalize_async_database_url(database_url), **kwargs)


class DatabaseManager:
    """Owns the async engine and hands out transactional sessions.

    The engine is created lazily on first use. SQLite URLs (tests, local runs)
    skip the pool sizing options, which SQLite's pools do not accept.
    """

    def __init__(
        self,
        database_url: str,
        *,
        pool_size: int = 5,
        max_overflow: int = 10,
        echo: bool = False,
    ) -> None:
        self.database_url = database_url
        self._pool_size = pool_size
        self._max_overflow = max_overflow
        self._echo = echo

        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @classmethod
    def from_settings(cls, settings: DatabaseSettings, **kwargs: Any) -> DatabaseManager:
        return cls(settings.url, **kwargs)

    @property
    def engine(self) -> AsyncEngine:
        if self._engine is None:
            options: dict[str, Any] = {"echo": self._echo}
            if not self.database_url.startswith("sqlite"):
                options["pool_size"] = self._pool_size
                options["max_overflow"] = self._max_overflow
            self._engine = create_async_db_engine(self.database_url, **options)
        return self._engine

    @asynccontextmanager
    async def get_async_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Open a session whose transaction spans the ``async with`` block.

        Yields:
            SQLAlchemy AsyncSession instance.
        """
        if self._session_factory is None:
            self._session_factory = async_sessionmaker(bind=self.engine, expire_on_commit=False)

        session = self._session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def init_schema_async(self) -> None:
        """Create every table from the models.

        Used by tests and local runs; deployed databases are migrated with Alembic.
        """
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Ledger schema created on %s", self.engine.url.render_as_string(hide_password=True))

    async def dispose_async(self) -> None:
        """Dispose of the engine's pooled connections."""
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
        logger.info("Ledger database engine disposed")
