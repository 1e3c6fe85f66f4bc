"""
Database session management with async SQLAlchemy 2.0.

Provides:
- Async engine shared by the API process and Celery workers
- Session factory handed to the task store
- Schema bootstrap for development and tests
"""

import logging

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import NullPool

from taskengine.config import settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Base class for all database models."""
    pass


class DatabaseManager:
    """
    Manages database engine and session lifecycle.

    One instance per process; call init() before use.
    """

    def __init__(self) -> None:
        self._engine: AsyncEngine | None = None
        self._session_factory: async_sessionmaker[AsyncSession] | None = None

    @property
    def is_initialized(self) -> bool:
        return self._engine is not None

    def init(self, database_url: str | None = None) -> None:
        """
        Initialize database engine and session factory.

        Called during application startup and at the start of each worker task.
        Safe to call more than once.
        """
        if self._engine is not None:
            return

        url = database_url or settings.database_url
        logger.info("Initializing database connection...")

        engine_kwargs: dict = {"echo": settings.db_echo and settings.is_development}
        if url.startswith("sqlite"):
            # File-backed SQLite: a fresh connection per checkout, writers wait on the lock
            engine_kwargs["poolclass"] = NullPool
            engine_kwargs["connect_args"] = {"timeout": 30}
        else:
            engine_kwargs["pool_pre_ping"] = True  # Verify connections before using
            if settings.is_development:
                engine_kwargs["poolclass"] = NullPool

        self._engine = create_async_engine(url, **engine_kwargs)

        self._session_factory = async_sessionmaker(
            bind=self._engine,
            class_=AsyncSession,
            expire_on_commit=False,  # Task rows are read after commit
            autoflush=False,
        )

        logger.info("Database connection initialized successfully")

    async def create_all(self) -> None:
        """Create missing tables (development and tests)."""
        # Import models so they register on Base.metadata
        import taskengine.models  # noqa: F401

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        """Dispose of pooled connections."""
        if self._engine:
            logger.info("Closing database connections...")
            await self._engine.dispose()
            self._engine = None
            self._session_factory = None
            logger.info("Database connections closed")

    @property
    def engine(self) -> AsyncEngine:
        """Get the database engine."""
        if not self._engine:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._engine

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        """Get the session factory."""
        if not self._session_factory:
            raise RuntimeError("Database not initialized. Call init() first.")
        return self._session_factory


# Global instance
db_manager = DatabaseManager()
