"""Database session management."""

import logging
from collections.abc import AsyncGenerator, Iterator
from contextlib import asynccontextmanager, contextmanager
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from spindex.config import Settings
from spindex.domain.exceptions import PersistenceUnavailableError

logger = logging.getLogger(__name__)


# Hey future me - this is the ONE translation point from SQLAlchemy's connection failures to our
# PersistenceUnavailableError. The sync orchestrator catches exactly that class to fall back to
# upstream-only reads, so anything that means "the DB is not there" must end up here.
# IntegrityError and friends are NOT translated - those are bugs/races, not outages.
@contextmanager
def translate_db_errors() -> Iterator[None]:
    """Re-raise database connectivity failures as PersistenceUnavailableError."""
    try:
        yield
    except (OperationalError, InterfaceError) as exc:
        raise PersistenceUnavailableError(f"Database unavailable: {exc.orig or exc}") from exc
    except DBAPIError as exc:
        if exc.connection_invalidated:
            raise PersistenceUnavailableError(f"Database connection lost: {exc}") from exc
        raise
    except ConnectionError as exc:
        raise PersistenceUnavailableError(f"Database unreachable: {exc}") from exc


class Database:
    """Database connection and session manager."""

    def __init__(self, settings: Settings) -> None:
        """Initialize database with settings."""
        self.settings = settings

        engine_kwargs: dict[str, Any] = {
            "echo": settings.database.echo,
            "pool_pre_ping": settings.database.pool_pre_ping,
        }

        # Only apply pool settings for PostgreSQL
        if "postgresql" in settings.database.url:
            engine_kwargs.update(
                {
                    "pool_size": settings.database.pool_size,
                    "max_overflow": settings.database.max_overflow,
                    "pool_timeout": settings.database.pool_timeout,
                    "pool_recycle": settings.database.pool_recycle,
                }
            )
        elif "sqlite" in settings.database.url:
            engine_kwargs.update(
                {
                    "connect_args": {
                        "check_same_thread": False,
                        "timeout": 30,  # Wait up to 30s for lock
                    }
                }
            )

        self._engine = create_async_engine(settings.database.url, **engine_kwargs)
        self._session_factory = async_sessionmaker(
            self._engine,
            class_=AsyncSession,
            expire_on_commit=False,
        )

    # Listen up, every unit of work goes through here: commit on success, rollback on ANY error.
    # Connectivity errors raised anywhere inside the block (including the commit) come out as
    # PersistenceUnavailableError.
    @asynccontextmanager
    async def session_scope(self) -> AsyncGenerator[AsyncSession, None]:
        """Provide a transactional scope for database operations."""
        with translate_db_errors():
            async with self._session_factory() as session:
                try:
                    yield session
                    await session.commit()
                except Exception:
                    # Rollback on any exception - this is intentionally broad to ensure
                    # transaction integrity. All exceptions are re-raised for proper handling.
                    await session.rollback()
                    raise

    async def ping(self) -> bool:
        """Check the database answers a trivial query."""
        with translate_db_errors():
            async with self._engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        return True

    async def close(self) -> None:
        """Close database connection."""
        await self._engine.dispose()

    async def create_tables(self) -> None:
        """Create all tables (tests and first run without Alembic)."""
        from spindex.infrastructure.persistence.models import Base

        async with self._engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
