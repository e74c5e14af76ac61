"""Database — async engine, session scope and the FastAPI session dependency.

Invariants:
    - A session scope rolls back on any SQLAlchemy failure and always closes
    - SQLAlchemy failures surface as DatabaseError (core/errors.py) with the
      failing operation named; other exceptions propagate unchanged
    - db_manager is set by init_db() during the app lifespan; module code reads
      it through the module (database.db_manager) so tests can swap it

Design Decisions:
    - expire_on_commit=False: transcripts are read after commit in async code
    - Pool sizing only for server databases; SQLite keeps the driver's default pool
"""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.exc import (
    DBAPIError, IntegrityError, OperationalError, SQLAlchemyError,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from turnloop.core.errors import DatabaseError

logger = logging.getLogger(__name__)

# Most specific first: IntegrityError and OperationalError are DBAPIErrors
_FAILURES: tuple[tuple[type[SQLAlchemyError], str, str], ...] = (
    (IntegrityError, "commit", "integrity constraint violated"),
    (OperationalError, "execute", "connection or operational error"),
    (DBAPIError, "query", "database driver error"),
    (SQLAlchemyError, "unknown", "database operation failed"),
)


class DatabaseSessionManager:
    """Owns the engine and hands out rollback-on-failure sessions."""

    def __init__(
        self, database_url: str, pool_size: int = 20, max_overflow: int = 10,
    ):
        options: dict = {"pool_pre_ping": True}
        if not database_url.startswith("sqlite"):
            options.update(
                pool_size=pool_size, max_overflow=max_overflow, pool_recycle=3600,
            )
        self.engine = create_async_engine(database_url, **options)
        self._session_factory = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False,
        )

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        session = self._session_factory()
        try:
            yield session
        except SQLAlchemyError as e:
            await session.rollback()
            operation, reason = _describe(e)
            logger.error("Database %s failed: %s", operation, e,
                extra={"error_code": "DATABASE_ERROR"})
            raise DatabaseError(reason, operation) from e
        finally:
            await session.close()

    async def create_all(self) -> None:
        """Create tables without migrations (SQLite / local development)."""
        from turnloop.db.base import Base
        import turnloop.models  # noqa: F401  (registers tables on Base.metadata)

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Database tables ensured")

    async def health_check(self) -> bool:
        try:
            async with self.session() as db:
                await db.execute(text("SELECT 1"))
        except (DatabaseError, OSError) as e:
            logger.warning("Database health check failed: %s", e)
            return False
        return True

    async def dispose(self) -> None:
        await self.engine.dispose()


def _describe(error: SQLAlchemyError) -> tuple[str, str]:
    for error_type, operation, reason in _FAILURES:
        if isinstance(error, error_type):
            return operation, reason
    return "unknown", "database operation failed"


db_manager: DatabaseSessionManager | None = None


def init_db(database_url: str, **kwargs) -> DatabaseSessionManager:
    global db_manager
    db_manager = DatabaseSessionManager(database_url, **kwargs)
    return db_manager


async def close_db() -> None:
    global db_manager
    if db_manager is not None:
        await db_manager.dispose()
        db_manager = None


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency: one session per request."""
    if db_manager is None:
        raise RuntimeError("Database not initialized")
    async with db_manager.session() as session:
        yield session
