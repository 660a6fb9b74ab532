"""Async SQLAlchemy database setup."""

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from sqlalchemy.exc import InterfaceError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from app.config import Settings

logger = logging.getLogger(__name__)


def _has_pending_state(session: AsyncSession) -> bool:
    return bool(session.new or session.dirty or session.deleted)


async def _rollback_quietly(session: AsyncSession) -> None:
    try:
        await session.rollback()
    except Exception:
        logger.warning("Rollback also failed (connection likely closed)")


class Database:
    """Owns the connection pool and hands out short-lived sessions.

    Built once from ``Settings`` at startup and passed to whatever needs
    database access.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        engine: AsyncEngine | None = None,
    ) -> None:
        self.engine = engine or create_async_engine(
            settings.database_url,
            pool_size=settings.database_pool_size,
            max_overflow=settings.database_max_overflow,
            echo=settings.database_echo,
            pool_pre_ping=True,
            pool_recycle=300,  # Recycle connections every 5 min to avoid server-side timeouts
        )
        self.session_maker = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autocommit=False,
            autoflush=False,
        )

    @asynccontextmanager
    async def session_context(
        self,
        *,
        commit_on_exit: bool = True,
    ) -> AsyncGenerator[AsyncSession, None]:
        """Open a session; commit on clean exit when asked, roll back on error."""
        async with self.session_maker() as session:
            try:
                yield session
                if commit_on_exit:
                    await session.commit()
                elif session.in_transaction():
                    if _has_pending_state(session):
                        logger.warning(
                            "Discarding uncommitted ORM changes",
                            extra={"pending": len(session.new) + len(session.dirty) + len(session.deleted)},
                        )
                    await session.rollback()
            except InterfaceError as e:
                if not session.in_transaction() and not _has_pending_state(session):
                    # Connection closed after work already committed/rolled back.
                    logger.debug("Session connection already closed during cleanup, ignoring")
                    return
                logger.warning(f"Database interface error with active transaction: {repr(e)}, rolling back")
                await _rollback_quietly(session)
                raise
            except Exception as e:
                logger.warning(f"Database session error: {repr(e)}, rolling back")
                await _rollback_quietly(session)
                raise

    async def init_models(self) -> None:
        """Create tables if needed (development only; use Alembic elsewhere)."""
        logger.info("Initializing database tables")
        from app.models import Base

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self) -> None:
        """Close database connections."""
        logger.info("Closing database connections")
        await self.engine.dispose()
