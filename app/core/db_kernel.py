"""Database kernel utilities for short-lived transactional work."""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from time import monotonic
from typing import TypeVar

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.database import Database
from app.core.db_retry import is_transient_connection_error
from app.core.exceptions import BackupServiceError

logger = logging.getLogger(__name__)

_ResultT = TypeVar("_ResultT")


class DbKernelError(RuntimeError):
    """Base error for DB kernel operations."""


class TransientDbError(DbKernelError):
    """Transient DB failure that can usually be retried."""


class ConflictError(DbKernelError):
    """Write conflict (usually integrity/unique constraint)."""

    def __init__(self, message: str, *, constraint: str | None = None) -> None:
        super().__init__(message)
        self.constraint = constraint


class PermanentDbError(DbKernelError):
    """Non-transient DB failure."""


_CONSTRAINT_IN_MESSAGE = re.compile(r'constraint "([^"]+)"')


def violated_constraint(exc: IntegrityError) -> str | None:
    """Name of the constraint an integrity error reports, when it names one."""
    orig = exc.orig
    # asyncpg errors carry the name directly; the SQLAlchemy adapter chains them.
    for candidate in (orig, getattr(orig, "__cause__", None)):
        name = getattr(candidate, "constraint_name", None)
        if isinstance(name, str) and name:
            return name
    match = _CONSTRAINT_IN_MESSAGE.search(str(orig) if orig is not None else str(exc))
    return match.group(1) if match else None


def translate_db_error(exc: Exception) -> DbKernelError:
    """Map a driver/ORM exception onto the kernel error hierarchy."""
    if isinstance(exc, DbKernelError):
        return exc
    if isinstance(exc, IntegrityError):
        return ConflictError(
            str(exc.orig) if exc.orig is not None else str(exc),
            constraint=violated_constraint(exc),
        )
    if is_transient_connection_error(exc):
        return TransientDbError(str(exc))
    return PermanentDbError(str(exc))


def _elapsed_ms(started: float) -> float:
    return round((monotonic() - started) * 1000, 2)


@asynccontextmanager
async def db_transaction(
    database: Database,
    *,
    operation_name: str,
) -> AsyncGenerator[AsyncSession, None]:
    """Yield a session whose work is rolled back unless committed explicitly.

    Application errors pass through untouched; everything else is translated
    into a ``DbKernelError`` subclass.
    """
    started = monotonic()
    try:
        async with database.session_context(commit_on_exit=False) as session:
            yield session
    except BackupServiceError:
        raise
    except Exception as exc:
        translated = translate_db_error(exc)
        logger.warning(
            "DB transaction failed",
            extra={
                "operation": operation_name,
                "duration_ms": _elapsed_ms(started),
                "failure_class": type(translated).__name__,
            },
        )
        if translated is exc:
            raise
        raise translated from exc
    logger.debug(
        "DB transaction completed",
        extra={"operation": operation_name, "duration_ms": _elapsed_ms(started)},
    )


async def run_with_retry(
    fn: Callable[[], Awaitable[_ResultT]],
    *,
    operation_name: str,
    attempts: int = 3,
    base_delay_seconds: float = 0.2,
) -> _ResultT:
    """Run a whole transaction, retrying it when it fails transiently."""
    if attempts < 1:
        raise ValueError("attempts must be >= 1")

    for attempt in range(1, attempts + 1):
        try:
            return await fn()
        except TransientDbError:
            if attempt == attempts:
                raise
            logger.warning(
                "Transient database error; retrying transaction",
                extra={
                    "operation": operation_name,
                    "attempt": attempt,
                    "max_attempts": attempts,
                },
            )
            await asyncio.sleep(base_delay_seconds * attempt)

    raise RuntimeError(f"DB retry loop exhausted unexpectedly: {operation_name}")
