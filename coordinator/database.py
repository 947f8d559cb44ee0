"""Database engine, session management and transient-error retry."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Any, TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from coordinator.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Seconds a SQLite connection waits on a locked database before raising.
SQLITE_BUSY_TIMEOUT = 30


def create_engine(
    settings: Settings,
) -> tuple[
    AsyncEngine,
    async_sessionmaker[AsyncSession],
]:
    """Create async engine and session factory.

    Returns (engine, session_factory) tuple.
    """
    connect_args: dict[str, Any] = {}
    if settings.database_url.startswith("sqlite"):
        connect_args["timeout"] = SQLITE_BUSY_TIMEOUT
    engine = create_async_engine(
        settings.database_url,
        echo=settings.debug,
        connect_args=connect_args,
    )
    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )
    return engine, session_factory


def supports_skip_locked(session: AsyncSession) -> bool:
    """Whether the bound dialect understands ``FOR UPDATE SKIP LOCKED``."""
    return session.get_bind().dialect.name in {"postgresql", "mysql", "mariadb", "oracle"}


async def run_with_retry(
    session: AsyncSession,
    operation: Callable[[AsyncSession], Awaitable[T]],
    *,
    attempts: int = 3,
    base_delay: float = 0.2,
) -> T:
    """Run ``operation`` and retry it on transient storage errors.

    The session is rolled back between attempts and the delay doubles after
    every failure. The last ``OperationalError`` propagates once ``attempts``
    is exhausted; the global handler turns it into a 503.
    """
    for attempt in range(1, attempts + 1):
        try:
            return await operation(session)
        except OperationalError as exc:
            await session.rollback()
            if attempt == attempts:
                raise
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning(
                "Transient database error (attempt %d/%d), retrying in %.2fs: %s",
                attempt,
                attempts,
                delay,
                exc,
            )
            await asyncio.sleep(delay)
    raise AssertionError("unreachable")
