"""Async SQLAlchemy engine and session management."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncGenerator, AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TypeVar

import structlog
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ieco.errors import StoreUnavailableError

logger = structlog.get_logger()

T = TypeVar("T")

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


async def init_db(url: str) -> None:
    """Initialize the database engine and session factory."""
    global _engine, _session_factory  # noqa: PLW0603
    if url.startswith("sqlite"):
        _engine = create_async_engine(url, echo=False)
    else:
        _engine = create_async_engine(
            url,
            pool_size=20,
            max_overflow=10,
            pool_pre_ping=True,
            echo=False,
            connect_args={"statement_cache_size": 0},
        )
    _session_factory = async_sessionmaker(
        _engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


async def close_db() -> None:
    """Dispose of the database engine."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_engine() -> AsyncEngine:
    """Get the async engine instance."""
    if _engine is None:
        msg = "Database not initialized. Call init_db() first."
        raise RuntimeError(msg)
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get the session factory the core services are built on."""
    if _session_factory is None:
        msg = "Database not initialized. Call init_db() first."
        raise RuntimeError(msg)
    return _session_factory


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session (FastAPI dependency)."""
    async with get_session_factory()() as session:
        yield session


@asynccontextmanager
async def unit_of_work(
    session_factory: async_sessionmaker[AsyncSession],
    db: AsyncSession | None = None,
) -> AsyncIterator[AsyncSession]:
    """Yield a session inside a transaction.

    When ``db`` is given the caller owns the transaction and nothing is
    committed here. Otherwise a new session is opened and committed on a
    clean exit, rolled back on any exception.
    """
    if db is not None:
        yield db
        return
    async with session_factory() as session, session.begin():
        yield session


async def run_bounded(operation: str, fn: Callable[[], Awaitable[T]], timeout: float) -> T:
    """Run a store operation under a timeout.

    Timeouts and SQLAlchemy errors surface as StoreUnavailableError; the
    transaction opened inside ``fn`` has already rolled back by then.
    """
    try:
        return await asyncio.wait_for(fn(), timeout=timeout)
    except asyncio.TimeoutError as exc:
        logger.error("store_operation_timeout", operation=operation, timeout=timeout)
        msg = f"{operation} timed out"
        raise StoreUnavailableError(msg) from exc
    except SQLAlchemyError as exc:
        logger.error("store_operation_failed", operation=operation, error=str(exc))
        msg = f"{operation} failed"
        raise StoreUnavailableError(msg) from exc
