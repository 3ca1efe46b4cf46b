"""Async SQLAlchemy engine, session factory, and transaction runner.

Supports both PostgreSQL (production) and SQLite (local dev mode and tests).
Engine type is determined by the database URL scheme:
  - ``postgresql+asyncpg://`` → connection-pooled PostgreSQL engine
  - ``sqlite+aiosqlite://``   → single-connection SQLite engine

Every mutating ledger operation runs through :func:`run_in_transaction`,
which opens a fresh session, runs the callback under SERIALIZABLE isolation
on PostgreSQL, commits, and re-runs the whole callback when the database
reports a serialization failure or deadlock.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import TypeVar

from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from ledger_engine.retry import RetryConfig, async_retry_with_backoff

logger = logging.getLogger(__name__)

T = TypeVar("T")

TransactionCallback = Callable[[AsyncSession], Awaitable[T]]
TransactionRunner = Callable[[TransactionCallback[T]], Awaitable[T]]

# SQLSTATE codes PostgreSQL raises when a serializable transaction must be
# retried: serialization_failure and deadlock_detected.
RETRYABLE_SQLSTATES = frozenset({"40001", "40P01"})

# Cache of async_sessionmaker instances keyed by engine identity to avoid
# re-creating the factory on every session.
_session_factories: dict[int, async_sessionmaker[AsyncSession]] = {}

# SQLite is single-writer; writers on the same engine queue here instead of
# failing with "database is locked".
_sqlite_write_locks: weakref.WeakKeyDictionary[object, asyncio.Lock] = weakref.WeakKeyDictionary()


def get_engine(
    database_url: str,
    pool_size: int = 10,
    max_overflow: int = 20,
) -> AsyncEngine:
    """Create an async SQLAlchemy engine.

    Parameters
    ----------
    database_url:
        Connection string (PostgreSQL or SQLite scheme).
    pool_size:
        Number of persistent connections for PostgreSQL (ignored for SQLite).
    max_overflow:
        Maximum overflow connections for PostgreSQL (ignored for SQLite).

    Returns
    -------
    AsyncEngine
        A configured async engine ready for session creation.
    """
    if database_url.startswith("sqlite"):
        from ledger_engine.state.sqlite_adapter import get_local_engine

        # Extract path from URL: sqlite+aiosqlite:///path/to/db
        db_path = database_url.split("///", 1)[-1] if "///" in database_url else ":memory:"
        return get_local_engine(db_path if db_path else ":memory:")

    engine = create_async_engine(
        database_url,
        pool_size=pool_size,
        max_overflow=max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
        pool_timeout=10,
        echo=False,
        connect_args={
            "server_settings": {
                "statement_timeout": "30000",  # 30 s
                "lock_timeout": "10000",  # 10 s
            }
        },
    )
    logger.info(
        "Created async engine pool_size=%d max_overflow=%d",
        pool_size,
        max_overflow,
    )
    return engine


def _session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    engine_key = id(engine)
    factory = _session_factories.get(engine_key)
    if factory is None:
        factory = async_sessionmaker(engine, expire_on_commit=False)
        _session_factories[engine_key] = factory
    return factory


@asynccontextmanager
async def get_session(engine: AsyncEngine) -> AsyncGenerator[AsyncSession, None]:
    """Yield an async session with automatic commit/rollback semantics.

    On successful exit the session is committed.  If an exception propagates
    the session is rolled back before the error is re-raised.
    """
    session = _session_factory(engine)()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


def is_serialization_failure(exc: Exception) -> bool:
    """Return ``True`` when *exc* is a retryable isolation conflict.

    The asyncpg adapter exposes the SQLSTATE on the wrapped DBAPI error as
    ``sqlstate`` (psycopg uses ``pgcode``); the raw driver exception is
    chained as its cause.
    """
    if not isinstance(exc, DBAPIError):
        return False
    candidates = [exc.orig, getattr(exc.orig, "__cause__", None)]
    for candidate in candidates:
        if candidate is None:
            continue
        code = getattr(candidate, "sqlstate", None) or getattr(candidate, "pgcode", None)
        if code in RETRYABLE_SQLSTATES:
            return True
    return False


async def _run_once(engine: AsyncEngine, callback: TransactionCallback[T]) -> T:
    async with get_session(engine) as session:
        if engine.dialect.name == "postgresql":
            # Must be set before the first statement of the transaction.
            await session.connection(execution_options={"isolation_level": "SERIALIZABLE"})
        return await callback(session)


async def run_in_transaction(
    engine: AsyncEngine,
    callback: TransactionCallback[T],
    *,
    context: str = "ledger transaction",
    retry_config: RetryConfig | None = None,
) -> T:
    """Run *callback* inside one serializable transaction, retrying conflicts.

    Each attempt gets a fresh session.  The callback's writes are committed
    only when it returns; any exception rolls the attempt back.  Conflicts
    reported by the database re-run the whole callback with backoff, every
    other exception propagates unchanged.

    Parameters
    ----------
    engine:
        Engine to open sessions on.
    callback:
        ``async def callback(session) -> T``.  It must not commit.
    context:
        Label for log messages.
    retry_config:
        Backoff parameters; defaults to three retries starting at 50 ms.

    Returns
    -------
    T
        Whatever *callback* returned on the committed attempt.
    """
    config = retry_config or RetryConfig(max_retries=3, base_delay=0.05, max_delay=1.0)

    async def attempt() -> T:
        if engine.dialect.name != "sqlite":
            return await _run_once(engine, callback)
        lock = _sqlite_write_locks.setdefault(engine.sync_engine, asyncio.Lock())
        async with lock:
            return await _run_once(engine, callback)

    return await async_retry_with_backoff(
        attempt,
        config,
        (DBAPIError,),
        should_retry=is_serialization_failure,
        operation=context,
    )


def make_transaction_runner(
    engine: AsyncEngine,
    retry_config: RetryConfig | None = None,
) -> TransactionRunner:
    """Bind :func:`run_in_transaction` to *engine*.

    The returned callable is what the billing operations accept as their
    ``transaction`` collaborator: ``await transaction(callback)``.
    """

    async def transaction(callback: TransactionCallback[T], *, context: str = "ledger transaction") -> T:
        return await run_in_transaction(engine, callback, context=context, retry_config=retry_config)

    return transaction
