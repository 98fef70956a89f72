from __future__ import annotations

import asyncio
import logging
import random
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Awaitable, Callable, Optional, TypeVar

from sqlalchemy import event
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from paydesk.config import settings
from paydesk.services.errors import PersistenceError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_engine: AsyncEngine | None = None
_SessionLocal: async_sessionmaker[AsyncSession] | None = None


def build_engine(db_url: str) -> AsyncEngine:
    if not db_url.startswith("sqlite"):
        # pool_pre_ping detects dead MySQL/MariaDB connections (asyncmy)
        return create_async_engine(db_url, pool_pre_ping=True)

    # busy timeout, seconds; concurrent writers queue instead of failing fast
    engine = create_async_engine(db_url, connect_args={"timeout": 30})

    @event.listens_for(engine.sync_engine, "connect")
    def _sqlite_connect(dbapi_connection, connection_record):
        # the driver's implicit BEGIN is replaced by ours below
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _sqlite_begin(conn):
        # write lock taken at BEGIN; other writers wait on the busy timeout
        conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def build_session_maker(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(bind=engine, expire_on_commit=False)


def get_engine() -> AsyncEngine:
    global _engine
    if _engine is None:
        if not settings.db_url:
            raise RuntimeError("DB_URL is not configured")
        _engine = build_engine(settings.db_url)
    return _engine


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    global _SessionLocal
    if _SessionLocal is None:
        _SessionLocal = build_session_maker(get_engine())
    return _SessionLocal


async def dispose_engine() -> None:
    global _engine, _SessionLocal
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _SessionLocal = None


@asynccontextmanager
async def session_scope(
    sessions: Optional[async_sessionmaker[AsyncSession]] = None,
) -> AsyncGenerator[AsyncSession, None]:
    """Plain session for read paths; callers commit explicitly if they write."""
    maker = sessions or get_session_maker()
    async with maker() as session:
        yield session


def _is_transient(exc: DBAPIError) -> bool:
    if isinstance(exc, OperationalError):
        return True
    return bool(getattr(exc, "connection_invalidated", False))


async def run_in_transaction(
    work: Callable[[AsyncSession], Awaitable[T]],
    *,
    sessions: Optional[async_sessionmaker[AsyncSession]] = None,
    op: str = "unit_of_work",
    attempts: Optional[int] = None,
) -> T:
    """Run ``work`` inside one database transaction.

    Everything ``work`` does through the session it receives commits or rolls
    back together. Domain exceptions raised by ``work`` roll the transaction
    back and propagate unchanged. Transient driver errors (lock timeouts,
    dropped connections) retry the whole unit with exponential backoff and
    surface as ``PersistenceError`` once attempts run out.
    """
    maker = sessions or get_session_maker()
    max_attempts = max(1, attempts or settings.db_retry_attempts)
    backoff = settings.db_retry_backoff
    for attempt in range(1, max_attempts + 1):
        try:
            async with maker() as session:
                async with session.begin():
                    return await work(session)
        except DBAPIError as e:
            if not _is_transient(e):
                raise
            if attempt < max_attempts:
                delay = backoff * (2 ** (attempt - 1)) + random.uniform(0, backoff)
                logger.warning(
                    "transient db error in %s, attempt %d/%d, sleeping %.2fs: %s",
                    op, attempt, max_attempts, delay, e.orig,
                )
                await asyncio.sleep(delay)
                continue
            logger.exception("db error in %s after %d attempts", op, attempt)
            raise PersistenceError(f"{op} failed after {attempt} attempts") from e
    raise PersistenceError(f"{op} failed without result")
