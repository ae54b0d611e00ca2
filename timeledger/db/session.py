"""Engine bootstrap and transaction scoping for the SQLite journal."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from timeledger.core.errors import StorageError
from timeledger.core.logging import get_logger
from timeledger.db.base import Base

# Registers every table on Base.metadata
from timeledger.db import models  # noqa: F401

logger = get_logger(__name__)

BUSY_TIMEOUT_MS = 5000


def _on_connect(dbapi_connection: Any, connection_record: Any) -> None:
    # The driver must not issue its own BEGIN; _on_begin does it
    dbapi_connection.isolation_level = None
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute(f"PRAGMA busy_timeout={BUSY_TIMEOUT_MS}")
    cursor.close()


def _on_begin(conn: Any) -> None:
    # Take the write lock up front so decision reads and writes are atomic
    conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_for(url: str, echo: bool = False) -> AsyncEngine:
    """Create an aiosqlite engine with the journal's connection settings."""
    engine = create_async_engine(url, echo=echo)
    event.listen(engine.sync_engine, "connect", _on_connect)
    event.listen(engine.sync_engine, "begin", _on_begin)
    return engine


async def init_models(engine: AsyncEngine) -> None:
    """Create any missing tables and indexes."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def _ensure_parent_dir(url: str) -> None:
    database = make_url(url).database
    if database and database != ":memory:":
        Path(database).expanduser().parent.mkdir(parents=True, exist_ok=True)


@asynccontextmanager
async def open_database(url: str, echo: bool = False) -> AsyncIterator[AsyncSession]:
    """
    Open the journal for one command invocation.

    Yields a single AsyncSession. The session is closed and the engine
    disposed on every exit path. Storage-layer failures escaping the block
    are re-raised as StorageError with the original chained.
    """
    engine: AsyncEngine | None = None
    session: AsyncSession | None = None
    try:
        _ensure_parent_dir(url)
        engine = create_engine_for(url, echo=echo)
        await init_models(engine)
        session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
        session = session_maker()
        logger.debug("Database opened", extra={"url": url})
        yield session
    except (SQLAlchemyError, OSError) as e:
        raise StorageError(f"Storage failure: {e}") from e
    finally:
        if session is not None:
            await session.close()
        if engine is not None:
            await engine.dispose()


@asynccontextmanager
async def transaction(db: AsyncSession) -> AsyncIterator[AsyncSession]:
    """
    Run a block as one transaction: commit on success, rollback on error.

    After a commit every instance is detached with its loaded state, so
    objects already returned to callers stay readable when a later
    transaction on the same AsyncSession rolls back (rollback expires
    whatever is still attached).
    """
    try:
        yield db
        await db.commit()
    except BaseException:
        await db.rollback()
        raise
    db.expunge_all()
