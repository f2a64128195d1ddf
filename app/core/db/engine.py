"""
SQLite Database Engine Configuration for FastAPI.

Optimized for:
- A single writer node per store location with WAL mode
- Async operations via aiosqlite
- Safe concurrency with busy_timeout
- Foreign key enforcement
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, AsyncIterator, Optional
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import NullPool, StaticPool

from app.core.config import config as settings


def _get_engine_options(database_url: str) -> dict:
    """
    Get engine options based on database type.
    SQLite requires special handling for async and concurrency.
    """
    is_sqlite = database_url.startswith("sqlite")

    options = {
        "echo": False,
        "future": True,  # Use SQLAlchemy 2.0 features
    }

    if is_sqlite:
        # NullPool is required for aiosqlite - it doesn't support connection pooling
        # StaticPool can be used for in-memory databases
        if ":memory:" in database_url:
            options["poolclass"] = StaticPool
            options["connect_args"] = {"check_same_thread": False}
        else:
            options["poolclass"] = NullPool
    else:
        # PostgreSQL configuration (fallback)
        options["poolclass"] = NullPool if not settings.is_production else None

    return options


def _configure_sqlite_connection(dbapi_connection, connection_record):
    """
    Configure SQLite connection with optimal settings for concurrency.
    Called on every new connection to the database.

    Settings:
    - WAL mode: Allows concurrent reads during writes
    - busy_timeout: Wait up to 30s for locks instead of immediate failure
    - foreign_keys: Enforce referential integrity
    - synchronous=NORMAL: Good balance of safety and performance with WAL
    """
    cursor = dbapi_connection.cursor()

    cursor.execute("PRAGMA journal_mode=WAL")

    # Wait up to 30 seconds for locks before failing
    cursor.execute("PRAGMA busy_timeout=30000")

    # Enforce foreign key constraints (disabled by default in SQLite)
    cursor.execute("PRAGMA foreign_keys=ON")

    cursor.execute("PRAGMA synchronous=NORMAL")

    cursor.close()


def build_engine(database_url: str) -> AsyncEngine:
    """
    Create an async engine for the given URL.
    Registers the SQLite pragmas when the URL points at SQLite.
    """
    new_engine = create_async_engine(database_url, **_get_engine_options(database_url))

    if database_url.startswith("sqlite"):
        # For aiosqlite, we need to use the sync_engine's pool events
        @event.listens_for(new_engine.sync_engine, "connect")
        def set_sqlite_pragma(dbapi_connection, connection_record):
            _configure_sqlite_connection(dbapi_connection, connection_record)

    return new_engine


def build_session_factory(bind: AsyncEngine) -> async_sessionmaker:
    """Session factory bound to an engine."""
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,  # Manual control over flushing
    )


database_url = settings.database_url

engine = build_engine(database_url)

AsyncSessionLocal = build_session_factory(engine)


async def get_db_util() -> AsyncGenerator[AsyncSession, None]:
    """
    Database dependency for FastAPI.

    Transaction handling:
    - SQLite with WAL handles concurrency at the database level
    - Short transactions are key - commit quickly
    - Rollback on any exception
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()


@asynccontextmanager
async def session_scope(
    session_factory: Optional[async_sessionmaker] = None,
) -> AsyncIterator[AsyncSession]:
    """
    One short transaction outside of a request.
    Used by multi-step flows (finalize) that commit each step on its own.
    """
    factory = session_factory or AsyncSessionLocal
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def check_database_connection() -> bool:
    """
    Verify database connection is working.
    Useful for health checks and startup validation.
    """
    try:
        async with AsyncSessionLocal() as session:
            result = await session.execute(text("SELECT 1"))
            return result.scalar() == 1
    except Exception:
        return False
