"""Database configuration and session management.

The API runs on an asynchronous SQLAlchemy engine built from
``DATABASE_URL``. Dramatiq worker processes build their own engine with
:func:`create_worker_sessionmaker` because every actor message drives
its coroutine through a fresh event loop and pooled connections cannot
cross loops. When no URL is configured a local SQLite database may be
used in development if ``DB_DEV_FALLBACK_SQLITE`` is enabled.
"""

from __future__ import annotations

import logging
from typing import Any, AsyncGenerator, Optional

from sqlalchemy import event
from sqlalchemy.engine.url import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from fuelrefund.core.config import settings

logger = logging.getLogger(__name__)

SQLITE_FALLBACK_URL = "sqlite+aiosqlite:///./app.db"


def resolve_database_url(url: Optional[str] = None) -> str:
    """Return an async driver URL for ``url`` (or the configured one).

    Plain ``sqlite`` is upgraded to ``aiosqlite`` and the Postgres
    spellings are normalised to psycopg 3.
    """
    db_url = url or settings.DATABASE_URL
    if not db_url:
        if not settings.DB_DEV_FALLBACK_SQLITE:
            raise RuntimeError(
                "No DATABASE_URL provided; set DB_DEV_FALLBACK_SQLITE=true to use a local SQLite database."
            )
        return SQLITE_FALLBACK_URL
    url_obj = make_url(db_url)
    driver = url_obj.drivername or ""
    if driver == "sqlite":
        url_obj = url_obj.set(drivername="sqlite+aiosqlite")
    elif driver in {"postgres", "postgresql", "postgresql+psycopg2", "postgresql+asyncpg"}:
        url_obj = url_obj.set(drivername="postgresql+psycopg")
    return url_obj.render_as_string(hide_password=False)


def enable_sqlite_immediate_transactions(engine: AsyncEngine) -> None:
    """Make every SQLite transaction take the write lock up front.

    pysqlite defers ``BEGIN`` until the first write, so two sessions can
    both read a quota row and then deadlock upgrading their locks.
    Emitting ``BEGIN IMMEDIATE`` serialises writers instead.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # type: ignore[no-untyped-def]
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):  # type: ignore[no-untyped-def]
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(url: Optional[str] = None, **kwargs: Any) -> AsyncEngine:
    db_url = resolve_database_url(url)
    new_engine = create_async_engine(db_url, **kwargs)
    if new_engine.dialect.name == "sqlite":
        enable_sqlite_immediate_transactions(new_engine)
    return new_engine


def build_sessionmaker(bind: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(
        bind,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


engine = build_engine(echo=False, pool_pre_ping=True)
logger.info("Database engine created url=%s", engine.url.render_as_string(hide_password=True))

AsyncSessionLocal = build_sessionmaker(engine)

Base = declarative_base()


def create_worker_sessionmaker(url: Optional[str] = None) -> async_sessionmaker[AsyncSession]:
    """Session factory for worker processes (one connection per checkout)."""
    return build_sessionmaker(build_engine(url, poolclass=NullPool))


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a request-scoped session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db(bind: Optional[AsyncEngine] = None) -> None:
    """Create all tables defined on ``Base``.

    Production deployments run the Alembic migrations instead; this is
    used at development start-up and by the tests.
    """
    target = bind or engine
    async with target.begin() as conn:
        from fuelrefund.models import tables  # noqa: F401
        await conn.run_sync(Base.metadata.create_all)
