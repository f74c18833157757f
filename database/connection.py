"""
Database engine and sessions for the checkout engine.

Every unit of work (an API request, a sweep, a health check) opens its own
``AsyncSession`` from one process-wide factory. The checkout service
commits its own steps; ``session_scope`` only settles what is left over.
"""
from collections.abc import AsyncGenerator, AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from config import Settings, get_settings
from database.models import Base

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def engine_options(settings: Settings) -> dict[str, Any]:
    """
    Engine keyword arguments for the configured database.

    PostgreSQL gets a sized, pre-pinged pool and reports the application
    name to ``pg_stat_activity``. An in-memory SQLite database is one
    connection shared by every session, otherwise each session would see
    its own empty database.
    """
    url = make_url(settings.database_url)
    options: dict[str, Any] = {"echo": settings.database_echo}

    if url.get_backend_name() == "sqlite":
        if url.database in (None, "", ":memory:"):
            options.update(poolclass=StaticPool, connect_args={"check_same_thread": False})
        return options

    options.update(
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_pre_ping=True,
        pool_recycle=3600,
    )
    if url.get_driver_name() == "asyncpg":
        options["connect_args"] = {"server_settings": {"application_name": settings.app_name}}
    return options


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Session factory for checkout work on ``engine``.

    Rows loaded before one of the service's intermediate commits stay
    readable after it.
    """
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    """Process-wide engine, created from settings on first use."""
    global _engine
    if _engine is None:
        settings = get_settings()
        _engine = create_async_engine(settings.database_url, **engine_options(settings))
    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Process-wide session factory bound to ``get_engine()``."""
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(get_engine())
    return _session_factory


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncIterator[AsyncSession]:
    """
    One unit of work: commit on success, roll back if the body raises.

    Args:
        session_factory: Factory to open the session from (defaults to
            the process-wide one)
    """
    factory = session_factory or get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_db() -> AsyncGenerator[AsyncSession, Any]:
    """FastAPI dependency: one session per request."""
    async with session_scope() as session:
        yield session


async def init_db() -> None:
    """Create any missing tables; alembic owns schema changes."""
    engine = get_engine()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def close_db() -> None:
    """Dispose of the engine on shutdown."""
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
