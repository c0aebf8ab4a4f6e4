"""
Database Session Management - Async SQLAlchemy session factory.

Writes (usage, credits, settings) go to the primary; read-only endpoints may use
a replica when DATABASE_READ_URL is set.
"""

from collections.abc import AsyncGenerator

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from metering.config import settings

_engines: dict[str, AsyncEngine] = {}
_session_factories: dict[str, async_sessionmaker[AsyncSession]] = {}


def _create_engine(url: str) -> AsyncEngine:
    return create_async_engine(
        url,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_timeout=settings.database_pool_timeout,
        pool_recycle=settings.database_pool_recycle,
        pool_pre_ping=True,
        echo=settings.log_level == "DEBUG",
    )


def get_write_engine() -> AsyncEngine:
    """Get or create the write database engine (primary)."""
    if "write" not in _engines:
        _engines["write"] = _create_engine(settings.database_url)
    return _engines["write"]


def get_read_engine() -> AsyncEngine:
    """Get or create the read database engine (replica, falls back to primary)."""
    if settings.read_database_url == settings.database_url:
        return get_write_engine()
    if "read" not in _engines:
        _engines["read"] = _create_engine(settings.read_database_url)
    return _engines["read"]


def get_write_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the write session factory."""
    if "write" not in _session_factories:
        _session_factories["write"] = async_sessionmaker(
            get_write_engine(), class_=AsyncSession, expire_on_commit=False
        )
    return _session_factories["write"]


def get_read_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the read session factory."""
    if "read" not in _session_factories:
        _session_factories["read"] = async_sessionmaker(
            get_read_engine(), class_=AsyncSession, expire_on_commit=False
        )
    return _session_factories["read"]


async def get_write_db() -> AsyncGenerator[AsyncSession, None]:
    """
    FastAPI dependency for write database session.

    Usage:
        @router.post("/usage/consume")
        async def consume(db: AsyncSession = Depends(get_write_db)):
            ...
    """
    async with get_write_session_factory()() as session:
        yield session


async def get_read_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency for read database session."""
    async with get_read_session_factory()() as session:
        yield session


async def close_engines() -> None:
    """Close all database engines (for graceful shutdown)."""
    for engine in list(_engines.values()):
        await engine.dispose()
    _engines.clear()
    _session_factories.clear()
