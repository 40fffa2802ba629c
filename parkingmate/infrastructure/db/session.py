"""
Async SQLAlchemy database session configuration.

Provides async engine and session factory for MySQL using aiomysql
(SQLite through aiosqlite for local runs and tests).
"""

from collections.abc import AsyncGenerator

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from parkingmate.core.config import get_settings

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def get_engine() -> AsyncEngine:
    """
    Get or create the async database engine.

    Returns:
        AsyncEngine: SQLAlchemy async engine instance.
    """
    global _engine
    if _engine is None:
        settings = get_settings()
        options: dict = {"echo": settings.debug, "pool_pre_ping": True}
        if settings.database_url.startswith("mysql"):
            options["pool_recycle"] = 3600
        _engine = create_async_engine(settings.database_url, **options)
    return _engine


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """
    Build a session factory bound to ``engine``.

    Args:
        engine: Async engine.

    Returns:
        async_sessionmaker: Factory for creating async sessions.
    """
    return async_sessionmaker(
        bind=engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the application-wide session factory."""
    global _session_factory
    if _session_factory is None:
        _session_factory = create_session_factory(get_engine())
    return _session_factory


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency that provides an async database session.

    Usage with FastAPI:
        @router.get("/sessions")
        async def list_sessions(session: AsyncSession = Depends(get_session)):
            ...

    Yields:
        AsyncSession: Database session that auto-closes on exit.
    """
    session_factory = get_session_factory()
    async with session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def create_tables(engine: AsyncEngine) -> None:
    """Create every table known to the ORM metadata."""
    from parkingmate.infrastructure.db.models import Base

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def init_db() -> None:
    """
    Initialize database by creating all tables.

    Should be called during application startup.
    """
    await create_tables(get_engine())


async def ping_db(session_factory: async_sessionmaker[AsyncSession] | None = None) -> None:
    """
    Run a trivial query.

    Args:
        session_factory: Factory to ping; the application factory by default.

    Raises:
        SQLAlchemyError: If the database is unreachable.
    """
    factory = session_factory or get_session_factory()
    async with factory() as session:
        await session.execute(text("SELECT 1"))


async def close_db() -> None:
    """
    Close database connections.

    Should be called during application shutdown.
    """
    global _engine, _session_factory
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None
