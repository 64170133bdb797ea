"""
Async database engine and session factory.

Uses SQLAlchemy 2.x async engine; the default URL targets SQLite through the
aiosqlite driver, but any async driver URL works. Unlike a web app there is
no module-level singleton: the daemon builds one engine at startup and
passes the session factory to the store.

CHANGELOG:
- 2026-10-18: Initial creation (STORY-012)
"""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from bms.src.db.models import Base


def create_engine(database_url: str) -> AsyncEngine:
    """Create an async SQLAlchemy engine.

    Args:
        database_url: SQLAlchemy URL with an async driver, e.g.
            ``sqlite+aiosqlite:////data/bms.db``.

    Returns:
        AsyncEngine: Configured async engine.
    """
    return create_async_engine(database_url, echo=False)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Create an async session factory bound to *engine*.

    Returns:
        async_sessionmaker: Factory for creating AsyncSession instances.
    """
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_schema(engine: AsyncEngine) -> None:
    """Create all tables that do not exist yet."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
