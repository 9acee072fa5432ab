"""
Database configuration and session management.
Uses SQLAlchemy async engine (asyncpg for PostgreSQL).
"""
from typing import Tuple

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker

from imagepipe.config import settings
from imagepipe.models.base import Base


def _engine_options(database_url: str) -> dict:
    options = {"echo": False, "future": True}
    if not database_url.startswith("sqlite"):
        options.update(pool_pre_ping=True, pool_size=10, max_overflow=20)
    return options


def create_engine_and_sessionmaker(database_url: str = None) -> Tuple[AsyncEngine, async_sessionmaker]:
    """
    Build an engine and session factory.

    Worker tasks call this inside their own event loop so the connection
    pool is never shared across loops.
    """
    url = database_url or settings.database_url
    new_engine = create_async_engine(url, **_engine_options(url))
    factory = async_sessionmaker(
        new_engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autocommit=False,
        autoflush=False,
    )
    return new_engine, factory


# API process engine
engine, AsyncSessionLocal = create_engine_and_sessionmaker()


async def get_db() -> AsyncSession:
    """
    Dependency for FastAPI routes to get database session.
    Usage: db: AsyncSession = Depends(get_db)
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


async def init_db():
    """
    Initialize database: create tables.
    Called on application startup.
    """
    from imagepipe.models.user import User  # noqa: F401
    from imagepipe.models.job import Job  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
