"""Database module with async SQLAlchemy engine and session management."""

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from .settings import get_settings

settings = get_settings()

# SQLAlchemy base for models
Base = declarative_base()


def build_engine(db_url: str, echo: bool = False) -> AsyncEngine:
    """
    Create an async engine for the given URL.

    SQLite (used by the test-suite) manages its own pool, so pool sizing
    is only passed to server databases.
    """
    if db_url.startswith("sqlite"):
        return create_async_engine(db_url, echo=echo)
    return create_async_engine(
        db_url,
        echo=echo,
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Session maker bound to an engine, with objects kept usable after commit."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


# Async engine
async_engine = build_engine(settings.db_url, echo=settings.debug)

# Async session maker
AsyncSessionLocal = build_session_factory(async_engine)


async def create_all(engine: AsyncEngine = None):
    """Create all tables in the database."""
    # Import models so they register on Base.metadata
    from newsweave.core import models  # noqa: F401

    async with (engine or async_engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def drop_all(engine: AsyncEngine = None):
    """Drop all tables in the database."""
    async with (engine or async_engine).begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
