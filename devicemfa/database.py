"""Database configuration and session management."""

import logging
from typing import AsyncGenerator, Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

from devicemfa.config import settings

logger = logging.getLogger(__name__)

# Create declarative base for models
Base = declarative_base()


def build_engine(database_url: Optional[str] = None, **kwargs) -> AsyncEngine:
    """
    Create an async engine.

    SQLite connections wait up to ``settings.sqlite_busy_timeout`` seconds
    for the write lock, so two requests consuming the same credential
    serialize on the conditional update instead of failing with
    "database is locked".

    Args:
        database_url: Connection URL (defaults to ``settings.database_url``)
        **kwargs: Extra ``create_async_engine`` arguments (e.g. ``poolclass``)

    Returns:
        AsyncEngine: Configured engine
    """
    url = database_url or settings.database_url
    if url.startswith("sqlite"):
        kwargs.setdefault("connect_args", {"timeout": settings.sqlite_busy_timeout})
    kwargs.setdefault("pool_pre_ping", True)
    return create_async_engine(url, echo=settings.debug, future=True, **kwargs)


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    """Session factory with the options every credential operation relies on."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


# Create async engine for database operations
async_engine = build_engine()

# Create async session factory
AsyncSessionLocal = build_session_factory(async_engine)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency function to get database session.

    Yields:
        AsyncSession: Database session
    """
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Create all tables on ``engine`` (the application engine by default)."""
    engine = engine or async_engine
    async with engine.begin() as conn:
        # Import all models to ensure they are registered
        from devicemfa.models import challenge, device, one_time_code, security_log, user  # noqa: F401

        await conn.run_sync(Base.metadata.create_all)
    logger.info(f"Database schema ready ({engine.url.render_as_string(hide_password=True)})")


async def close_db() -> None:
    """Close database connections."""
    await async_engine.dispose()
