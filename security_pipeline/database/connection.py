"""Database connection and session management."""
import logging
from typing import Optional

from sqlalchemy.ext.asyncio import (
    create_async_engine,
    AsyncSession,
    AsyncEngine,
    async_sessionmaker,
)
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import NullPool

from security_pipeline.config import settings

logger = logging.getLogger(__name__)

# Base class for SQLAlchemy models
Base = declarative_base()

# Global engine and session factory
_engine: Optional[AsyncEngine] = None
_async_session_factory: Optional[async_sessionmaker[AsyncSession]] = None


def create_engine_for_url(database_url: str, echo: bool = False) -> AsyncEngine:
    """Create an async engine with pool settings suited to the backend.

    Args:
        database_url: Async SQLAlchemy URL
        echo: Log emitted SQL

    Returns:
        Async engine
    """
    if database_url.startswith("sqlite"):
        # SQLite has no server-side pool to size
        return create_async_engine(database_url, echo=echo, poolclass=NullPool)

    return create_async_engine(
        database_url,
        echo=echo,
        pool_size=settings.database_pool_size,
        max_overflow=settings.database_max_overflow,
        pool_recycle=settings.database_pool_recycle,
        pool_pre_ping=True,  # Verify connections before using
    )


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Build a session factory whose objects stay usable after commit."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


def get_engine() -> AsyncEngine:
    """Get or create the async database engine."""
    global _engine

    if _engine is None:
        _engine = create_engine_for_url(
            settings.database_url,
            echo=settings.debug and settings.is_development,
        )
        logger.info(f"Created async database engine for {settings.environment}")

    return _engine


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Get or create the async session factory."""
    global _async_session_factory

    if _async_session_factory is None:
        _async_session_factory = create_session_factory(get_engine())
        logger.info("Created async session factory")

    return _async_session_factory


async def init_db(engine: Optional[AsyncEngine] = None) -> None:
    """Initialize database schema (create all tables)."""
    engine = engine or get_engine()

    async with engine.begin() as conn:
        # Import all models to ensure they're registered
        from security_pipeline.database import models  # noqa: F401

        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database schema initialized")


async def close_db() -> None:
    """Close database connections."""
    global _engine, _async_session_factory

    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _async_session_factory = None
        logger.info("Database connections closed")
