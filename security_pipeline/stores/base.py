"""Shared plumbing for the SQLAlchemy-backed stores."""
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from security_pipeline.exceptions import StoreUnavailableError

logger = logging.getLogger(__name__)


class BaseStore:
    """Store that opens one short-lived session per operation.

    Short sessions keep row-level writes from holding locks across
    unrelated awaits in concurrent pipeline chains.
    """

    name = "store"

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @asynccontextmanager
    async def _session(self, operation: str) -> AsyncGenerator[AsyncSession, None]:
        """Open a session and translate database errors.

        Args:
            operation: Operation name used in error messages

        Raises:
            StoreUnavailableError: If the database call fails
        """
        try:
            async with self.session_factory() as session:
                try:
                    yield session
                except SQLAlchemyError:
                    await session.rollback()
                    raise
        except SQLAlchemyError as e:
            logger.error(f"{self.name} {operation} failed: {e}")
            raise StoreUnavailableError(f"{self.name} unavailable during {operation}") from e
