"""
Base service class for the Arena Duel Engine.

Services that run outside a caller's transaction (the ledger's
administrative calls, the housekeeping sweeps) get a session scope and a
retry helper for SQLite's transient "database is locked" errors.
"""

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Awaitable, Callable, Tuple, Type, TypeVar

from sqlalchemy.exc import OperationalError
from sqlalchemy.ext.asyncio import AsyncSession

from arena.utils.logger import setup_logger

logger = setup_logger(__name__)

T = TypeVar("T")


class BaseService:
    """Base class for services that own their database sessions."""

    def __init__(self, session_factory):
        """
        Args:
            session_factory: async_sessionmaker from the Database class
        """
        self.session_factory = session_factory

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Commit on success, roll back on any exception."""
        session = self.session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def execute_with_retry(
        self,
        func: Callable[[], Awaitable[T]],
        max_retries: int = 3,
        retry_on: Tuple[Type[Exception], ...] = (OperationalError,)
    ) -> T:
        """Await func(), retrying lock timeouts with exponential backoff."""
        for attempt in range(max_retries):
            try:
                return await func()
            except retry_on as e:
                if attempt == max_retries - 1:
                    raise
                name = getattr(func, "__name__", repr(func))
                logger.warning(f"Retry {attempt + 1}/{max_retries - 1} for {name}: {e}")
                await asyncio.sleep(0.1 * (2 ** attempt))
