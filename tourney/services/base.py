"""
Base service class for the tournament engine.

Provides async database session management and retry logic for service
layer operations.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Callable, Any, Tuple, Type
from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from tourney.utils.exceptions import StorageUnavailable

logger = logging.getLogger(__name__)

# Conflicting appends and transient lock errors; anything else propagates immediately
RETRYABLE_ERRORS: Tuple[Type[BaseException], ...] = (IntegrityError, OperationalError)

class BaseService:
    """Base class for all services with async database session management."""

    def __init__(self, session_factory):
        """
        Initialize base service with session factory.

        Args:
            session_factory: Async session factory from Database class
        """
        self.session_factory = session_factory

    @asynccontextmanager
    async def get_session(self) -> AsyncGenerator[AsyncSession, None]:
        """Provide a transactional scope for async database operations."""
        session = self.session_factory()
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise
        finally:
            await session.close()

    async def execute_with_retry(self, func: Callable, max_retries: int = 3,
                                 retry_on: Tuple[Type[BaseException], ...] = RETRYABLE_ERRORS) -> Any:
        """Execute a function with automatic retry on conflicting database writes."""
        for attempt in range(max_retries):
            try:
                return await func()
            except retry_on as e:
                if attempt == max_retries - 1:
                    raise
                logger.warning(f"Retry attempt {attempt + 1} for {getattr(func, '__name__', func)}: {e}")
                await asyncio.sleep(0.1 * (2 ** attempt))  # Exponential backoff


@asynccontextmanager
async def storage_errors(operation: str, log: logging.Logger = logger):
    """Surface any storage failure inside the block as StorageUnavailable."""
    try:
        yield
    except SQLAlchemyError as e:
        log.error(f"Storage failure during {operation}: {e}")
        raise StorageUnavailable(operation, str(e)) from e
