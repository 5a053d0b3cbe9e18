"""Unit of Work pattern for parascene backend.

Provides transaction management with automatic commit/rollback and access to all repositories.
"""

from typing import Awaitable, Callable

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from parascene.repositories.created_image import CreatedImageRepository
from parascene.repositories.server import ServerRepository
from parascene.repositories.user import UserRepository
from parascene.repositories.user_credits import UserCreditsRepository

logger = structlog.get_logger()


class UnitOfWork:
    """Unit of Work pattern implementation.

    Manages database transactions and provides access to all repositories.
    Use as async context manager for automatic commit/rollback.

    Example:
        async with await uow_factory() as uow:
            image = await uow.created_images.get_by_id_for_user(image_id, user_id)
            await uow.user_credits.adjust_balance(user_id, -cost)
            # Automatically commits on successful exit
            # Automatically rolls back on exception
    """

    def __init__(self, session: AsyncSession):
        """Initialize UnitOfWork with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

        self.users = UserRepository(session)
        self.servers = ServerRepository(session)
        self.user_credits = UserCreditsRepository(session)
        self.created_images = CreatedImageRepository(session)

    async def commit(self) -> None:
        """Commit early, for callers that must persist before leaving the context."""
        await self.session.commit()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Exit async context manager with automatic commit/rollback.

        Returns:
            False: Always re-raise exceptions after rollback
        """
        try:
            if exc_type is None:
                await self.session.commit()
                logger.debug("transaction.committed")
            else:
                await self.session.rollback()
                logger.info("transaction.rolled_back", exc_type=exc_type.__name__)
        finally:
            await self.session.close()

        return False


UnitOfWorkFactory = Callable[[], Awaitable[UnitOfWork]]


def create_uow_factory(session_factory: async_sessionmaker[AsyncSession]) -> UnitOfWorkFactory:
    """Create a factory function that produces UnitOfWork instances.

    Args:
        session_factory: SQLAlchemy async session factory

    Returns:
        Callable that creates UnitOfWork instances from new sessions

    Example:
        session_factory = setup_db_session(db_url)
        uow_factory = create_uow_factory(session_factory)

        async with await uow_factory() as uow:
            await uow.users.add(user)
    """

    async def _create_uow() -> UnitOfWork:
        session = session_factory()
        return UnitOfWork(session)

    return _create_uow
