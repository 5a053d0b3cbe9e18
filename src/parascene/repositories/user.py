"""User repository for parascene backend."""

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from parascene.models.user import User


class UserRepository:
    """Repository for User entities."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, user: User) -> User:
        self.session.add(user)
        await self.session.flush()
        return user

    async def get_by_id(self, user_id: int) -> User | None:
        result = await self.session.execute(
            select(User).where(User.id == user_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_by_email(self, email: str) -> User | None:
        """Case-insensitive lookup by email address."""
        result = await self.session.execute(
            select(User).where(func.lower(User.email) == email.strip().lower())
        )
        return result.scalar_one_or_none()
