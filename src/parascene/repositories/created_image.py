"""CreatedImage repository for parascene backend.

Provides data access methods for CreatedImage entities.
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from parascene.models.created_image import CreatedImage, CreationStatus


class CreatedImageRepository:
    """Repository for CreatedImage entities.

    Lookups scoped to a user return None for rows owned by someone else, so a
    foreign id and a deleted id are indistinguishable to callers.
    """

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def add(self, image: CreatedImage) -> CreatedImage:
        """Persist new creation row.

        Args:
            image: CreatedImage entity to persist

        Returns:
            Persisted row with generated ID
        """
        self.session.add(image)
        await self.session.flush()
        return image

    async def save(self, image: CreatedImage) -> CreatedImage:
        """Flush pending changes for an already-tracked row."""
        self.session.add(image)
        await self.session.flush()
        return image

    async def get_by_id(self, image_id: int) -> CreatedImage | None:
        """Retrieve a creation by id regardless of owner."""
        result = await self.session.execute(
            select(CreatedImage).where(CreatedImage.id == image_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def get_by_id_for_user(self, image_id: int, user_id: int) -> CreatedImage | None:
        """Retrieve a creation owned by ``user_id``.

        Args:
            image_id: Creation id
            user_id: Owner id

        Returns:
            CreatedImage if it exists and belongs to the user, None otherwise
        """
        result = await self.session.execute(
            select(CreatedImage).where(
                CreatedImage.id == image_id,  # type: ignore[arg-type]
                CreatedImage.user_id == user_id,  # type: ignore[arg-type]
            )
        )
        return result.scalar_one_or_none()

    async def list_for_user(
        self, user_id: int, limit: int = 100, offset: int = 0
    ) -> list[CreatedImage]:
        """Retrieve a user's creations, newest first."""
        result = await self.session.execute(
            select(CreatedImage)
            .where(CreatedImage.user_id == user_id)  # type: ignore[arg-type]
            .order_by(CreatedImage.id.desc())  # type: ignore[union-attr]
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())

    async def list_creating(self, limit: int = 500) -> list[CreatedImage]:
        """Retrieve rows still in creating status, oldest first.

        Staleness depends on ``meta.timeout_at`` and is evaluated by the caller.
        """
        result = await self.session.execute(
            select(CreatedImage)
            .where(CreatedImage.status == CreationStatus.CREATING)  # type: ignore[arg-type]
            .order_by(CreatedImage.id.asc())  # type: ignore[union-attr]
            .limit(limit)
        )
        return list(result.scalars().all())
