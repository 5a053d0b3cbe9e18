"""Server repository for parascene backend."""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from parascene.models.server import Server


class ServerRepository:
    """Repository for Server entities."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, server: Server) -> Server:
        self.session.add(server)
        await self.session.flush()
        return server

    async def get_by_id(self, server_id: int) -> Server | None:
        """Retrieve server by id.

        Args:
            server_id: Server's unique identifier

        Returns:
            Server if found, None otherwise
        """
        result = await self.session.execute(
            select(Server).where(Server.id == server_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()
