"""Database session factory setup."""

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel


def create_engine_for_url(db_url: str, pool_size: int = 20) -> AsyncEngine:
    """Create async engine with pool settings suited to the backend.

    SQLite (used for local development and tests) shares a single connection so
    in-memory databases survive across sessions.
    """
    if db_url.startswith("sqlite"):
        return create_async_engine(
            db_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=False,
        )

    return create_async_engine(
        db_url,
        pool_size=pool_size,
        max_overflow=0,  # No overflow beyond pool_size
        pool_pre_ping=True,  # Verify connections before using
        echo=False,  # SQL is not logged; structlog covers application events
    )


def setup_db_session(db_url: str, pool_size: int = 20) -> async_sessionmaker[AsyncSession]:
    """Create async database session factory.

    Args:
        db_url: Database URL (postgresql+psycopg://... or sqlite+aiosqlite://...)
        pool_size: Maximum number of connections in the pool (ignored for SQLite)

    Returns:
        Async session factory for creating database sessions
    """
    engine = create_engine_for_url(db_url, pool_size)

    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Prevent lazy loading issues after commit
    )


async def init_models(engine: AsyncEngine) -> None:
    """Create all tables registered on SQLModel metadata.

    Production schemas are managed by Alembic; this is for development and tests.
    """
    # Importing the package registers every table on the metadata
    import parascene.models  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
