"""SQLModel database entities.

All models are imported here to ensure they're registered with SQLModel metadata
for Alembic autogenerate support.
"""

from parascene.models.created_image import (
    CreatedImage,
    CreationMeta,
    CreationStatus,
    InvalidStateTransition,
)
from parascene.models.server import Server, ServerStatus
from parascene.models.user import User
from parascene.models.user_credits import UserCredits

__all__ = [
    "User",
    "Server",
    "ServerStatus",
    "UserCredits",
    "CreatedImage",
    "CreationMeta",
    "CreationStatus",
    "InvalidStateTransition",
]
