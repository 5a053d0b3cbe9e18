"""Repository layer for parascene backend.

Provides data access abstractions for all domain entities.
No base classes - each repository is self-contained.
"""

from parascene.repositories.created_image import CreatedImageRepository
from parascene.repositories.server import ServerRepository
from parascene.repositories.user import UserRepository
from parascene.repositories.user_credits import UserCreditsRepository

__all__ = [
    "UserRepository",
    "ServerRepository",
    "UserCreditsRepository",
    "CreatedImageRepository",
]
