"""User entity - account identity used for ownership and admin checks."""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from parascene.core.clock import utcnow

ROLE_ADMIN = "admin"


class User(SQLModel, table=True):
    """User account. Account management lives outside the creation pipeline."""

    __tablename__ = "users"  # type: ignore[assignment]

    id: Optional[int] = Field(default=None, primary_key=True)
    email: str = Field(max_length=255, unique=True, index=True)
    role: str = Field(default="consumer", max_length=50)
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN
