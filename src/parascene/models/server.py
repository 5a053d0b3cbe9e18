"""Server entity - a registered provider endpoint and its billable methods."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional

from sqlalchemy import JSON, Column, DateTime
from sqlmodel import Field, SQLModel

from parascene.core.clock import utcnow

DEFAULT_METHOD_COST = 0.5


class ServerStatus(str, Enum):
    """Provider availability."""

    ACTIVE = "active"
    INACTIVE = "inactive"


class Server(SQLModel, table=True):
    """Server represents a provider implementing the generation protocol."""

    __tablename__ = "servers"  # type: ignore[assignment]

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: Optional[int] = Field(default=None, foreign_key="users.id", index=True)
    name: str = Field(max_length=255)
    status: ServerStatus = Field(default=ServerStatus.ACTIVE)
    server_url: str
    auth_token: Optional[str] = Field(default=None)
    description: Optional[str] = Field(default=None)
    server_config: Optional[dict] = Field(default=None, sa_column=Column(JSON))
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))

    @property
    def is_active(self) -> bool:
        return self.status == ServerStatus.ACTIVE

    @property
    def methods(self) -> dict[str, dict[str, Any]]:
        """Advertised methods keyed by method id."""
        config = self.server_config or {}
        methods = config.get("methods")
        return methods if isinstance(methods, dict) else {}

    def method_cost(self, method: str, default: float = DEFAULT_METHOD_COST) -> float:
        """Credits charged per invocation; falls back to ``default`` when unset."""
        entry = self.methods.get(method) or {}
        credits = entry.get("credits")
        if isinstance(credits, bool) or not isinstance(credits, (int, float)) or credits < 0:
            return default
        return float(credits)

    def method_display_name(self, method: str) -> str:
        entry = self.methods.get(method) or {}
        return entry.get("displayName") or entry.get("name") or method
