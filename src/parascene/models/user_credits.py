"""UserCredits entity - spendable credit balance per user."""

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from parascene.core.clock import utcnow


class UserCredits(SQLModel, table=True):
    """Credit balance, clamped at zero by the ledger."""

    __tablename__ = "user_credits"  # type: ignore[assignment]

    id: Optional[int] = Field(default=None, primary_key=True)
    user_id: int = Field(foreign_key="users.id", unique=True, index=True)
    balance: float = Field(default=0.0, ge=0)
    last_daily_claim_at: Optional[datetime] = Field(
        default=None, sa_type=DateTime(timezone=True)
    )
    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime(timezone=True))
