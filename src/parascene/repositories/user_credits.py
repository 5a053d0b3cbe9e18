"""UserCredits repository for parascene backend.

Balance updates are last-write-wins within the session and clamp at zero.
"""

from datetime import datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from parascene.core.clock import utcnow
from parascene.models.user_credits import UserCredits


class UserCreditsRepository:
    """Repository for UserCredits entities."""

    def __init__(self, session: AsyncSession):
        """Initialize repository with database session.

        Args:
            session: SQLAlchemy async session for database operations
        """
        self.session = session

    async def get_by_user(self, user_id: int) -> UserCredits | None:
        """Retrieve the credit row for a user.

        Args:
            user_id: Owner id

        Returns:
            UserCredits if the user has a row, None otherwise
        """
        result = await self.session.execute(
            select(UserCredits).where(UserCredits.user_id == user_id)  # type: ignore[arg-type]
        )
        return result.scalar_one_or_none()

    async def add(self, user_id: int, balance: float = 0.0) -> UserCredits:
        """Create the credit row for a user.

        Args:
            user_id: Owner id
            balance: Opening balance (clamped at zero)

        Returns:
            Persisted UserCredits row
        """
        row = UserCredits(user_id=user_id, balance=max(0.0, float(balance)))
        self.session.add(row)
        await self.session.flush()
        return row

    async def adjust_balance(self, user_id: int, delta: float) -> UserCredits:
        """Add ``delta`` (may be negative) to the balance, clamping at zero.

        Creates the row with a zero opening balance when missing.

        Args:
            user_id: Owner id
            delta: Signed amount to apply

        Returns:
            Updated UserCredits row
        """
        row = await self.get_by_user(user_id)
        if row is None:
            row = await self.add(user_id)

        row.balance = max(0.0, float(row.balance or 0.0) + float(delta))
        row.updated_at = utcnow()
        self.session.add(row)
        await self.session.flush()
        return row

    async def record_daily_claim(self, row: UserCredits, amount: float, now: datetime) -> None:
        """Credit the daily allowance and stamp the claim time."""
        row.balance = max(0.0, float(row.balance or 0.0) + float(amount))
        row.last_daily_claim_at = now
        row.updated_at = now
        self.session.add(row)
        await self.session.flush()
