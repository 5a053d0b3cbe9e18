"""Credit ledger: balance reads, debits, credits and daily claims.

All operations run inside the caller's unit of work so a balance change and
the row update it belongs to commit together.
"""

from datetime import datetime, timezone

import structlog

from parascene.core.clock import utcnow
from parascene.services.exceptions import InsufficientCreditsError
from parascene.uow import UnitOfWork

logger = structlog.get_logger()


def can_claim_daily(last_claim_at: datetime | None, now: datetime) -> bool:
    """True unless the last claim falls on the current UTC day (or later)."""
    if last_claim_at is None:
        return True
    if last_claim_at.tzinfo is None:
        last_claim_at = last_claim_at.replace(tzinfo=timezone.utc)
    return last_claim_at.astimezone(timezone.utc).date() < now.astimezone(timezone.utc).date()


class CreditLedger:
    """Thin domain layer over ``uow.user_credits``."""

    def __init__(self, uow: UnitOfWork):
        self.uow = uow

    async def balance(self, user_id: int) -> float:
        """Current balance; users without a credit row have zero."""
        row = await self.uow.user_credits.get_by_user(user_id)
        return float(row.balance) if row else 0.0

    async def debit(self, user_id: int, amount: float) -> float:
        """Charge ``amount``; returns the remaining balance.

        Raises:
            InsufficientCreditsError: If the balance is below ``amount``
        """
        current = await self.balance(user_id)
        if current < amount:
            raise InsufficientCreditsError(required=amount, current=current)
        row = await self.uow.user_credits.adjust_balance(user_id, -amount)
        logger.info("credits.debited", user_id=user_id, amount=amount, balance=row.balance)
        return float(row.balance)

    async def credit(self, user_id: int, amount: float) -> float:
        """Add ``amount`` to the balance; returns the new balance."""
        row = await self.uow.user_credits.adjust_balance(user_id, amount)
        logger.info("credits.credited", user_id=user_id, amount=amount, balance=row.balance)
        return float(row.balance)

    async def claim_daily(
        self, user_id: int, amount: float = 10.0, now: datetime | None = None
    ) -> tuple[bool, float]:
        """Grant the daily allowance at most once per UTC calendar day.

        Returns:
            Tuple of (granted, balance after the call)
        """
        now = now or utcnow()
        row = await self.uow.user_credits.get_by_user(user_id)
        if row is None:
            row = await self.uow.user_credits.add(user_id)

        if not can_claim_daily(row.last_daily_claim_at, now):
            return False, float(row.balance)

        await self.uow.user_credits.record_daily_claim(row, amount, now)
        logger.info("credits.daily_claimed", user_id=user_id, amount=amount)
        return True, float(row.balance)
