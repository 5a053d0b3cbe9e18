"""Credit balance and daily allowance endpoints."""

import structlog
from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from parascene.api.dependencies import get_current_user, get_settings, get_uow_factory
from parascene.core.clock import to_iso, utcnow
from parascene.core.config import Settings
from parascene.models.user import User
from parascene.services.credits import CreditLedger, can_claim_daily
from parascene.uow import UnitOfWorkFactory

logger = structlog.get_logger()
router = APIRouter(prefix="/api/credits", tags=["credits"])


@router.get("")
async def get_credits(
    user: User = Depends(get_current_user),
    uow_factory: UnitOfWorkFactory = Depends(get_uow_factory),
):
    """Current balance and whether today's allowance can still be claimed.

    Returns:
        {balance, canClaim, lastClaimDate}
    """
    async with await uow_factory() as uow:
        row = await uow.user_credits.get_by_user(user.id)

    last_claim = row.last_daily_claim_at if row else None
    return {
        "balance": float(row.balance) if row else 0.0,
        "canClaim": can_claim_daily(last_claim, utcnow()),
        "lastClaimDate": to_iso(last_claim) if last_claim else None,
    }


@router.post("/claim")
async def claim_daily_credits(
    user: User = Depends(get_current_user),
    uow_factory: UnitOfWorkFactory = Depends(get_uow_factory),
    settings: Settings = Depends(get_settings),
):
    """Grant DAILY_CREDIT_AMOUNT once per UTC day.

    HTTP Status Codes:
        200: {success: true, balance, message}
        400: {success: false, balance, message} already claimed today
    """
    async with await uow_factory() as uow:
        granted, balance = await CreditLedger(uow).claim_daily(
            user.id, settings.daily_credit_amount
        )

    if not granted:
        return JSONResponse(
            status_code=400,
            content={
                "success": False,
                "balance": balance,
                "message": "Daily credits already claimed today",
            },
        )

    logger.info("credits.claim_succeeded", user_id=user.id, balance=balance)
    return {"success": True, "balance": balance, "message": "Daily credits claimed successfully"}
