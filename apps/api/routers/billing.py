"""Credits and ledger router."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from routers.auth_scope import get_current_account
from services.credits import get_credit_summary
from services.reconciliation import reconcile_account

router = APIRouter()


@router.get("/credits")
async def credits_summary(
    user: User = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    return await get_credit_summary(user.id, db)


@router.get("/reconcile")
async def reconciliation_report(
    user: User = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    """Compare the account counters against the sum of its ledger entries."""
    return await reconcile_account(user.id, db)
