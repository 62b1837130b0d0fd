"""Credit ledger and account balance accounting helpers.

Balances are only ever changed with a single atomic ``UPDATE ... SET credits =
credits + :delta`` statement, and every change is committed together with the
ledger row that explains it. The ledger's ``(ref_type, ref_id)`` uniqueness
constraint makes each grant, purchase, message debit and compensation happen
at most once.
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar
import uuid

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_ledger import (
    LEDGER_REASON_GRANT,
    LEDGER_REASON_MESSAGE,
    LEDGER_REASON_PURCHASE,
    LEDGER_REASON_ROLLBACK,
    REF_TYPE_ACCOUNT,
    REF_TYPE_MESSAGE,
    REF_TYPE_MESSAGE_ROLLBACK,
    REF_TYPE_TRANSACTION,
    CreditLedger,
)
from models.user import User
from services.errors import api_error

logger = logging.getLogger(__name__)

T = TypeVar("T")


async def get_account_totals(user_id: str, db: AsyncSession) -> Optional[Tuple[int, int]]:
    """Return ``(credits, total_purchased)`` read straight from the store."""
    result = await db.execute(
        select(User.credits, User.total_purchased).where(User.id == user_id)
    )
    row = result.one_or_none()
    if row is None:
        return None
    return int(row[0] or 0), int(row[1] or 0)


async def get_credit_balance(user_id: str, db: AsyncSession) -> int:
    totals = await get_account_totals(user_id, db)
    return totals[0] if totals else 0


async def _apply_credit_delta(
    db: AsyncSession,
    user_id: str,
    delta: int,
    *,
    purchased: int = 0,
    minimum_balance: Optional[int] = None,
) -> bool:
    values: Dict[str, Any] = {"credits": User.credits + int(delta)}
    if purchased:
        values["total_purchased"] = User.total_purchased + int(purchased)

    stmt = update(User).where(User.id == user_id)
    if minimum_balance is not None:
        stmt = stmt.where(User.credits >= minimum_balance)
    result = await db.execute(
        stmt.values(**values).execution_options(synchronize_session=False)
    )
    return result.rowcount == 1


async def _insert_entry(
    db: AsyncSession,
    *,
    user_id: str,
    delta: int,
    reason: str,
    ref_type: str,
    ref_id: str,
) -> CreditLedger:
    entry = CreditLedger(
        id=str(uuid.uuid4()),
        user_id=user_id,
        delta=int(delta),
        reason=reason,
        ref_type=ref_type,
        ref_id=ref_id,
    )
    db.add(entry)
    await db.flush()
    return entry


async def grant_signup_credits(user_id: str, db: AsyncSession, *, credits: int) -> bool:
    """Ledger and apply the starting grant for a freshly created account."""
    grant = max(int(credits), 0)
    if grant == 0:
        return False
    try:
        await _insert_entry(
            db,
            user_id=user_id,
            delta=grant,
            reason=LEDGER_REASON_GRANT,
            ref_type=REF_TYPE_ACCOUNT,
            ref_id=user_id,
        )
    except IntegrityError:
        await db.rollback()
        logger.info("Signup grant already recorded for user %s", user_id)
        return False
    await _apply_credit_delta(db, user_id, grant)
    await db.commit()
    return True


async def record_purchase_credit(
    db: AsyncSession,
    *,
    user_id: str,
    transaction_id: str,
    credits: int,
) -> bool:
    """Write the purchase ledger row and credit the account in one commit.

    Returns False when a ledger row already exists for the transaction; the
    caller treats that as "already processed".
    """
    try:
        await _insert_entry(
            db,
            user_id=user_id,
            delta=int(credits),
            reason=LEDGER_REASON_PURCHASE,
            ref_type=REF_TYPE_TRANSACTION,
            ref_id=transaction_id,
        )
    except IntegrityError:
        await db.rollback()
        logger.info("Ledger entry already exists for transaction %s", transaction_id)
        return False

    if not await _apply_credit_delta(db, user_id, int(credits), purchased=int(credits)):
        await db.rollback()
        raise LookupError(f"Account {user_id} not found while crediting transaction {transaction_id}")

    await db.commit()
    logger.info("Credited %s credits to user %s for transaction %s", credits, user_id, transaction_id)
    return True


async def debit_message_credit(
    db: AsyncSession,
    *,
    user_id: str,
    message_id: str,
    cost: int = 1,
) -> None:
    """Spend ``cost`` credits for a message, or raise 402 without mutating."""
    if not await _apply_credit_delta(db, user_id, -cost, minimum_balance=cost):
        await db.rollback()
        raise api_error(402, "INSUFFICIENT_CREDITS", "Insufficient credits")
    await _insert_entry(
        db,
        user_id=user_id,
        delta=-cost,
        reason=LEDGER_REASON_MESSAGE,
        ref_type=REF_TYPE_MESSAGE,
        ref_id=message_id,
    )
    await db.commit()


async def refund_message_credit(
    db: AsyncSession,
    *,
    user_id: str,
    message_id: str,
    cost: int = 1,
) -> bool:
    """Compensate a message debit. Safe to call more than once."""
    try:
        await _insert_entry(
            db,
            user_id=user_id,
            delta=cost,
            reason=LEDGER_REASON_ROLLBACK,
            ref_type=REF_TYPE_MESSAGE_ROLLBACK,
            ref_id=message_id,
        )
    except IntegrityError:
        await db.rollback()
        logger.info("Message %s already compensated", message_id)
        return False
    await _apply_credit_delta(db, user_id, cost)
    await db.commit()
    logger.warning("Refunded %s credit(s) to user %s after failed save of message %s", cost, user_id, message_id)
    return True


async def charge_message_credit(
    db: AsyncSession,
    *,
    user_id: str,
    message_id: str,
    action: Callable[[], Awaitable[T]],
    cost: int = 1,
) -> T:
    """Debit first, run ``action``, and compensate the debit if it raises."""
    await debit_message_credit(db, user_id=user_id, message_id=message_id, cost=cost)
    try:
        return await action()
    except Exception:
        try:
            await db.rollback()
            await refund_message_credit(db, user_id=user_id, message_id=message_id, cost=cost)
        except Exception:
            # Left for find_unrefunded_message_debits to pick up.
            logger.exception(
                "Refund failed for message %s; user %s remains debited %s credit(s)",
                message_id,
                user_id,
                cost,
            )
        raise


async def get_credit_summary(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    totals = await get_account_totals(user_id, db) or (0, 0)
    result = await db.execute(
        select(CreditLedger)
        .where(CreditLedger.user_id == user_id)
        .order_by(CreditLedger.created_at.desc())
        .limit(30)
    )
    entries = result.scalars().all()
    return {
        "balance": totals[0],
        "total_purchased": totals[1],
        "recent_entries": [
            {
                "id": entry.id,
                "delta": entry.delta,
                "reason": entry.reason,
                "ref_type": entry.ref_type,
                "ref_id": entry.ref_id,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ],
    }


async def sum_ledger_deltas(user_id: str, db: AsyncSession, *, reason: Optional[str] = None) -> int:
    stmt = select(func.coalesce(func.sum(CreditLedger.delta), 0)).where(CreditLedger.user_id == user_id)
    if reason is not None:
        stmt = stmt.where(CreditLedger.reason == reason)
    result = await db.execute(stmt)
    return int(result.scalar() or 0)
