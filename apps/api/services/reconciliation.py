"""Ledger/account reconciliation and repair of interrupted purchase credits and message refunds."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List

from sqlalchemy import and_
from sqlalchemy.orm import aliased
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_ledger import (
    LEDGER_REASON_PURCHASE,
    REF_TYPE_MESSAGE,
    REF_TYPE_MESSAGE_ROLLBACK,
    REF_TYPE_TRANSACTION,
    CreditLedger,
)
from models.message import Message
from models.transaction import TRANSACTION_PAID, Transaction
from services.credits import get_account_totals, refund_message_credit, sum_ledger_deltas
from services.payments import OUTCOME_CREDITED, grant_purchase_credits, load_transaction

logger = logging.getLogger(__name__)


async def reconcile_account(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    credits, total_purchased = await get_account_totals(user_id, db) or (0, 0)
    purchase_sum = await sum_ledger_deltas(user_id, db, reason=LEDGER_REASON_PURCHASE)
    ledger_sum = await sum_ledger_deltas(user_id, db)
    return {
        "user_id": user_id,
        "credits": credits,
        "total_purchased": total_purchased,
        "ledger_balance": ledger_sum,
        "ledger_purchased": purchase_sum,
        "balance_reconciled": ledger_sum == credits,
        "purchases_reconciled": purchase_sum == total_purchased,
    }


async def find_paid_transactions_missing_ledger(db: AsyncSession, *, limit: int = 100) -> List[Transaction]:
    """Paid transactions whose purchase ledger row was never written."""
    result = await db.execute(
        select(Transaction)
        .outerjoin(
            CreditLedger,
            and_(
                CreditLedger.ref_type == REF_TYPE_TRANSACTION,
                CreditLedger.ref_id == Transaction.id,
            ),
        )
        .where(Transaction.status == TRANSACTION_PAID, CreditLedger.id.is_(None))
        .order_by(Transaction.created_at.asc())
        .limit(max(int(limit), 1))
    )
    return list(result.scalars().all())


async def repair_missing_purchase_credits(db: AsyncSession, *, limit: int = 100) -> Dict[str, Any]:
    transactions = await find_paid_transactions_missing_ledger(db, limit=limit)
    transaction_ids = [txn.id for txn in transactions]
    repaired: List[str] = []
    for transaction_id in transaction_ids:
        txn = await load_transaction(db, transaction_id)
        if txn is None or txn.status != TRANSACTION_PAID:
            continue
        result = await grant_purchase_credits(db, txn)
        if result.outcome == OUTCOME_CREDITED:
            repaired.append(transaction_id)
    if repaired:
        logger.warning("Repaired purchase credits for %s transaction(s): %s", len(repaired), repaired)
    return {
        "checked": len(transaction_ids),
        "repaired": repaired,
        "skipped": [txn_id for txn_id in transaction_ids if txn_id not in repaired],
    }


async def find_unrefunded_message_debits(
    db: AsyncSession,
    *,
    older_than_seconds: int = 300,
    limit: int = 100,
) -> List[CreditLedger]:
    """Message debits with neither a stored message nor a compensating refund.

    Debits younger than ``older_than_seconds`` are skipped since their save may
    still be in flight.
    """
    refund = aliased(CreditLedger)
    stmt = (
        select(CreditLedger)
        .outerjoin(Message, Message.id == CreditLedger.ref_id)
        .outerjoin(
            refund,
            and_(
                refund.ref_type == REF_TYPE_MESSAGE_ROLLBACK,
                refund.ref_id == CreditLedger.ref_id,
            ),
        )
        .where(
            CreditLedger.ref_type == REF_TYPE_MESSAGE,
            Message.id.is_(None),
            refund.id.is_(None),
        )
        .order_by(CreditLedger.created_at.asc())
        .limit(max(int(limit), 1))
    )
    if older_than_seconds > 0:
        cutoff = datetime.now(timezone.utc) - timedelta(seconds=older_than_seconds)
        stmt = stmt.where(CreditLedger.created_at <= cutoff)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def repair_unrefunded_message_debits(
    db: AsyncSession,
    *,
    older_than_seconds: int = 300,
    limit: int = 100,
) -> Dict[str, Any]:
    debits = await find_unrefunded_message_debits(db, older_than_seconds=older_than_seconds, limit=limit)
    pending = [(entry.user_id, entry.ref_id, -int(entry.delta)) for entry in debits]
    refunded: List[str] = []
    for user_id, message_id, cost in pending:
        if await refund_message_credit(db, user_id=user_id, message_id=message_id, cost=cost):
            refunded.append(message_id)
    if refunded:
        logger.warning("Refunded %s stranded message debit(s): %s", len(refunded), refunded)
    return {
        "checked": len(pending),
        "refunded": refunded,
        "skipped": [message_id for _, message_id, _ in pending if message_id not in refunded],
    }
