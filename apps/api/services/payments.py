"""Checkout creation and payment confirmation for credit purchases.

Two callers confirm payments: the user-facing session verification and the
provider webhook. Both end in :func:`credit_transaction`, which may run any
number of times, in any order, concurrently. The transaction status check is
re-read right before mutating, and the purchase ledger row's uniqueness is the
final arbiter when two confirmations race past that check.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional
import uuid

from sqlalchemy import func, or_, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.transaction import (
    TRANSACTION_CREATED,
    TRANSACTION_EXPIRED,
    TRANSACTION_FAILED,
    TRANSACTION_PAID,
    Transaction,
)
from models.user import User
from services.credits import get_account_totals, record_purchase_credit
from services.errors import api_error
from services.plan_catalog import PlanCatalog
from services.stripe_gateway import CheckoutSessionInfo, StripeGateway

logger = logging.getLogger(__name__)

OUTCOME_CREDITED = "credited"
OUTCOME_ALREADY_PROCESSED = "already_processed"
OUTCOME_NOT_FOUND = "not_found"
OUTCOME_UNPROCESSABLE = "unprocessable"

REQUIRED_METADATA_KEYS = ("user_id", "plan_id", "credits", "transaction_id")


@dataclass(frozen=True)
class CheckoutMetadata:
    user_id: str
    plan_id: str
    credits: int
    transaction_id: str

    def as_stripe_metadata(self) -> Dict[str, str]:
        return {
            "user_id": self.user_id,
            "plan_id": self.plan_id,
            "credits": str(self.credits),
            "transaction_id": self.transaction_id,
        }


@dataclass
class ConfirmationResult:
    outcome: str
    transaction: Optional[Transaction] = None
    credits_added: int = 0

    @property
    def already_processed(self) -> bool:
        return self.outcome == OUTCOME_ALREADY_PROCESSED


def parse_checkout_metadata(metadata: Optional[Mapping[str, Any]]) -> Optional[CheckoutMetadata]:
    """Return the correlation keys, or None when any of them is missing or malformed."""
    data = dict(metadata or {})
    values = {key: str(data.get(key) or "").strip() for key in REQUIRED_METADATA_KEYS}
    if not all(values.values()):
        return None
    try:
        credits = int(values["credits"])
    except ValueError:
        return None
    if credits <= 0:
        return None
    return CheckoutMetadata(
        user_id=values["user_id"],
        plan_id=values["plan_id"],
        credits=credits,
        transaction_id=values["transaction_id"],
    )


def serialize_transaction(txn: Transaction) -> Dict[str, Any]:
    return {
        "id": txn.id,
        "plan_id": txn.plan_id,
        "credits": txn.credits,
        "amount": txn.amount,
        "currency": txn.currency,
        "status": txn.status,
        "pending": bool(txn.pending),
        "session_id": txn.session_id,
        "created_at": txn.created_at.isoformat() if txn.created_at else None,
        "completed_at": txn.completed_at.isoformat() if txn.completed_at else None,
    }


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------


async def ensure_billing_customer(db: AsyncSession, user: User, gateway: StripeGateway) -> str:
    """Return the account's Stripe customer id, creating it on first purchase."""
    if user.stripe_customer_id:
        return user.stripe_customer_id

    customer_id = await gateway.create_customer(
        email=user.email,
        metadata={"user_id": user.id, "username": user.username},
    )
    await db.execute(
        update(User)
        .where(User.id == user.id, User.stripe_customer_id.is_(None))
        .values(stripe_customer_id=customer_id)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    # A concurrent checkout may have bound a customer first; that one wins.
    await db.refresh(user)
    return user.stripe_customer_id


async def start_checkout(
    db: AsyncSession,
    *,
    user: User,
    plan_id: Optional[str],
    catalog: PlanCatalog,
    gateway: StripeGateway,
) -> Dict[str, Any]:
    plan = catalog.require(plan_id)

    try:
        customer_id = await ensure_billing_customer(db, user, gateway)

        txn = Transaction(
            id=str(uuid.uuid4()),
            user_id=user.id,
            plan_id=plan.plan_id,
            credits=plan.credits,
            amount=plan.amount,
            currency=plan.currency,
            provider="stripe",
            status=TRANSACTION_CREATED,
            pending=True,
        )
        db.add(txn)
        await db.commit()

        metadata = CheckoutMetadata(
            user_id=user.id,
            plan_id=plan.plan_id,
            credits=plan.credits,
            transaction_id=txn.id,
        )
        origin = settings.FRONTEND_ORIGIN.rstrip("/")
        session = await gateway.create_checkout_session(
            customer_id=customer_id,
            line_items=[
                {
                    "price_data": {
                        "currency": plan.currency,
                        "product_data": {
                            "name": plan.name,
                            "description": plan.description,
                            "metadata": {"credits": str(plan.credits), "plan_id": plan.plan_id},
                        },
                        "unit_amount": plan.amount,
                    },
                    "quantity": 1,
                }
            ],
            success_url=f"{origin}/purchase-success?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=f"{origin}/purchase-credits?canceled=true",
            metadata=metadata.as_stripe_metadata(),
            idempotency_key=f"checkout-{txn.id}",
        )

        txn.session_id = session.session_id
        await db.commit()
    except Exception as exc:
        logger.exception("Create checkout session failed for plan %s", plan.plan_id)
        await db.rollback()
        raise api_error(500, "CHECKOUT_SESSION_ERROR", "Failed to create checkout session", exc) from exc

    logger.info("Checkout session %s opened for transaction %s", session.session_id, txn.id)
    return {
        "session_id": session.session_id,
        "url": session.url,
        "transaction_id": txn.id,
    }


# ---------------------------------------------------------------------------
# Crediting sequence
# ---------------------------------------------------------------------------


async def load_transaction(db: AsyncSession, transaction_id: str) -> Optional[Transaction]:
    """Fetch a transaction, always refreshing any copy already in the session."""
    result = await db.execute(
        select(Transaction)
        .where(Transaction.id == transaction_id)
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


async def mark_transaction_paid(
    db: AsyncSession,
    txn: Transaction,
    *,
    payment_intent_id: Optional[str],
    raw: Optional[Dict[str, Any]] = None,
) -> None:
    txn.status = TRANSACTION_PAID
    txn.pending = False
    if payment_intent_id:
        txn.payment_intent_id = payment_intent_id
    if raw is not None:
        txn.raw_json = raw
    txn.completed_at = datetime.now(timezone.utc)
    await db.commit()


async def grant_purchase_credits(db: AsyncSession, txn: Transaction) -> ConfirmationResult:
    """Ledger and apply the transaction's credits; a duplicate ledger row is a no-op."""
    transaction_id = txn.id
    credited = await record_purchase_credit(
        db,
        user_id=txn.user_id,
        transaction_id=transaction_id,
        credits=int(txn.credits),
    )
    if not credited:
        return ConfirmationResult(
            outcome=OUTCOME_ALREADY_PROCESSED,
            transaction=await load_transaction(db, transaction_id),
        )
    return ConfirmationResult(outcome=OUTCOME_CREDITED, transaction=txn, credits_added=int(txn.credits))


async def credit_transaction(
    db: AsyncSession,
    *,
    metadata: CheckoutMetadata,
    payment_intent_id: Optional[str],
    raw: Optional[Dict[str, Any]] = None,
    source: str,
) -> ConfirmationResult:
    txn = await load_transaction(db, metadata.transaction_id)
    if txn is None:
        logger.error("[%s] Transaction not found: %s", source, metadata.transaction_id)
        return ConfirmationResult(outcome=OUTCOME_NOT_FOUND)

    if txn.status == TRANSACTION_PAID:
        logger.info("[%s] Transaction already processed: %s", source, txn.id)
        return ConfirmationResult(outcome=OUTCOME_ALREADY_PROCESSED, transaction=txn)

    if txn.user_id != metadata.user_id:
        logger.error(
            "[%s] Session metadata user %s does not own transaction %s",
            source,
            metadata.user_id,
            txn.id,
        )
        return ConfirmationResult(outcome=OUTCOME_UNPROCESSABLE, transaction=txn)

    if int(txn.credits) != metadata.credits:
        logger.warning(
            "[%s] Metadata credits %s differ from transaction %s credits %s; using the transaction",
            source,
            metadata.credits,
            txn.id,
            txn.credits,
        )

    account = await db.execute(select(User.id).where(User.id == txn.user_id))
    if account.scalar_one_or_none() is None:
        logger.error("[%s] Account %s not found for transaction %s", source, txn.user_id, txn.id)
        return ConfirmationResult(outcome=OUTCOME_NOT_FOUND, transaction=txn)

    if txn.status != TRANSACTION_CREATED:
        # Money was captured after a failed attempt or a late expiry; credit it.
        logger.warning("[%s] Crediting transaction %s from status %s", source, txn.id, txn.status)

    await mark_transaction_paid(db, txn, payment_intent_id=payment_intent_id, raw=raw)
    logger.info("[%s] Transaction %s marked paid", source, txn.id)
    return await grant_purchase_credits(db, txn)


# ---------------------------------------------------------------------------
# Synchronous verification
# ---------------------------------------------------------------------------


async def verify_checkout_session(
    db: AsyncSession,
    *,
    user: User,
    session_id: str,
    gateway: StripeGateway,
) -> Dict[str, Any]:
    user_id = user.id
    try:
        session = await gateway.retrieve_checkout_session(session_id)
    except Exception as exc:
        logger.exception("Retrieve checkout session %s failed", session_id)
        raise api_error(500, "VERIFY_PAYMENT_ERROR", "Failed to verify payment", exc) from exc

    if session.payment_status != "paid":
        raise api_error(400, "PAYMENT_NOT_COMPLETED", "Payment not completed")

    metadata = parse_checkout_metadata(session.metadata)
    if metadata is None:
        logger.error("Checkout session %s is missing correlation metadata: %s", session_id, session.metadata)
        raise api_error(422, "VERIFY_PAYMENT_ERROR", "Failed to verify payment")
    if metadata.user_id != user_id:
        raise api_error(403, "SESSION_FORBIDDEN", "Checkout session belongs to another account")

    try:
        result = await credit_transaction(
            db,
            metadata=metadata,
            payment_intent_id=session.payment_intent_id,
            raw={"source": "verify", **session.summary()},
            source="verify",
        )
    except Exception as exc:
        logger.exception("Crediting failed for checkout session %s", session_id)
        await db.rollback()
        raise api_error(500, "VERIFY_PAYMENT_ERROR", "Failed to verify payment", exc) from exc

    if result.outcome in (OUTCOME_NOT_FOUND, OUTCOME_UNPROCESSABLE):
        raise api_error(422, "VERIFY_PAYMENT_ERROR", "Failed to verify payment")

    credits, total_purchased = await get_account_totals(user_id, db) or (0, 0)
    return {
        "message": (
            "Payment already processed"
            if result.already_processed
            else "Payment verified and credits added"
        ),
        "already_processed": result.already_processed,
        "credits_added": result.credits_added,
        "transaction": serialize_transaction(result.transaction) if result.transaction else None,
        "user": {"credits": credits, "total_purchased": total_purchased},
    }


# ---------------------------------------------------------------------------
# Terminal non-paid transitions
# ---------------------------------------------------------------------------


async def _transition_unpaid(
    db: AsyncSession,
    *,
    target_status: str,
    allowed_from: tuple,
    match: list,
    payment_intent_id: Optional[str] = None,
) -> int:
    if not match:
        return 0
    values: Dict[str, Any] = {"status": target_status, "pending": False}
    if payment_intent_id:
        values["payment_intent_id"] = func.coalesce(Transaction.payment_intent_id, payment_intent_id)
    result = await db.execute(
        update(Transaction)
        .where(or_(*match), Transaction.status.in_(allowed_from))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    return int(result.rowcount or 0)


async def mark_transaction_expired(
    db: AsyncSession,
    *,
    session_id: Optional[str] = None,
    transaction_id: Optional[str] = None,
) -> bool:
    """``created -> expired``; any other status is left untouched."""
    match = []
    if session_id:
        match.append(Transaction.session_id == session_id)
    if transaction_id:
        match.append(Transaction.id == transaction_id)
    changed = await _transition_unpaid(
        db,
        target_status=TRANSACTION_EXPIRED,
        allowed_from=(TRANSACTION_CREATED,),
        match=match,
    )
    if changed:
        logger.info("Transaction marked expired (session=%s, transaction=%s)", session_id, transaction_id)
    return changed > 0


async def mark_transaction_failed(
    db: AsyncSession,
    *,
    payment_intent_id: Optional[str] = None,
    session_id: Optional[str] = None,
    transaction_id: Optional[str] = None,
) -> bool:
    """Move to ``failed`` unless the transaction is already ``paid``."""
    match = []
    if payment_intent_id:
        match.append(Transaction.payment_intent_id == payment_intent_id)
    if session_id:
        match.append(Transaction.session_id == session_id)
    if transaction_id:
        match.append(Transaction.id == transaction_id)
    changed = await _transition_unpaid(
        db,
        target_status=TRANSACTION_FAILED,
        allowed_from=(TRANSACTION_CREATED, TRANSACTION_FAILED, TRANSACTION_EXPIRED),
        match=match,
        payment_intent_id=payment_intent_id,
    )
    if changed:
        logger.info(
            "Transaction marked failed (payment_intent=%s, session=%s, transaction=%s)",
            payment_intent_id,
            session_id,
            transaction_id,
        )
    return changed > 0


# ---------------------------------------------------------------------------
# Webhook dispatch
# ---------------------------------------------------------------------------


async def _confirm_session_payload(db: AsyncSession, payload: Mapping[str, Any], *, source: str) -> str:
    session = CheckoutSessionInfo.from_payload(payload)
    if session.payment_status != "paid":
        logger.info("[%s] Session %s completed with payment_status=%s; awaiting payment", source, session.session_id, session.payment_status)
        return "awaiting_payment"

    metadata = parse_checkout_metadata(session.metadata)
    if metadata is None:
        logger.error("[%s] Missing metadata in session %s: %s", source, session.session_id, session.metadata)
        return OUTCOME_UNPROCESSABLE

    result = await credit_transaction(
        db,
        metadata=metadata,
        payment_intent_id=session.payment_intent_id,
        raw={"source": source, **session.summary()},
        source=source,
    )
    return result.outcome


async def _on_checkout_completed(db: AsyncSession, payload: Mapping[str, Any]) -> str:
    return await _confirm_session_payload(db, payload, source="webhook:checkout.session.completed")


async def _on_async_payment_succeeded(db: AsyncSession, payload: Mapping[str, Any]) -> str:
    return await _confirm_session_payload(db, payload, source="webhook:checkout.session.async_payment_succeeded")


async def _on_async_payment_failed(db: AsyncSession, payload: Mapping[str, Any]) -> str:
    session = CheckoutSessionInfo.from_payload(payload)
    changed = await mark_transaction_failed(
        db,
        payment_intent_id=session.payment_intent_id,
        session_id=session.session_id or None,
        transaction_id=session.metadata.get("transaction_id"),
    )
    return "failed" if changed else "ignored"


async def _on_checkout_expired(db: AsyncSession, payload: Mapping[str, Any]) -> str:
    session = CheckoutSessionInfo.from_payload(payload)
    changed = await mark_transaction_expired(
        db,
        session_id=session.session_id or None,
        transaction_id=session.metadata.get("transaction_id"),
    )
    return "expired" if changed else "ignored"


async def _on_payment_intent_failed(db: AsyncSession, payload: Mapping[str, Any]) -> str:
    metadata = payload.get("metadata") or {}
    changed = await mark_transaction_failed(
        db,
        payment_intent_id=payload.get("id"),
        transaction_id=metadata.get("transaction_id"),
    )
    return "failed" if changed else "ignored"


EVENT_HANDLERS: Dict[str, Callable[[AsyncSession, Mapping[str, Any]], Awaitable[str]]] = {
    "checkout.session.completed": _on_checkout_completed,
    "checkout.session.async_payment_succeeded": _on_async_payment_succeeded,
    "checkout.session.async_payment_failed": _on_async_payment_failed,
    "checkout.session.expired": _on_checkout_expired,
    "payment_intent.payment_failed": _on_payment_intent_failed,
}


async def handle_webhook_event(db: AsyncSession, event: Mapping[str, Any]) -> str:
    """Dispatch a verified provider event; returns a short outcome label."""
    event_type = str(event.get("type") or "")
    handler = EVENT_HANDLERS.get(event_type)
    if handler is None:
        logger.info("Unhandled event type: %s", event_type)
        return "unhandled"

    payload = (event.get("data") or {}).get("object") or {}
    outcome = await handler(db, payload)
    logger.info("Webhook %s (%s) -> %s", event_type, event.get("id"), outcome)
    return outcome


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


async def list_payment_history(db: AsyncSession, user_id: str, *, page: int = 1, limit: int = 10) -> Dict[str, Any]:
    page = max(int(page), 1)
    limit = max(1, min(int(limit), 100))
    base = select(Transaction).where(
        Transaction.user_id == user_id,
        Transaction.status == TRANSACTION_PAID,
    )
    total_result = await db.execute(select(func.count()).select_from(base.subquery()))
    total = int(total_result.scalar() or 0)
    result = await db.execute(
        base.order_by(Transaction.created_at.desc()).offset((page - 1) * limit).limit(limit)
    )
    return {
        "payments": [serialize_transaction(txn) for txn in result.scalars().all()],
        "pagination": {
            "page": page,
            "limit": limit,
            "total": total,
            "pages": (total + limit - 1) // limit,
        },
    }
