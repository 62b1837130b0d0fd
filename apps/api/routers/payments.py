"""Credit purchase router: plans, checkout, verification, history and webhook."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from models.user import User
from routers.auth_scope import get_current_account
from routers.rate_limit import rate_limit
from services.payments import (
    handle_webhook_event,
    list_payment_history,
    start_checkout,
    verify_checkout_session,
)
from services.plan_catalog import PlanCatalog, get_plan_catalog
from services.stripe_gateway import InvalidWebhookSignature, StripeGateway, get_payment_gateway

router = APIRouter()
logger = logging.getLogger(__name__)


class CheckoutRequest(BaseModel):
    plan_id: str = Field(min_length=1, max_length=64)


@router.get("/plans")
async def get_plans(catalog: PlanCatalog = Depends(get_plan_catalog)):
    return {"plans": [plan.to_dict() for plan in catalog.list_plans()]}


@router.post("/create-checkout-session")
async def create_checkout_session(
    request: CheckoutRequest,
    _rate_limit: None = Depends(rate_limit("billing_checkout", limit=20, window_seconds=3600)),
    user: User = Depends(get_current_account),
    catalog: PlanCatalog = Depends(get_plan_catalog),
    gateway: StripeGateway = Depends(get_payment_gateway),
    db: AsyncSession = Depends(get_db),
):
    """Open a Stripe Checkout session for a credit pack."""
    return await start_checkout(
        db,
        user=user,
        plan_id=request.plan_id,
        catalog=catalog,
        gateway=gateway,
    )


@router.get("/verify-session/{session_id}")
async def verify_session(
    session_id: str,
    _rate_limit: None = Depends(rate_limit("billing_verify", limit=120, window_seconds=3600)),
    user: User = Depends(get_current_account),
    gateway: StripeGateway = Depends(get_payment_gateway),
    db: AsyncSession = Depends(get_db),
):
    """Confirm a checkout session after the success redirect."""
    return await verify_checkout_session(db, user=user, session_id=session_id, gateway=gateway)


@router.get("/history")
async def payment_history(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    user: User = Depends(get_current_account),
    db: AsyncSession = Depends(get_db),
):
    return await list_payment_history(db, user.id, page=page, limit=limit)


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="stripe-signature"),
    gateway: StripeGateway = Depends(get_payment_gateway),
    db: AsyncSession = Depends(get_db),
):
    """Receive signed Stripe events. Processing errors are logged, never surfaced."""
    payload = await request.body()
    try:
        event = gateway.construct_event(payload, stripe_signature)
    except InvalidWebhookSignature as exc:
        logger.warning("Webhook signature verification failed: %s", exc)
        raise HTTPException(
            status_code=400,
            detail={"message": "Webhook signature verification failed", "code": "INVALID_SIGNATURE"},
        ) from exc

    try:
        await handle_webhook_event(db, event)
    except Exception:
        logger.exception("Error processing webhook event %s (%s)", event.get("id"), event.get("type"))
        await db.rollback()

    return {"received": True}
