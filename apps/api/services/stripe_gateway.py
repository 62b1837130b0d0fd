"""Stripe adapter for customers, checkout sessions and webhook verification."""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Dict, List, Mapping, Optional

import stripe

from config import settings

logger = logging.getLogger(__name__)


class InvalidWebhookSignature(Exception):
    """Raised when a webhook payload cannot be trusted."""


def _as_plain_dict(value: Any) -> Dict[str, Any]:
    if value is None:
        return {}
    if hasattr(value, "to_dict"):
        return dict(value.to_dict())
    return dict(value)


def _reference_id(value: Any) -> Optional[str]:
    """Stripe references arrive either as an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    if isinstance(value, Mapping):
        return value.get("id")
    return getattr(value, "id", None)


@dataclass
class CheckoutSessionInfo:
    session_id: str
    payment_status: str = "unpaid"
    status: Optional[str] = None
    url: Optional[str] = None
    payment_intent_id: Optional[str] = None
    customer_id: Optional[str] = None
    amount_total: Optional[int] = None
    currency: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "CheckoutSessionInfo":
        """Build from a webhook ``data.object`` or any session-shaped mapping."""
        return cls(
            session_id=str(payload.get("id") or ""),
            payment_status=str(payload.get("payment_status") or "unpaid"),
            status=payload.get("status"),
            url=payload.get("url"),
            payment_intent_id=_reference_id(payload.get("payment_intent")),
            customer_id=_reference_id(payload.get("customer")),
            amount_total=payload.get("amount_total"),
            currency=payload.get("currency"),
            metadata={str(k): str(v) for k, v in _as_plain_dict(payload.get("metadata")).items()},
        )

    @classmethod
    def from_stripe(cls, session: Any) -> "CheckoutSessionInfo":
        return cls(
            session_id=session.id,
            payment_status=getattr(session, "payment_status", None) or "unpaid",
            status=getattr(session, "status", None),
            url=getattr(session, "url", None),
            payment_intent_id=_reference_id(getattr(session, "payment_intent", None)),
            customer_id=_reference_id(getattr(session, "customer", None)),
            amount_total=getattr(session, "amount_total", None),
            currency=getattr(session, "currency", None),
            metadata={str(k): str(v) for k, v in _as_plain_dict(getattr(session, "metadata", None)).items()},
        )

    def summary(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "payment_status": self.payment_status,
            "payment_intent_id": self.payment_intent_id,
            "amount_total": self.amount_total,
            "currency": self.currency,
        }


class StripeGateway:
    """Thin async facade over the blocking Stripe SDK."""

    def __init__(self, api_key: str, webhook_secret: str, webhook_tolerance: int = 300):
        self._api_key = api_key
        self._webhook_secret = webhook_secret
        self._webhook_tolerance = webhook_tolerance

    def _require_api_key(self) -> str:
        if not self._api_key:
            raise RuntimeError("Stripe is not configured. Set STRIPE_SECRET_KEY.")
        return self._api_key

    async def create_customer(self, *, email: str, metadata: Dict[str, str]) -> str:
        api_key = self._require_api_key()
        customer = await asyncio.to_thread(
            stripe.Customer.create,
            api_key=api_key,
            email=email,
            metadata=metadata,
        )
        logger.info("Created Stripe customer %s", customer.id)
        return customer.id

    async def create_checkout_session(
        self,
        *,
        customer_id: str,
        line_items: List[Dict[str, Any]],
        success_url: str,
        cancel_url: str,
        metadata: Dict[str, str],
        idempotency_key: Optional[str] = None,
    ) -> CheckoutSessionInfo:
        api_key = self._require_api_key()
        options: Dict[str, Any] = {"api_key": api_key}
        if idempotency_key:
            options["idempotency_key"] = idempotency_key
        session = await asyncio.to_thread(
            stripe.checkout.Session.create,
            **options,
            customer=customer_id,
            mode="payment",
            payment_method_types=["card"],
            line_items=line_items,
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
            # Copied onto the PaymentIntent so payment_intent.* events can be correlated.
            payment_intent_data={"metadata": metadata},
        )
        return CheckoutSessionInfo.from_stripe(session)

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionInfo:
        api_key = self._require_api_key()
        session = await asyncio.to_thread(stripe.checkout.Session.retrieve, session_id, api_key=api_key)
        return CheckoutSessionInfo.from_stripe(session)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify the signature header against the raw body, then parse it."""
        if not self._webhook_secret:
            logger.error("Webhook received but STRIPE_WEBHOOK_SECRET is not configured")
            raise InvalidWebhookSignature("Webhook secret not configured")
        if not signature:
            raise InvalidWebhookSignature("Missing signature header")

        try:
            text = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else str(payload)
        except UnicodeDecodeError as exc:
            raise InvalidWebhookSignature("Invalid payload") from exc
        try:
            stripe.WebhookSignature.verify_header(
                text,
                signature,
                self._webhook_secret,
                self._webhook_tolerance,
            )
        except stripe.SignatureVerificationError as exc:
            raise InvalidWebhookSignature("Signature mismatch") from exc

        try:
            event = json.loads(text)
        except ValueError as exc:
            raise InvalidWebhookSignature("Invalid payload") from exc
        if not isinstance(event, dict) or "type" not in event:
            raise InvalidWebhookSignature("Invalid payload")
        return event


@lru_cache(maxsize=1)
def get_payment_gateway() -> StripeGateway:
    """FastAPI dependency returning the configured Stripe gateway."""
    return StripeGateway(
        api_key=settings.STRIPE_SECRET_KEY,
        webhook_secret=settings.STRIPE_WEBHOOK_SECRET,
        webhook_tolerance=int(settings.STRIPE_WEBHOOK_TOLERANCE_SECONDS),
    )
