import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, replace
from typing import Any, Dict, List, Optional, Tuple

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base, get_db
from main import app
from models.user import User
from routers import rate_limit
from services.credits import grant_signup_credits
from services.session_token import create_session_token
from services.stripe_gateway import CheckoutSessionInfo, StripeGateway, get_payment_gateway


WEBHOOK_SECRET = "whsec_test_secret"


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


class FakeStripeGateway(StripeGateway):
    """Stripe stand-in: network calls are faked, webhook signatures are verified for real."""

    def __init__(self):
        super().__init__(api_key="sk_test_fake", webhook_secret=WEBHOOK_SECRET)
        self.customers: List[Dict[str, Any]] = []
        self.sessions: Dict[str, CheckoutSessionInfo] = {}
        self.checkout_calls: List[Dict[str, Any]] = []
        self.fail_checkout = False
        self.fail_retrieve = False

    async def create_customer(self, *, email: str, metadata: Dict[str, str]) -> str:
        customer_id = f"cus_test_{len(self.customers) + 1}"
        self.customers.append({"id": customer_id, "email": email, "metadata": dict(metadata)})
        return customer_id

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
        if self.fail_checkout:
            raise RuntimeError("stripe unavailable")
        session_id = f"cs_test_{len(self.sessions) + 1}"
        price = line_items[0]["price_data"]
        session = CheckoutSessionInfo(
            session_id=session_id,
            payment_status="unpaid",
            status="open",
            url=f"https://checkout.stripe.test/pay/{session_id}",
            customer_id=customer_id,
            amount_total=price["unit_amount"],
            currency=price["currency"],
            metadata=dict(metadata),
        )
        self.sessions[session_id] = session
        self.checkout_calls.append(
            {
                "customer_id": customer_id,
                "line_items": line_items,
                "success_url": success_url,
                "cancel_url": cancel_url,
                "metadata": dict(metadata),
                "idempotency_key": idempotency_key,
            }
        )
        return session

    async def retrieve_checkout_session(self, session_id: str) -> CheckoutSessionInfo:
        if self.fail_retrieve or session_id not in self.sessions:
            raise RuntimeError(f"No such checkout.session: {session_id}")
        return replace(self.sessions[session_id], metadata=dict(self.sessions[session_id].metadata))

    def pay(self, session_id: str, payment_intent_id: Optional[str] = None) -> CheckoutSessionInfo:
        session = self.sessions[session_id]
        session.payment_status = "paid"
        session.status = "complete"
        session.payment_intent_id = payment_intent_id or f"pi_{session_id}"
        return session

    def session_object(self, session_id: str) -> Dict[str, Any]:
        session = self.sessions[session_id]
        return {
            "id": session.session_id,
            "object": "checkout.session",
            "status": session.status,
            "payment_status": session.payment_status,
            "payment_intent": session.payment_intent_id,
            "customer": session.customer_id,
            "amount_total": session.amount_total,
            "currency": session.currency,
            "metadata": dict(session.metadata),
        }


def signed_event(
    event_type: str,
    data_object: Dict[str, Any],
    *,
    secret: str = WEBHOOK_SECRET,
) -> Tuple[bytes, Dict[str, str]]:
    """Serialize an event and sign it the way Stripe does (``t=...,v1=...``)."""
    payload = json.dumps(
        {
            "id": f"evt_{uuid.uuid4().hex[:16]}",
            "object": "event",
            "type": event_type,
            "data": {"object": data_object},
        }
    )
    timestamp = int(time.time())
    signature = hmac.new(
        secret.encode("utf-8"),
        f"{timestamp}.{payload}".encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()
    headers = {
        "stripe-signature": f"t={timestamp},v1={signature}",
        "content-type": "application/json",
    }
    return payload.encode("utf-8"), headers


def auth_header(user_id: str) -> Dict[str, str]:
    return {"Authorization": f"Bearer {create_session_token(user_id)['token']}"}


async def create_account(
    session_maker,
    *,
    user_id: str,
    credits: int = 0,
    is_active: bool = True,
) -> None:
    async with session_maker() as session:
        session.add(
            User(
                id=user_id,
                username=user_id,
                email=f"{user_id}@example.com",
                password_hash="not-used",
                credits=0,
                total_purchased=0,
                is_active=is_active,
            )
        )
        await session.commit()
        if credits:
            await grant_signup_credits(user_id, session, credits=credits)


@dataclass
class ApiEnv:
    client: AsyncClient
    session_maker: Any
    gateway: FakeStripeGateway


@pytest_asyncio.fixture
async def api_env(tmp_path):
    db_path = tmp_path / "ai_chat.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async def override_get_db():
        async with session_maker() as session:
            yield session

    gateway = FakeStripeGateway()
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield ApiEnv(client=client, session_maker=session_maker, gateway=gateway)

    app.dependency_overrides.pop(get_db, None)
    app.dependency_overrides.pop(get_payment_gateway, None)
    await engine.dispose()
