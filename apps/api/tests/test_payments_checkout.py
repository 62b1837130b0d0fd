import pytest
from fastapi import HTTPException
from sqlalchemy.future import select

from conftest import auth_header, create_account
from models.transaction import TRANSACTION_CREATED, Transaction
from models.user import User
from services.plan_catalog import build_default_catalog


BUYER_ID = "buyer-1"


def test_default_catalog_plans_are_immutable_and_priced_in_minor_units():
    catalog = build_default_catalog("USD")
    assert [plan.plan_id for plan in catalog.list_plans()] == ["starter", "pro", "ultimate"]
    starter = catalog.require("starter")
    assert starter.credits == 500
    assert starter.amount == 499
    assert starter.currency == "usd"
    assert "pro" in catalog
    assert catalog.get("enterprise") is None
    assert catalog.get(None) is None
    with pytest.raises(Exception):
        starter.credits = 1


def test_catalog_require_rejects_unknown_plan():
    catalog = build_default_catalog("usd")
    with pytest.raises(HTTPException) as exc_info:
        catalog.require("enterprise")
    assert exc_info.value.status_code == 400
    assert exc_info.value.detail["code"] == "INVALID_PLAN"


@pytest.mark.asyncio
async def test_plans_endpoint_lists_catalog(api_env):
    response = await api_env.client.get("/payments/plans")
    assert response.status_code == 200
    plans = response.json()["plans"]
    assert {plan["plan_id"] for plan in plans} == {"starter", "pro", "ultimate"}
    pro = next(plan for plan in plans if plan["plan_id"] == "pro")
    assert pro["popular"] is True
    assert pro["credits"] == 2000
    assert pro["price_formatted"] == "14.99 USD"


@pytest.mark.asyncio
async def test_checkout_requires_session_token(api_env):
    response = await api_env.client.post("/payments/create-checkout-session", json={"plan_id": "starter"})
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_checkout_rejects_unknown_plan_without_side_effects(api_env):
    await create_account(api_env.session_maker, user_id=BUYER_ID)

    response = await api_env.client.post(
        "/payments/create-checkout-session",
        json={"plan_id": "enterprise"},
        headers=auth_header(BUYER_ID),
    )
    assert response.status_code == 400
    assert response.json()["detail"]["code"] == "INVALID_PLAN"
    assert api_env.gateway.customers == []
    assert api_env.gateway.checkout_calls == []

    async with api_env.session_maker() as session:
        result = await session.execute(select(Transaction))
        assert result.scalars().all() == []


@pytest.mark.asyncio
async def test_checkout_records_pending_transaction_and_reuses_customer(api_env):
    await create_account(api_env.session_maker, user_id=BUYER_ID)

    first = await api_env.client.post(
        "/payments/create-checkout-session",
        json={"plan_id": "starter"},
        headers=auth_header(BUYER_ID),
    )
    second = await api_env.client.post(
        "/payments/create-checkout-session",
        json={"plan_id": "pro"},
        headers=auth_header(BUYER_ID),
    )
    assert first.status_code == 200
    assert second.status_code == 200
    first_payload = first.json()
    assert first_payload["session_id"] == "cs_test_1"
    assert first_payload["url"].startswith("https://checkout.stripe.test/")

    # One Stripe customer per account, created lazily on first purchase.
    assert len(api_env.gateway.customers) == 1
    customer_id = api_env.gateway.customers[0]["id"]
    assert {call["customer_id"] for call in api_env.gateway.checkout_calls} == {customer_id}

    call = api_env.gateway.checkout_calls[0]
    assert call["metadata"] == {
        "user_id": BUYER_ID,
        "plan_id": "starter",
        "credits": "500",
        "transaction_id": first_payload["transaction_id"],
    }
    assert call["idempotency_key"] == f"checkout-{first_payload['transaction_id']}"
    assert call["success_url"].endswith("/purchase-success?session_id={CHECKOUT_SESSION_ID}")
    assert call["cancel_url"].endswith("/purchase-credits?canceled=true")
    assert call["line_items"][0]["price_data"]["unit_amount"] == 499

    async with api_env.session_maker() as session:
        user = await session.get(User, BUYER_ID)
        assert user.stripe_customer_id == customer_id
        assert user.credits == 0

        txn = await session.get(Transaction, first_payload["transaction_id"])
        assert txn.status == TRANSACTION_CREATED
        assert txn.pending is True
        assert txn.session_id == "cs_test_1"
        assert txn.credits == 500
        assert txn.amount == 499
        assert txn.currency == "usd"
        assert txn.completed_at is None


@pytest.mark.asyncio
async def test_checkout_provider_failure_returns_generic_error(api_env):
    await create_account(api_env.session_maker, user_id=BUYER_ID, credits=7)
    api_env.gateway.fail_checkout = True

    response = await api_env.client.post(
        "/payments/create-checkout-session",
        json={"plan_id": "starter"},
        headers=auth_header(BUYER_ID),
    )
    assert response.status_code == 500
    detail = response.json()["detail"]
    assert detail["code"] == "CHECKOUT_SESSION_ERROR"
    assert "error" not in detail

    async with api_env.session_maker() as session:
        user = await session.get(User, BUYER_ID)
        assert user.credits == 7
        result = await session.execute(select(Transaction).where(Transaction.user_id == BUYER_ID))
        transactions = result.scalars().all()
        # The orphaned attempt never received a session and stays unpaid.
        assert all(txn.session_id is None for txn in transactions)
        assert all(txn.status == TRANSACTION_CREATED for txn in transactions)


@pytest.mark.asyncio
async def test_checkout_rejects_inactive_account(api_env):
    await create_account(api_env.session_maker, user_id=BUYER_ID, is_active=False)

    response = await api_env.client.post(
        "/payments/create-checkout-session",
        json={"plan_id": "starter"},
        headers=auth_header(BUYER_ID),
    )
    assert response.status_code == 403
    assert response.json()["detail"]["code"] == "ACCOUNT_INACTIVE"
    assert api_env.gateway.checkout_calls == []
