import pytest
from sqlalchemy.future import select

from conftest import auth_header, create_account
from config import settings
from models.credit_ledger import LEDGER_REASON_GRANT, REF_TYPE_ACCOUNT, CreditLedger
from models.user import User
from services.credits import grant_signup_credits
from services.session_token import create_refresh_token, create_session_token


REGISTRATION = {"username": "alice", "email": "Alice@Example.com", "password": "s3cret-pass"}


@pytest.mark.asyncio
async def test_register_grants_starting_credits_through_the_ledger(api_env):
    response = await api_env.client.post("/auth/register", json=REGISTRATION)
    assert response.status_code == 201
    payload = response.json()
    user = payload["user"]
    assert user["email"] == "alice@example.com"
    assert user["credits"] == settings.SIGNUP_CREDIT_GRANT
    assert user["total_purchased"] == 0
    assert user["billing_customer"] is False
    assert payload["session_token"]

    async with api_env.session_maker() as session:
        result = await session.execute(select(CreditLedger).where(CreditLedger.user_id == user["user_id"]))
        entries = result.scalars().all()
    assert [(entry.reason, entry.ref_type, entry.delta) for entry in entries] == [
        (LEDGER_REASON_GRANT, REF_TYPE_ACCOUNT, settings.SIGNUP_CREDIT_GRANT)
    ]

    me = await api_env.client.get(
        "/auth/me",
        headers={"Authorization": f"Bearer {payload['session_token']}"},
    )
    assert me.status_code == 200
    assert me.json()["user"]["credits"] == settings.SIGNUP_CREDIT_GRANT

    reconcile = await api_env.client.get(
        "/billing/reconcile",
        headers={"Authorization": f"Bearer {payload['session_token']}"},
    )
    assert reconcile.status_code == 200
    assert reconcile.json()["balance_reconciled"] is True


@pytest.mark.asyncio
async def test_register_rejects_duplicate_email(api_env):
    first = await api_env.client.post("/auth/register", json=REGISTRATION)
    second = await api_env.client.post(
        "/auth/register",
        json={**REGISTRATION, "username": "alice2", "email": "alice@example.com"},
    )
    assert first.status_code == 201
    assert second.status_code == 409
    assert second.json()["detail"]["code"] == "ACCOUNT_EXISTS"


@pytest.mark.asyncio
async def test_login_checks_password(api_env):
    await api_env.client.post("/auth/register", json=REGISTRATION)

    ok = await api_env.client.post(
        "/auth/login",
        json={"email": "alice@example.com", "password": REGISTRATION["password"]},
    )
    assert ok.status_code == 200
    assert ok.json()["user"]["username"] == "alice"

    wrong = await api_env.client.post(
        "/auth/login",
        json={"email": "alice@example.com", "password": "not-the-password"},
    )
    assert wrong.status_code == 401
    assert wrong.json()["detail"]["code"] == "INVALID_CREDENTIALS"


@pytest.mark.asyncio
async def test_inactive_account_is_rejected(api_env):
    await create_account(api_env.session_maker, user_id="dormant", is_active=False)

    response = await api_env.client.get("/auth/me", headers=auth_header("dormant"))
    assert response.status_code == 403
    assert response.json()["detail"]["code"] == "ACCOUNT_INACTIVE"


@pytest.mark.asyncio
async def test_me_requires_valid_session_token(api_env):
    missing = await api_env.client.get("/auth/me")
    forged = await api_env.client.get("/auth/me", headers={"Authorization": "Bearer not-a-token"})
    assert missing.status_code == 401
    assert forged.status_code == 401


@pytest.mark.asyncio
async def test_signup_grant_is_recorded_once(api_env):
    await create_account(api_env.session_maker, user_id="granted", credits=100)

    async with api_env.session_maker() as session:
        assert await grant_signup_credits("granted", session, credits=100) is False
        user = await session.get(User, "granted")
        assert user.credits == 100


@pytest.mark.asyncio
async def test_credit_summary_lists_recent_entries(api_env):
    await create_account(api_env.session_maker, user_id="summary", credits=40)

    response = await api_env.client.get("/billing/credits", headers=auth_header("summary"))
    assert response.status_code == 200
    payload = response.json()
    assert payload["balance"] == 40
    assert payload["total_purchased"] == 0
    assert [entry["reason"] for entry in payload["recent_entries"]] == [LEDGER_REASON_GRANT]


@pytest.mark.asyncio
async def test_refresh_token_issues_a_new_session(api_env):
    registered = (await api_env.client.post("/auth/register", json=REGISTRATION)).json()
    refresh_token = registered["refresh_token"]

    # A refresh token is not accepted as a bearer session.
    misuse = await api_env.client.get("/auth/me", headers={"Authorization": f"Bearer {refresh_token}"})
    assert misuse.status_code == 401

    refreshed = await api_env.client.post("/auth/refresh", json={"refresh_token": refresh_token})
    assert refreshed.status_code == 200
    payload = refreshed.json()
    assert payload["refresh_token"]

    me = await api_env.client.get("/auth/me", headers={"Authorization": f"Bearer {payload['session_token']}"})
    assert me.status_code == 200
    assert me.json()["user"]["user_id"] == registered["user"]["user_id"]


@pytest.mark.asyncio
async def test_refresh_rejects_missing_session_and_inactive_tokens(api_env):
    await create_account(api_env.session_maker, user_id="dormant", is_active=False)

    missing = await api_env.client.post("/auth/refresh", json={})
    assert missing.status_code == 401
    assert missing.json()["detail"]["code"] == "NO_REFRESH_TOKEN"

    session_token = create_session_token("dormant")["token"]
    wrong_type = await api_env.client.post("/auth/refresh", json={"refresh_token": session_token})
    assert wrong_type.status_code == 401
    assert wrong_type.json()["detail"]["code"] == "INVALID_REFRESH_TOKEN"

    inactive = await api_env.client.post(
        "/auth/refresh",
        json={"refresh_token": create_refresh_token("dormant")["token"]},
    )
    assert inactive.status_code == 401
    assert inactive.json()["detail"]["code"] == "INVALID_USER"
