import pytest

from config import settings
from routers import health


@pytest.mark.asyncio
async def test_readiness_requires_both_stripe_keys(api_env, monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_configured")
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "")

    not_ready = await api_env.client.get("/health/ready")
    assert not_ready.status_code == 503
    assert not_ready.json() == {"ready": False, "missing": ["STRIPE_WEBHOOK_SECRET"]}

    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "whsec_configured")
    ready = await api_env.client.get("/health/ready")
    assert ready.status_code == 200
    assert ready.json() == {"ready": True}


@pytest.mark.asyncio
async def test_health_reports_components(api_env, monkeypatch):
    monkeypatch.setattr(settings, "STRIPE_SECRET_KEY", "sk_test_configured")
    monkeypatch.setattr(settings, "STRIPE_WEBHOOK_SECRET", "whsec_configured")

    async def redis_up():
        return "up"

    monkeypatch.setattr(health, "_redis_status", redis_up)
    response = await api_env.client.get("/health")
    assert response.status_code == 200
    assert response.json() == {
        "status": "healthy",
        "database": "up",
        "redis": "up",
        "stripe": "configured",
    }


@pytest.mark.asyncio
async def test_health_degrades_when_redis_is_down(api_env, monkeypatch):
    async def redis_down():
        return "down: connection refused"

    monkeypatch.setattr(health, "_redis_status", redis_down)
    payload = (await api_env.client.get("/health")).json()
    assert payload["status"] == "degraded"
    assert payload["database"] == "up"
    assert payload["redis"].startswith("down")


@pytest.mark.asyncio
async def test_liveness_endpoint(api_env):
    response = await api_env.client.get("/health/live")
    assert response.status_code == 200
    assert response.json() == {"alive": True}
