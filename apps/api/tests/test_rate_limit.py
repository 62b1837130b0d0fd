import pytest

from main import app
from routers import rate_limit


@pytest.mark.asyncio
async def test_login_falls_back_to_local_counters_when_redis_is_down(api_env, monkeypatch):
    async def redis_down(*args, **kwargs):
        raise ConnectionError("redis unavailable")

    monkeypatch.setattr(rate_limit, "_consume_redis_quota", redis_down)
    app.state.disable_rate_limits = False

    credentials = {"email": "nobody@example.com", "password": "wrong"}
    statuses = [
        (await api_env.client.post("/auth/login", json=credentials)).status_code
        for _ in range(31)
    ]
    assert statuses[:30] == [401] * 30
    assert statuses[30] == 429

    blocked = await api_env.client.post("/auth/login", json=credentials)
    assert blocked.json()["detail"]["code"] == "RATE_LIMITED"


@pytest.mark.asyncio
async def test_rate_limits_are_tracked_per_bearer_token(api_env, monkeypatch):
    async def redis_down(*args, **kwargs):
        raise ConnectionError("redis unavailable")

    monkeypatch.setattr(rate_limit, "_consume_redis_quota", redis_down)
    app.state.disable_rate_limits = False

    dependency = rate_limit.rate_limit("unit", limit=1, window_seconds=60)

    class _Request:
        def __init__(self, token):
            self.headers = {"authorization": f"Bearer {token}"}
            self.client = None
            self.app = app

    await dependency(_Request("a" * 32))
    await dependency(_Request("b" * 32))
    with pytest.raises(Exception) as exc_info:
        await dependency(_Request("a" * 32))
    assert exc_info.value.status_code == 429
