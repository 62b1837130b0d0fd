"""Redis-backed fixed-window rate limiting dependency."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Tuple

from fastapi import HTTPException, Request
import redis.asyncio as redis

from config import settings

logger = logging.getLogger(__name__)

_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()


def _caller_identifier(request: Request) -> str:
    """Prefer the bearer token so limits follow the account, not the NAT."""
    authorization = request.headers.get("authorization") or ""
    if authorization.lower().startswith("bearer ") and len(authorization) > 16:
        return f"token:{authorization[-16:]}"
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def _consume_local_quota(key: str, limit: int, window_seconds: int) -> bool:
    now = time.time()
    async with _local_lock:
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            count, reset_at = 0, now + window_seconds
        _local_counters[key] = (count + 1, reset_at)
        return count + 1 <= limit


async def _consume_redis_quota(key: str, limit: int, window_seconds: int) -> bool:
    client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        current = await client.incr(key)
        if current == 1:
            await client.expire(key, window_seconds)
    finally:
        await client.aclose()
    return int(current) <= limit


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[[Request], None]:
    """Return a FastAPI dependency enforcing per-caller request quotas."""

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"aichat:rate:{prefix}:{_caller_identifier(request)}"
        try:
            allowed = await _consume_redis_quota(key, limit, window_seconds)
        except Exception as exc:
            logger.debug("Redis rate limit unavailable (%s); using in-process counters", exc)
            allowed = await _consume_local_quota(key, limit, window_seconds)

        if not allowed:
            raise HTTPException(
                status_code=429,
                detail={"message": f"Rate limit exceeded for {prefix}. Try again later.", "code": "RATE_LIMITED"},
            )

    return _dependency
