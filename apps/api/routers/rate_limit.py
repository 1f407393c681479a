"""Per-client request throttling backed by Redis, with a process-local fallback."""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, Tuple

from fastapi import HTTPException, Request
from redis.exceptions import RedisError


logger = logging.getLogger(__name__)

_local_counters: Dict[str, Tuple[int, float]] = {}
_local_lock = asyncio.Lock()
LOCAL_COUNTER_LIMIT = 10000


def _client_identifier(request: Request) -> str:
    device_id = request.headers.get("x-device-id")
    if device_id:
        return f"device:{device_id.strip()[:100]}"
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


async def _consume_local_quota(key: str, limit: int, window_seconds: int) -> bool:
    now = time.time()
    async with _local_lock:
        if len(_local_counters) >= LOCAL_COUNTER_LIMIT:
            for stale in [k for k, (_, reset_at) in _local_counters.items() if reset_at <= now]:
                _local_counters.pop(stale, None)
            while len(_local_counters) >= LOCAL_COUNTER_LIMIT:
                _local_counters.pop(next(iter(_local_counters)))
        count, reset_at = _local_counters.get(key, (0, now + window_seconds))
        if now >= reset_at:
            count = 0
            reset_at = now + window_seconds
        count += 1
        _local_counters[key] = (count, reset_at)
        return count <= limit


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[[Request], None]:
    """Return a FastAPI dependency that enforces per-client request quotas."""

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False):
            return

        key = f"rate:{prefix}:{_client_identifier(request)}"
        redis_client = getattr(request.app.state, "redis", None)
        try:
            if redis_client is None:
                raise RedisError("redis client not configured")
            current = await redis_client.incr(key)
            if current == 1:
                await redis_client.expire(key, window_seconds)
            allowed = current <= limit
        except (RedisError, OSError):
            allowed = await _consume_local_quota(key, limit, window_seconds)

        if not allowed:
            logger.warning("Rate limit hit for %s", prefix)
            raise HTTPException(
                status_code=429,
                detail=f"Rate limit exceeded for {prefix}. Try again later.",
            )

    return _dependency
