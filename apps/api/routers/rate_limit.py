"""Redis-backed sliding-window rate limiting."""

from __future__ import annotations

import logging
import time
import uuid
from collections import deque
from dataclasses import dataclass
from typing import Callable, Deque, Dict

from fastapi import HTTPException, Request
import redis.asyncio as redis

from config import settings

logger = logging.getLogger(__name__)

_local_windows: Dict[str, Deque[float]] = {}


@dataclass
class RateLimitResult:
    allowed: bool
    limit: int
    remaining: int
    reset_at: float

    @property
    def retry_after(self) -> int:
        return max(int(self.reset_at - time.time()) + 1, 1)

    def headers(self) -> Dict[str, str]:
        headers = {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(int(self.reset_at)),
        }
        if not self.allowed:
            headers["Retry-After"] = str(self.retry_after)
        return headers


def _client_identifier(request: Request) -> str:
    if request.client and request.client.host:
        return request.client.host
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return "unknown"


async def _consume_local(key: str, limit: int, window_seconds: int) -> RateLimitResult:
    now = time.time()
    window = _local_windows.setdefault(key, deque())
    while window and window[0] <= now - window_seconds:
        window.popleft()
    allowed = len(window) < limit
    if allowed:
        window.append(now)
    oldest = window[0] if window else now
    return RateLimitResult(
        allowed=allowed,
        limit=limit,
        remaining=max(limit - len(window), 0),
        reset_at=oldest + window_seconds,
    )


async def _consume_redis(key: str, limit: int, window_seconds: int) -> RateLimitResult:
    now = time.time()
    member = f"{now}:{uuid.uuid4().hex}"
    redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    try:
        async with redis_client.pipeline(transaction=True) as pipe:
            pipe.zremrangebyscore(key, 0, now - window_seconds)
            pipe.zadd(key, {member: now})
            pipe.zcard(key)
            pipe.zrange(key, 0, 0, withscores=True)
            pipe.expire(key, window_seconds)
            _, _, count, oldest, _ = await pipe.execute()
        allowed = count <= limit
        if not allowed:
            await redis_client.zrem(key, member)
            count -= 1
    finally:
        await redis_client.aclose()

    oldest_score = float(oldest[0][1]) if oldest else now
    return RateLimitResult(
        allowed=allowed,
        limit=limit,
        remaining=max(limit - count, 0),
        reset_at=oldest_score + window_seconds,
    )


async def check_rate_limit(key: str, limit: int, window_seconds: int) -> RateLimitResult:
    """Count one event against ``key`` in a rolling window of ``window_seconds``."""
    full_key = f"podbrief:rate:{key}"
    try:
        return await _consume_redis(full_key, limit, window_seconds)
    except Exception as exc:
        logger.debug("Redis rate limiter unavailable, using local window: %s", exc)
        return await _consume_local(full_key, limit, window_seconds)


def reset_local_rate_limits() -> None:
    _local_windows.clear()


def raise_rate_limited(result: RateLimitResult, what: str = "requests") -> None:
    raise HTTPException(
        status_code=429,
        detail={
            "code": "rate_limited",
            "message": f"Too many {what}. Try again in {result.retry_after} seconds.",
            "retry_after": result.retry_after,
            "limit": result.limit,
        },
        headers=result.headers(),
    )


async def enforce_upload_rate_limit(request: Request, user_id: str) -> None:
    """Charge one upload initiation to ``user_id``; raise 429 when over the hourly quota."""
    if getattr(request.app.state, "disable_rate_limits", False):
        return
    result = await check_rate_limit(
        f"upload:{user_id}",
        int(settings.UPLOAD_RATE_LIMIT),
        int(settings.UPLOAD_RATE_WINDOW_SECONDS),
    )
    if not result.allowed:
        logger.info("Upload rate limit hit for user %s", user_id)
        raise_rate_limited(result, "uploads")


def rate_limit(prefix: str, limit: int, window_seconds: int) -> Callable[[], None]:
    """Return a FastAPI dependency that enforces per-client request quotas."""

    async def _dependency(request: Request):
        if getattr(request.app.state, "disable_rate_limits", False):
            return
        result = await check_rate_limit(f"{prefix}:{_client_identifier(request)}", limit, window_seconds)
        if not result.allowed:
            raise_rate_limited(result)

    return _dependency
