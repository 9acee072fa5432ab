"""
Per-client-IP fixed-window rate limit for the auth endpoints, kept in Redis.
"""
import logging

import redis.asyncio as aioredis
from fastapi import HTTPException, Request, status
from redis.exceptions import RedisError

from imagepipe.config import settings

logger = logging.getLogger(__name__)

_client = None


def get_rate_limit_client() -> aioredis.Redis:
    global _client
    if _client is None:
        _client = aioredis.from_url(settings.redis_url, decode_responses=True)
    return _client


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


async def auth_rate_limit(request: Request) -> None:
    """
    FastAPI dependency; raises 429 once a client exceeds `auth_rate_limit`
    requests in the current window. Redis outages let requests through.
    """
    key = f"ratelimit:auth:{client_ip(request)}"
    try:
        redis_client = get_rate_limit_client()
        count = await redis_client.incr(key)
        if count == 1:
            await redis_client.expire(key, settings.auth_rate_window_seconds)
    except RedisError as e:
        logger.warning(f"Rate limiter unavailable, allowing request: {e}")
        return

    if count > settings.auth_rate_limit:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many requests. Try again later.",
            headers={"Retry-After": str(settings.auth_rate_window_seconds)},
        )
