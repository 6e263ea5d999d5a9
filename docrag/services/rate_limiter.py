# =============================================================================
# Rate Limiter — Redis-Based Per-Key Sliding Window
# =============================================================================
#
# Sliding window counter on a Redis sorted set per API key. Each request
# adds an entry scored by its timestamp; entries older than the window are
# pruned and the rest are counted against the key's limit.
#
# If Redis is unavailable the check is skipped with a warning, so a Redis
# outage never blocks ingestion or retrieval.
#
# Uses Redis db 2 (db 0/1 belong to Celery).
# =============================================================================

from __future__ import annotations

import logging
import time

from fastapi import HTTPException
from redis.exceptions import RedisError

from docrag.config import settings
from docrag.db.models import ApiKey

logger = logging.getLogger(__name__)

WINDOW_SECONDS = 60

_redis_client = None


def _get_rate_limit_redis():
    """Lazily create and cache the async Redis client for rate limiting."""
    global _redis_client
    if _redis_client is None:
        import redis.asyncio as aioredis
        _redis_client = aioredis.from_url(
            settings.rate_limit_redis_url,
            decode_responses=True,
        )
    return _redis_client


async def check_rate_limit(api_key: ApiKey | None) -> None:
    """
    Raise 429 when the key has used up its requests for the current window.

    No-op when auth is disabled (api_key is None) or Redis is down.
    """
    if api_key is None:
        return

    limit = api_key.rate_limit_rpm or settings.rate_limit_rpm
    redis_key = f"ratelimit:apikey:{api_key.id}"

    try:
        r = _get_rate_limit_redis()
        now = time.time()

        pipe = r.pipeline()
        pipe.zremrangebyscore(redis_key, 0, now - WINDOW_SECONDS)
        pipe.zcard(redis_key)
        pipe.zadd(redis_key, {str(now): now})
        pipe.expire(redis_key, WINDOW_SECONDS + 10)
        results = await pipe.execute()
    except (RedisError, OSError) as e:
        logger.warning(
            "Rate limiter unavailable (Redis error): %s. Allowing request through.",
            e,
        )
        return

    current_count = results[1]
    if current_count >= limit:
        logger.info(
            "Rate limit hit: key=%s tenant=%s limit=%d",
            api_key.key_prefix, api_key.tenant_id, limit,
        )
        raise HTTPException(
            status_code=429,
            detail=f"Rate limit exceeded. Limit: {limit} requests/minute.",
            headers={"Retry-After": str(WINDOW_SECONDS)},
        )
