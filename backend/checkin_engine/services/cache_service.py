"""
Redis caching service for crowd levels.

CACHING STRATEGY
================

What we cache:
  - The crowd level read for one venue (count + level, JSON-serialized)
  - Cache key pattern: "crowd:level:{venue_id}"

Why:
  - Crowd level is read on every venue page view and poll
  - The count query is cheap but runs constantly on the hottest venues

Invalidation strategy:
  - On admission: delete that venue's key, so a new check-in shows up at once
  - Expiry of check-ins is not an event we write, so the TTL bounds how long
    a cached count can include a check-in that just expired. The TTL is a
    few seconds (CROWD_CACHE_TTL) to keep the "live" promise.

The database stays authoritative. When Redis is disabled or unreachable,
every read goes to the database.
"""

import json
import time
from typing import Optional

import redis.asyncio as redis
from checkin_engine.core.config import get_settings
from checkin_engine.core.logging import get_logger
from checkin_engine.core.metrics import record_cache_operation, redis_connection_errors

logger = get_logger(__name__)
settings = get_settings()

_redis_client: Optional[redis.Redis] = None
_last_failure: Optional[float] = None

# While Redis is down, only try to reconnect this often; crowd polls are hot
RECONNECT_BACKOFF_SECONDS = 10.0


async def get_redis() -> Optional[redis.Redis]:
    """Shared Redis client, or None when Redis is disabled or unreachable."""
    global _redis_client, _last_failure

    if not settings.REDIS_ENABLED:
        return None
    if _redis_client is not None:
        return _redis_client
    if _last_failure is not None and time.monotonic() - _last_failure < RECONNECT_BACKOFF_SECONDS:
        return None

    client = redis.from_url(
        settings.REDIS_URL,
        encoding="utf-8",
        decode_responses=True,
        socket_connect_timeout=2,
        socket_timeout=2,
        health_check_interval=30,
    )
    try:
        await client.ping()
    except Exception as e:
        redis_connection_errors.inc()
        _last_failure = time.monotonic()
        logger.error("redis_connection_failed", error=str(e), retry_in=RECONNECT_BACKOFF_SECONDS)
        await client.aclose()
        return None

    _redis_client, _last_failure = client, None
    logger.info("redis_connected", url=settings.REDIS_URL)
    return _redis_client


async def close_redis() -> None:
    """Close the shared client on shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None


def _make_crowd_key(venue_id: str) -> str:
    return f"crowd:level:{venue_id}"


async def get_cached_crowd(venue_id: str) -> Optional[dict]:
    """Retrieve a cached crowd level read."""
    client = await get_redis()
    if not client:
        return None

    key = _make_crowd_key(venue_id)
    try:
        data = await client.get(key)
        record_cache_operation("get", hit=bool(data))
        if data:
            logger.debug("cache_hit", key=key)
            return json.loads(data)
        logger.debug("cache_miss", key=key)
    except Exception as e:
        logger.error("cache_get_error", key=key, error=str(e))

    return None


async def set_cached_crowd(venue_id: str, data: dict) -> None:
    """Cache a crowd level read with a short TTL."""
    client = await get_redis()
    if not client:
        return

    key = _make_crowd_key(venue_id)
    try:
        await client.setex(key, settings.CROWD_CACHE_TTL, json.dumps(data, default=str))
        logger.debug("cache_set", key=key, ttl=settings.CROWD_CACHE_TTL)
    except Exception as e:
        logger.error("cache_set_error", key=key, error=str(e))


async def invalidate_crowd_cache(venue_id: str) -> None:
    """Drop a venue's cached crowd level after a new check-in."""
    client = await get_redis()
    if not client:
        return

    key = _make_crowd_key(venue_id)
    try:
        await client.delete(key)
        logger.debug("cache_invalidated", key=key)
    except Exception as e:
        logger.error("cache_invalidation_error", key=key, error=str(e))


async def get_cache_stats() -> dict:
    """Redis keyspace hit rate plus the number of venues with a cached crowd level."""
    client = await get_redis()
    if client is None:
        return {"status": "disabled"}

    try:
        info = await client.info("stats")
        cached_venues = 0
        async for _ in client.scan_iter(match=_make_crowd_key("*"), count=100):
            cached_venues += 1
    except Exception as e:
        return {"status": "error", "error": str(e)}

    hits = info.get("keyspace_hits", 0)
    misses = info.get("keyspace_misses", 0)
    lookups = hits + misses
    return {
        "status": "connected",
        "hits": hits,
        "misses": misses,
        "hit_rate": round(hits / lookups * 100, 2) if lookups else 0.0,
        "cached_venues": cached_venues,
    }
