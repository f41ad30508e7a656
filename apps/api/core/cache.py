"""
Redis Caching Layer

Short-lived read models: event leaderboards, per-user completion and the
request scheduler's published window usage. Values are JSON. If Redis is
unreachable every read is a miss and every write a no-op; nothing here is
the source of truth.

Upstream activity payloads are NOT cached here; see services/activity_cache.py.
"""
import json
import logging
from typing import Any, Optional

import redis
from redis.exceptions import RedisError

from core.config import settings

logger = logging.getLogger(__name__)

_redis_client: Optional[redis.Redis] = None

LEADERBOARD_PREFIX = "leaderboard"
COMPLETION_PREFIX = "completion"


def get_redis_client() -> Optional[redis.Redis]:
    """Shared client, created on first use. None while Redis is unreachable."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client

    try:
        client = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        client.ping()
    except RedisError as e:
        logger.warning(f"Redis unavailable: {e}. Leaderboard caching disabled.")
        return None

    logger.info("Redis connection established")
    _redis_client = client
    return client


def get_cache(key: str) -> Optional[Any]:
    client = get_redis_client()
    if client is None:
        return None
    try:
        raw = client.get(key)
    except RedisError as e:
        logger.warning(f"Cache get error for key {key}: {e}")
        return None
    return json.loads(raw) if raw else None


def set_cache(key: str, value: Any, ttl: Optional[int] = None) -> bool:
    """Store a JSON value with a TTL (CACHE_TTL_DEFAULT when omitted)."""
    client = get_redis_client()
    if client is None:
        return False
    try:
        # default=str covers dates in leaderboard payloads
        client.setex(key, ttl or settings.CACHE_TTL_DEFAULT, json.dumps(value, default=str))
    except RedisError as e:
        logger.warning(f"Cache set error for key {key}: {e}")
        return False
    return True


def invalidate_pattern(pattern: str) -> int:
    """Delete keys matching a glob pattern. SCAN-based so a large keyspace does not block Redis."""
    client = get_redis_client()
    if client is None:
        return 0
    try:
        keys = list(client.scan_iter(match=pattern, count=500))
        return client.delete(*keys) if keys else 0
    except RedisError as e:
        logger.warning(f"Cache invalidation error for pattern {pattern}: {e}")
        return 0


def leaderboard_cache_key(event_id: str) -> str:
    return f"{LEADERBOARD_PREFIX}:{event_id}"


def completion_cache_key(event_id: str, user_id: str) -> str:
    return f"{COMPLETION_PREFIX}:{event_id}:{user_id}"


def invalidate_event_cache(event_id: str) -> int:
    """Drop an event's leaderboard and every participant's completion entry after a scoring write."""
    deleted = invalidate_pattern(leaderboard_cache_key(event_id))
    deleted += invalidate_pattern(completion_cache_key(event_id, "*"))
    if deleted:
        logger.debug(f"Invalidated {deleted} cache entries for event {event_id}")
    return deleted
