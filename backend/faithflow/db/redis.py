"""Redis client for caching, job locks and realtime fan-out"""
import redis
import json
import logging
import uuid
from typing import Any, Dict, List, Optional
from faithflow.core.config import settings

logger = logging.getLogger(__name__)

# Lazy initialization - no connection at import time
_client = None


def get_redis_client():
    """Get or create Redis client (lazy initialization)

    This prevents connection attempts during import, allowing mocks to be applied first.
    """
    global _client
    if _client is None:
        _client = redis.from_url(settings.REDIS_URL, decode_responses=True)
    return _client


# Cache TTLs
FEATURE_KEYS_CACHE_TTL = 5 * 60  # 5 minutes
FEATURE_KEYS_CACHE_KEY = "cache:feature_keys"


def get_cached_feature_keys() -> Optional[List[str]]:
    """Get the cached list of known plan feature keys"""
    cached = get_redis_client().get(FEATURE_KEYS_CACHE_KEY)
    if cached:
        return json.loads(cached)
    return None


def set_cached_feature_keys(keys: List[str]) -> None:
    """Cache the known plan feature keys"""
    get_redis_client().setex(FEATURE_KEYS_CACHE_KEY, FEATURE_KEYS_CACHE_TTL, json.dumps(keys))


def invalidate_feature_keys_cache() -> None:
    """Drop the feature key cache (after plan features change)

    Gracefully handles Redis failures - cache invalidation should not break plan edits.
    """
    try:
        get_redis_client().delete(FEATURE_KEYS_CACHE_KEY)
    except Exception as e:
        logger.warning(f"Failed to invalidate feature key cache: {e}")


def publish_message(channel: str, message: Dict[str, Any]) -> int:
    """Publish a JSON message on a pub/sub channel, returns subscriber count"""
    return get_redis_client().publish(channel, json.dumps(message, default=str))


def acquire_lock(lock_key: str, timeout: int = 30) -> Optional[str]:
    """Acquire a distributed lock using Redis SET with NX and EX.

    Args:
        lock_key: The lock key to acquire
        timeout: Lock timeout in seconds (default 30)

    Returns:
        The owner token if the lock was acquired, None if it is already held
    """
    token = uuid.uuid4().hex
    # SET key value NX EX timeout - atomically set if not exists with expiration
    result = get_redis_client().set(lock_key, token, nx=True, ex=timeout)
    return token if result is True else None


def release_lock(lock_key: str, token: str) -> bool:
    """Release a lock only while it still holds our token.

    After the TTL expires another worker may own the key; WATCH makes the
    check-and-delete atomic so that worker's lock is left alone.
    """
    client = get_redis_client()
    with client.pipeline() as pipe:
        try:
            pipe.watch(lock_key)
            if pipe.get(lock_key) != token:
                pipe.unwatch()
                logger.warning(f"Lock {lock_key} expired or taken over, not releasing")
                return False
            pipe.multi()
            pipe.delete(lock_key)
            pipe.execute()
            return True
        except redis.WatchError:
            logger.warning(f"Lock {lock_key} changed while releasing, not releasing")
            return False
