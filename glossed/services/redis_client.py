"""Redis client for notification counters shared across workers."""

import os
import redis
import logging

logger = logging.getLogger(__name__)

# Redis connection (lazy initialization)
_redis_client = None
_warned_missing_url = False

def get_redis():
    """Get or create Redis connection."""
    global _redis_client, _warned_missing_url
    
    if _redis_client is not None:
        return _redis_client
    
    redis_url = os.environ.get('REDIS_URL')
    
    if not redis_url:
        if not _warned_missing_url:
            logger.warning("REDIS_URL not set - notification counters are kept per process")
            _warned_missing_url = True
        return None
    
    try:
        _redis_client = redis.from_url(redis_url, decode_responses=True)
        # Test connection
        _redis_client.ping()
        logger.info("Redis connected successfully")
        return _redis_client
    except Exception as e:
        _redis_client = None
        logger.error(f"Redis connection failed: {e}")
        return None


COUNTERS_PREFIX = "notif:counters:"
COUNTERS_TTL = 60 * 60 * 24 * 30  # Counters of inactive users expire after 30 days


def increment_counter(user_id: int, category: str):
    """Increment one notification category. Returns the new value or None."""
    r = get_redis()
    if not r:
        return None
    
    try:
        key = f"{COUNTERS_PREFIX}{user_id}"
        pipe = r.pipeline()
        pipe.hincrby(key, category, 1)
        pipe.expire(key, COUNTERS_TTL)
        value, _ = pipe.execute()
        return int(value)
    except Exception as e:
        logger.error(f"Redis increment_counter error: {e}")
        return None


def get_counters(user_id: int):
    """All notification counters of a user as a dict, or None."""
    r = get_redis()
    if not r:
        return None
    
    try:
        return r.hgetall(f"{COUNTERS_PREFIX}{user_id}")
    except Exception as e:
        logger.error(f"Redis get_counters error: {e}")
        return None


def reset_counter(user_id: int, category: str) -> bool:
    """Zero one notification category."""
    r = get_redis()
    if not r:
        return False
    
    try:
        r.hset(f"{COUNTERS_PREFIX}{user_id}", category, 0)
        return True
    except Exception as e:
        logger.error(f"Redis reset_counter error: {e}")
        return False
