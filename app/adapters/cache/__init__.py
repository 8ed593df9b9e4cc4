"""Cache adapters.

A small abstraction so the usage limiter can run on Redis in production and
degrade to a no-op backend when no cache is configured.
"""

from app.adapters.cache.base import (
    CACHE_UNAVAILABLE,
    AbstractCache,
    CacheStatus,
    NoOpCache,
    is_unavailable,
)
from app.adapters.cache.factory import create_cache
from app.adapters.cache.keys import IP_LOCK_TTL, USAGE_STATS_TTL, CacheKeys
from app.adapters.cache.redis_cache import CircuitBreaker, RedisCache

__all__ = [
    "CACHE_UNAVAILABLE",
    "AbstractCache",
    "CacheKeys",
    "CacheStatus",
    "CircuitBreaker",
    "IP_LOCK_TTL",
    "NoOpCache",
    "RedisCache",
    "USAGE_STATS_TTL",
    "create_cache",
    "is_unavailable",
]
