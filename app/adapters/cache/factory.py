"""Factory for the cache backend."""

import logging

from redis.asyncio import Redis
from redis.asyncio.retry import Retry
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from app.adapters.cache.base import AbstractCache, NoOpCache
from app.adapters.cache.redis_cache import RedisCache
from app.core.config import CacheSettings, settings

logger = logging.getLogger(__name__)


def create_cache(cache_settings: CacheSettings | None = None) -> AbstractCache:
    """Instantiate the cache described by configuration.

    Returns a ``RedisCache`` when ``REDIS_URL`` is set, otherwise a
    ``NoOpCache``. No connection is opened here; redis-py connects lazily.

    Args:
        cache_settings: Optional cache settings; defaults to global settings.

    Returns:
        AbstractCache: Configured cache instance.
    """
    cfg = cache_settings or settings.cache

    if not cfg.url:
        logger.warning("cache.disabled", extra={"reason": "REDIS_URL not set"})
        return NoOpCache()

    retry = Retry(
        ExponentialBackoff(cap=cfg.max_backoff_ms / 1000, base=cfg.retry_delay_ms / 1000),
        cfg.max_retries,
    )
    client = Redis.from_url(
        cfg.url,
        password=cfg.token or None,
        decode_responses=True,
        socket_timeout=cfg.socket_timeout_seconds,
        socket_connect_timeout=cfg.socket_timeout_seconds,
        retry=retry,
        retry_on_error=[RedisConnectionError, RedisTimeoutError],
    )
    logger.info(
        "cache.configured",
        extra={"backend": "redis", "max_retries": cfg.max_retries, "default_ttl": cfg.default_ttl},
    )
    return RedisCache(client, default_ttl=cfg.default_ttl)
