# Optional shared Redis connection used for cross-process listing locks.
# Enabled with REDIS_ENABLED; when disabled or unreachable callers receive None and degrade gracefully.
import logging
import os
from typing import Optional

import redis

_logger = logging.getLogger("rinto.redis")


def truthy(val: Optional[str]) -> bool:
    if val is None:
        return False
    return val.strip().lower() in {"1", "true", "t", "yes", "y", "on"}


def is_redis_enabled() -> bool:
    return truthy(os.getenv("REDIS_ENABLED", "false"))


# Lazily created client; a failed connection attempt is remembered for the process lifetime.
_client: Optional[redis.Redis] = None
_initialized = False


def get_redis() -> Optional[redis.Redis]:
    """
    Return a connected Redis client, or None when Redis is disabled or unreachable.

    The first call connects and pings; later calls reuse the outcome.
    """
    global _client, _initialized
    if not is_redis_enabled():
        return None
    if _initialized:
        return _client

    url = os.getenv("REDIS_URL", "redis://localhost:6379/0")
    _initialized = True
    try:
        client = redis.Redis.from_url(
            url,
            socket_timeout=0.25,
            socket_connect_timeout=0.25,
            retry_on_timeout=False,
        )
        client.ping()
    except redis.RedisError as exc:
        _logger.warning("redis.unavailable", extra={"url": url, "error": str(exc)})
        _client = None
        return None
    _client = client
    _logger.info("redis.connected", extra={"url": url})
    return _client


def reset_redis() -> None:
    """Forget the cached client so the next get_redis() reconnects."""
    global _client, _initialized
    _client = None
    _initialized = False
