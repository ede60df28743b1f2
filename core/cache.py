"""
Redis helpers for the durable cache mirror.

The mirror is optional: when it is disabled, or Redis cannot be reached
at startup, the engine runs memory-only and these helpers return None.
"""
import logging
from typing import Optional

import redis
from redis.exceptions import RedisError

from core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

# Glob metacharacters that must be escaped in SCAN MATCH patterns
GLOB_SPECIAL = "*?[]\\"


def create_redis_client(url: str, timeout_s: float = 2.0) -> Optional[redis.Redis]:
    """Connect and ping. Returns None if Redis is unavailable."""
    try:
        client = redis.from_url(
            url,
            decode_responses=True,
            socket_connect_timeout=timeout_s,
            socket_timeout=timeout_s,
            retry_on_timeout=True,
            health_check_interval=30,
        )
        client.ping()
        logger.info(f"Cache mirror connected to {url}")
        return client
    except (RedisError, OSError) as e:
        logger.warning(f"Redis unavailable: {e}. Running memory-only.")
        return None


def mirror_client_from_settings(config: Optional[Settings] = None) -> Optional[redis.Redis]:
    """Client for the mirror, or None when CACHE_MIRROR_ENABLED is off."""
    config = config or default_settings
    if not config.CACHE_MIRROR_ENABLED:
        logger.debug("Cache mirror disabled by configuration")
        return None
    return create_redis_client(config.REDIS_URL)


def escape_glob(fragment: str) -> str:
    """Escape a literal for use inside a SCAN MATCH pattern."""
    return "".join(f"\\{ch}" if ch in GLOB_SPECIAL else ch for ch in fragment)


def cache_key(prefix: str, *parts) -> str:
    """Join a key family and its parts with '_' (None parts are skipped)."""
    return "_".join([prefix] + [str(part) for part in parts if part is not None])
