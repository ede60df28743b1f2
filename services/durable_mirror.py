"""
Durable Cache Mirror

Redis-backed secondary copy of cache entries and completion ledgers,
used to warm the in-memory cache after a process restart.

Layout:
    taskCache:{key}          -> {"value", "created_at", "ttl"}
    taskUsage:{customer_id}  -> completion ledger

The mirror is best-effort. Every operation catches Redis, serialization
and decoding errors, logs them, and returns a neutral value. Memory is
always authoritative; the mirror may diverge.
"""

import json
import logging
import math
from typing import Any, Dict, List, Optional

from redis.exceptions import RedisError

from core.cache import escape_glob

logger = logging.getLogger(__name__)

DEFAULT_ENTRY_PREFIX = "taskCache:"
DEFAULT_LEDGER_PREFIX = "taskUsage:"


class DurableMirror:
    """
    Best-effort persistent copy of cache records.

    A mirror constructed without a client is a no-op, which is how the
    engine runs when Redis is disabled or unreachable.
    """

    def __init__(
        self,
        redis_client=None,
        entry_prefix: str = DEFAULT_ENTRY_PREFIX,
        ledger_prefix: str = DEFAULT_LEDGER_PREFIX,
    ):
        self.redis = redis_client
        self.entry_prefix = entry_prefix
        self.ledger_prefix = ledger_prefix

    @property
    def enabled(self) -> bool:
        return self.redis is not None

    def _entry_key(self, key: str) -> str:
        return f"{self.entry_prefix}{key}"

    def _ledger_key(self, customer_id: str) -> str:
        return f"{self.ledger_prefix}{customer_id}"

    # ========== Cache entries ==========

    def store_entry(
        self,
        key: str,
        value: Any,
        created_at: float,
        ttl: float,
        now: float,
    ) -> bool:
        """
        Write a cache record. Returns False (after logging) on any failure.

        The Redis expiry is set to the entry's remaining lifetime, so
        records that are already expired are not written.
        """
        if not self.redis:
            return False

        remaining = created_at + ttl - now
        if remaining <= 0:
            return False

        try:
            blob = json.dumps({"value": value, "created_at": created_at, "ttl": ttl})
        except (TypeError, ValueError) as e:
            logger.warning(f"Cache mirror skipped for {key}: value not serializable ({e})")
            return False

        try:
            self.redis.set(self._entry_key(key), blob, ex=max(1, math.ceil(remaining)))
            return True
        except (RedisError, OSError) as e:
            logger.warning(f"Cache mirror write error for {key}: {e}")
            return False

    def load_entry(self, key: str) -> Optional[Dict[str, Any]]:
        """Read a cache record. Returns None when absent, corrupt, or Redis fails."""
        if not self.redis:
            return None

        try:
            raw = self.redis.get(self._entry_key(key))
        except (RedisError, OSError) as e:
            logger.warning(f"Cache mirror read error for {key}: {e}")
            return None

        if not raw:
            return None

        try:
            record = json.loads(raw)
            return {
                "value": record["value"],
                "created_at": float(record["created_at"]),
                "ttl": float(record["ttl"]),
            }
        except (json.JSONDecodeError, TypeError, KeyError, ValueError) as e:
            logger.warning(f"Discarding corrupt cache mirror record for {key}: {e}")
            self.delete_entry(key)
            return None

    def delete_entry(self, key: str) -> bool:
        if not self.redis:
            return False
        try:
            self.redis.delete(self._entry_key(key))
            return True
        except (RedisError, OSError) as e:
            logger.warning(f"Cache mirror delete error for {key}: {e}")
            return False

    def delete_matching(self, fragment: str) -> List[str]:
        """
        Delete every cache record whose key contains `fragment`.

        Returns the cache keys (without prefix) that were removed.
        """
        if not self.redis:
            return []

        pattern = f"{escape_glob(self.entry_prefix)}*{escape_glob(fragment)}*"
        removed: List[str] = []
        try:
            full_keys = list(self.redis.scan_iter(match=pattern, count=100))
            if full_keys:
                self.redis.delete(*full_keys)
            for full_key in full_keys:
                removed.append(full_key[len(self.entry_prefix):])
        except (RedisError, OSError) as e:
            logger.warning(f"Cache mirror invalidation error for '{fragment}': {e}")
            return []
        return removed

    def clear_entries(self) -> int:
        """Purge all cache records (ledgers are kept). Returns count removed."""
        if not self.redis:
            return 0
        try:
            full_keys = list(
                self.redis.scan_iter(match=f"{escape_glob(self.entry_prefix)}*", count=100)
            )
            if full_keys:
                self.redis.delete(*full_keys)
            return len(full_keys)
        except (RedisError, OSError) as e:
            logger.warning(f"Cache mirror clear error: {e}")
            return 0

    # ========== Completion ledgers ==========

    def store_ledger(self, customer_id: str, ledger: Dict[str, Any]) -> bool:
        if not self.redis:
            return False
        try:
            self.redis.set(self._ledger_key(customer_id), json.dumps(ledger, default=str))
            return True
        except (RedisError, OSError, TypeError, ValueError) as e:
            logger.warning(f"Ledger mirror write error for customer {customer_id}: {e}")
            return False

    def load_ledger(self, customer_id: str) -> Optional[Dict[str, Any]]:
        if not self.redis:
            return None
        try:
            raw = self.redis.get(self._ledger_key(customer_id))
            if not raw:
                return None
            ledger = json.loads(raw)
            return ledger if isinstance(ledger, dict) else None
        except (RedisError, OSError, json.JSONDecodeError, TypeError) as e:
            logger.warning(f"Ledger mirror read error for customer {customer_id}: {e}")
            return None
