"""
Redis caching for read-mostly lookup tables (pricing rules)
Fail-open: any Redis problem degrades to a database read
"""

import json
import logging
import os
from typing import Any, Optional

from .rate_limiter import get_redis_client

logger = logging.getLogger(__name__)

CACHE_ENABLED = os.getenv("CACHE_ENABLED", "true").lower() == "true"


class Cache:
    """Redis cache wrapper with automatic serialization"""

    def __init__(self, enabled: bool = CACHE_ENABLED):
        self.enabled = enabled
        self.redis_client = None

    def _get_client(self):
        """Lazy load Redis client"""
        if not self.enabled:
            return None
        if self.redis_client is None:
            try:
                self.redis_client = get_redis_client()
            except Exception as e:
                logger.warning(f"⚠️ Redis cache unavailable: {e}")
                return None
        return self.redis_client

    def get(self, key: str) -> Optional[Any]:
        client = self._get_client()
        if not client:
            return None

        try:
            value = client.get(key)
            if value:
                logger.debug(f"✅ Cache HIT: {key}")
                return json.loads(value)
            logger.debug(f"❌ Cache MISS: {key}")
            return None
        except Exception as e:
            logger.error(f"❌ Cache get error for {key}: {e}")
            return None

    def set(self, key: str, value: Any, ttl: int = 3600) -> bool:
        """Set value in cache with TTL (default 1 hour)"""
        client = self._get_client()
        if not client:
            return False

        try:
            client.setex(key, ttl, json.dumps(value))
            logger.debug(f"✅ Cache SET: {key} (TTL: {ttl}s)")
            return True
        except Exception as e:
            logger.error(f"❌ Cache set error for {key}: {e}")
            return False

    def delete(self, key: str) -> bool:
        client = self._get_client()
        if not client:
            return False

        try:
            client.delete(key)
            logger.debug(f"✅ Cache DELETE: {key}")
            return True
        except Exception as e:
            logger.error(f"❌ Cache delete error for {key}: {e}")
            return False


# Global cache instance
cache = Cache()


def pricing_rules_key(service_type: str) -> str:
    return f"pricing_rules:{service_type}"
