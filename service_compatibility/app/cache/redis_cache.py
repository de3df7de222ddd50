"""
Redis caching layer for Compatibility Service.
"""

import hashlib
import json
from datetime import datetime
from typing import Any, Dict, Optional

import redis.asyncio as redis

from shared.errors import ExternalServiceError
from shared.logging import get_logger


class RedisCache:
    """Caches assembled check responses keyed by rule graph snapshot version."""

    def __init__(self, redis_url: str, default_ttl: int = 60):
        self.redis_url = redis_url
        self.logger = get_logger("compatibility.cache.redis")
        self.redis: Optional[redis.Redis] = None

        self.default_ttl = default_ttl
        self.min_ttl = 5
        self.max_ttl = 3600

        # Cache key prefixes
        self.RESULT_PREFIX = "compat:result:"

    async def start(self):
        """Start the Redis cache."""
        try:
            self.redis = redis.from_url(
                self.redis_url,
                encoding="utf-8",
                decode_responses=True,
                socket_connect_timeout=5,
                socket_timeout=5,
                retry_on_timeout=True,
                health_check_interval=30
            )

            # Test connection
            await self.redis.ping()

            self.logger.info("Redis cache started")

        except Exception as e:
            self.logger.error("Failed to start Redis cache", error=str(e))
            self.redis = None
            raise ExternalServiceError("redis", str(e))

    async def stop(self):
        """Stop the Redis cache."""
        if self.redis:
            await self.redis.aclose()
            self.redis = None
            self.logger.info("Redis cache stopped")

    @property
    def available(self) -> bool:
        return self.redis is not None

    def _get_result_key(self, kind: str, version: str, payload: Dict[str, Any]) -> str:
        """Generate cache key for a check result."""
        payload_str = json.dumps(payload, sort_keys=True, default=str)
        payload_hash = hashlib.md5(payload_str.encode()).hexdigest()
        return f"{self.RESULT_PREFIX}{kind}:v:{version}:{payload_hash}"

    async def get_result(self, kind: str, version: str, payload: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        """Get a cached check result, or None on miss or Redis failure."""
        if not self.available:
            return None

        try:
            cache_key = self._get_result_key(kind, version, payload)

            cached_data = await self.redis.get(cache_key)
            if not cached_data:
                return None

            data = json.loads(cached_data)

            self.logger.debug("Cache hit for check result", cache_key=cache_key)
            return data["response"]

        except Exception as e:
            self.logger.error("Error getting cached check result", kind=kind, error=str(e))
            return None

    async def set_result(
        self,
        kind: str,
        version: str,
        payload: Dict[str, Any],
        response: Any,
        ttl_seconds: Optional[int] = None
    ) -> bool:
        """Cache a check result."""
        if not self.available:
            return False

        try:
            cache_key = self._get_result_key(kind, version, payload)

            ttl_seconds = ttl_seconds if ttl_seconds is not None else self.default_ttl
            ttl_seconds = max(self.min_ttl, min(self.max_ttl, ttl_seconds))

            data = {
                "response": response,
                "version": version,
                "cached_at": datetime.now().isoformat()
            }

            await self.redis.setex(
                cache_key,
                ttl_seconds,
                json.dumps(data, default=str)
            )

            self.logger.debug("Cached check result", cache_key=cache_key, ttl=ttl_seconds)
            return True

        except Exception as e:
            self.logger.error("Error caching check result", kind=kind, error=str(e))
            return False

    async def clear_results(self) -> int:
        """Delete every cached check result."""
        if not self.available:
            return 0

        try:
            keys = await self.redis.keys(f"{self.RESULT_PREFIX}*")

            if keys:
                await self.redis.delete(*keys)
                self.logger.info("Cleared cached check results", count=len(keys))
                return len(keys)

            return 0

        except Exception as e:
            self.logger.error("Error clearing cached check results", error=str(e))
            return 0

    async def get_cache_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        if not self.available:
            return {"enabled": False}

        try:
            info = await self.redis.info()

            result_keys = await self.redis.keys(f"{self.RESULT_PREFIX}*")

            return {
                "enabled": True,
                "redis_version": info.get("redis_version"),
                "used_memory": info.get("used_memory_human"),
                "keyspace_hits": info.get("keyspace_hits"),
                "keyspace_misses": info.get("keyspace_misses"),
                "result_keys": len(result_keys),
                "hit_rate": self._calculate_hit_rate(info)
            }

        except Exception as e:
            self.logger.error("Error getting cache stats", error=str(e))
            return {"enabled": True}

    def _calculate_hit_rate(self, info: Dict[str, Any]) -> float:
        """Calculate cache hit rate."""
        hits = info.get("keyspace_hits", 0)
        misses = info.get("keyspace_misses", 0)
        total = hits + misses

        if total == 0:
            return 0.0

        return hits / total

    async def health_check(self) -> bool:
        """Check Redis health."""
        if not self.available:
            return False
        try:
            await self.redis.ping()
            return True
        except Exception:
            return False
