"""
Redis caching layer for subject access checks.
"""

from typing import Dict, Any, Optional
from datetime import datetime

import redis.asyncio as redis
from shared.logging import get_logger
from shared.errors import StoreUnavailable
from ..access.models import SubjectAccessResponse, SubjectAccessStatus


class RedisCache:
    """Caches member-facing access decisions.

    Entries are keyed by subject and dropped whenever that subject's record
    changes. A cache failure never fails the check itself: reads degrade to
    a miss and writes are skipped.
    """

    ACCESS_PREFIX = "directory_access:subject:"

    def __init__(self, redis_url: str, default_ttl: int = 300):
        self.redis_url = redis_url
        self.logger = get_logger("directory_access.cache.redis")
        self.redis: Optional[redis.Redis] = None

        self.default_ttl = default_ttl
        self.min_ttl = 1

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

            await self.redis.ping()

            self.logger.info("Redis cache started")

        except Exception as e:
            self.logger.error("Failed to start Redis cache", error=str(e))
            raise StoreUnavailable("Failed to start Redis cache", {"error": str(e)}) from e

    async def stop(self):
        """Stop the Redis cache."""
        if self.redis:
            await self.redis.aclose()
            self.logger.info("Redis cache stopped")

    async def get_subject_access(self, subject_id: str) -> Optional[SubjectAccessResponse]:
        """Get a cached access decision."""
        try:
            cached_data = await self.redis.get(self._get_access_key(subject_id))
            if not cached_data:
                return None

            self.logger.debug("Cache hit for subject access", subject_id=subject_id)
            return SubjectAccessResponse.model_validate_json(cached_data)

        except Exception as e:
            self.logger.error("Error getting cached access", subject_id=subject_id, error=str(e))
            return None

    async def set_subject_access(self, response: SubjectAccessResponse, now: datetime,
                                 ttl_seconds: Optional[int] = None) -> bool:
        """Cache an access decision."""
        try:
            if ttl_seconds is None:
                ttl_seconds = self._calculate_adaptive_ttl(response, now)

            if ttl_seconds < self.min_ttl:
                return False

            await self.redis.setex(
                self._get_access_key(response.subject_id),
                ttl_seconds,
                response.model_dump_json()
            )

            self.logger.debug("Cached subject access", subject_id=response.subject_id, ttl=ttl_seconds)
            return True

        except Exception as e:
            self.logger.error("Error caching access", subject_id=response.subject_id, error=str(e))
            return False

    async def invalidate_subject(self, subject_id: str) -> bool:
        """Drop the cached decision for a subject."""
        try:
            deleted = await self.redis.delete(self._get_access_key(subject_id))
            if deleted:
                self.logger.info("Invalidated subject access", subject_id=subject_id)
            return bool(deleted)

        except Exception as e:
            self.logger.error("Error invalidating subject access", subject_id=subject_id, error=str(e))
            return False

    async def get_cache_stats(self) -> Dict[str, Any]:
        """Get cache statistics."""
        try:
            info = await self.redis.info()

            access_keys = 0
            async for _ in self.redis.scan_iter(match=f"{self.ACCESS_PREFIX}*"):
                access_keys += 1

            return {
                "redis_version": info.get("redis_version"),
                "used_memory": info.get("used_memory_human"),
                "keyspace_hits": info.get("keyspace_hits"),
                "keyspace_misses": info.get("keyspace_misses"),
                "access_keys": access_keys,
                "hit_rate": self._calculate_hit_rate(info)
            }

        except Exception as e:
            self.logger.error("Error getting cache stats", error=str(e))
            return {}

    def _get_access_key(self, subject_id: str) -> str:
        return f"{self.ACCESS_PREFIX}{subject_id}"

    def _calculate_adaptive_ttl(self, response: SubjectAccessResponse, now: datetime) -> int:
        """TTL for a decision; a granted paid decision never outlives its expiry."""
        ttl = self.default_ttl

        # Pending requests flip as soon as an admin acts
        if response.status == SubjectAccessStatus.PENDING:
            ttl = ttl // 2

        if response.status == SubjectAccessStatus.GRANTED and response.expiry_date is not None:
            ttl = min(ttl, int((response.expiry_date - now).total_seconds()))

        return ttl

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
        try:
            await self.redis.ping()
            return True
        except Exception:
            return False
