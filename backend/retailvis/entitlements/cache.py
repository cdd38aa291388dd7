"""
Feature Resolution Cache - short-TTL read-through cache.

Provides:
- RedisClient: Redis wrapper with graceful degradation
- InMemoryCache: Thread-safe in-process fallback
- ResolutionCache: FeatureResolution cache keyed by tenant + feature

Only feature resolutions are cached. Lifecycle state and quantity checks
are always evaluated fresh.

CRITICAL: Tier and override changes MUST invalidate cached resolutions.
A TTL of 0 disables caching entirely.
"""

import fnmatch
import json
import logging
import os
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, Optional, Tuple

import redis

from retailvis.config.settings import get_entitlement_settings
from retailvis.entitlements.models import FeatureOverride, FeatureResolution, OverrideScope

logger = logging.getLogger(__name__)

INVALIDATION_CHANNEL = "entitlements:invalidations"


class RedisClient:
    """
    Redis client wrapper.

    Connects only when REDIS_URL is set; any Redis failure degrades to
    "unavailable" instead of raising.
    """

    def __init__(self, redis_url: Optional[str] = None):
        self._redis = None
        self._available = False
        self._connect(redis_url or os.getenv("REDIS_URL"))

    def _connect(self, redis_url: Optional[str]) -> None:
        if not redis_url:
            logger.info("REDIS_URL not configured - using in-memory resolution cache")
            return

        try:
            self._redis = redis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=1.0,
                socket_connect_timeout=1.0,
            )
            self._redis.ping()
            self._available = True
            logger.info("Redis connection established for resolution cache")
        except (redis.RedisError, ValueError) as e:
            logger.warning(f"Redis connection failed: {e} - using in-memory cache")

    @property
    def available(self) -> bool:
        return self._available and self._redis is not None

    def get(self, key: str) -> Optional[str]:
        if not self.available:
            return None
        try:
            return self._redis.get(key)
        except redis.RedisError as e:
            logger.warning(f"Redis GET failed: {e}")
            return None

    def set(self, key: str, value: str, ttl_seconds: int) -> bool:
        if not self.available:
            return False
        try:
            self._redis.setex(key, ttl_seconds, value)
            return True
        except redis.RedisError as e:
            logger.warning(f"Redis SET failed: {e}")
            return False

    def delete_pattern(self, pattern: str) -> int:
        if not self.available:
            return 0
        try:
            keys = list(self._redis.scan_iter(pattern))
            if keys:
                return self._redis.delete(*keys)
            return 0
        except redis.RedisError as e:
            logger.warning(f"Redis DELETE pattern failed: {e}")
            return 0

    def publish(self, channel: str, message: str) -> int:
        if not self.available:
            return 0
        try:
            return self._redis.publish(channel, message)
        except redis.RedisError as e:
            logger.warning(f"Redis PUBLISH failed: {e}")
            return 0


class InMemoryCache:
    """
    In-process fallback cache.

    Thread-safe with TTL support and oldest-first eviction.
    """

    def __init__(self, max_size: int = 10000):
        self._cache: Dict[str, Tuple[str, datetime]] = {}
        self._lock = Lock()
        self._max_size = max_size

    def get(self, key: str, ttl_seconds: int) -> Optional[str]:
        with self._lock:
            if key not in self._cache:
                return None
            value, cached_at = self._cache[key]
            if (datetime.now(timezone.utc) - cached_at).total_seconds() > ttl_seconds:
                del self._cache[key]
                return None
            return value

    def set(self, key: str, value: str) -> None:
        with self._lock:
            if key not in self._cache and len(self._cache) >= self._max_size:
                oldest_key = min(self._cache.keys(), key=lambda k: self._cache[k][1])
                del self._cache[oldest_key]
            self._cache[key] = (value, datetime.now(timezone.utc))

    def delete_pattern(self, pattern: str) -> int:
        with self._lock:
            keys_to_delete = [k for k in self._cache if fnmatch.fnmatch(k, pattern)]
            for key in keys_to_delete:
                del self._cache[key]
            return len(keys_to_delete)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        return len(self._cache)


class ResolutionCache:
    """
    Read-through cache for feature resolutions.

    Usage:
        cache = get_resolution_cache()

        cached = cache.get(tenant_id, "api_access")
        if cached is None:
            cached = resolver.resolve_feature(tenant_id, "api_access")
            cache.set(tenant_id, cached)

        # After a tier change
        cache.on_tier_change(tenant_id, "starter", "professional")
    """

    CACHE_KEY_PREFIX = "entitlement:resolution:"

    def __init__(
        self,
        ttl_seconds: Optional[int] = None,
        redis_client: Optional[RedisClient] = None,
    ):
        if ttl_seconds is None:
            ttl_seconds = get_entitlement_settings().cache_ttl_seconds
        self._ttl_seconds = ttl_seconds
        self._redis = redis_client if redis_client is not None else RedisClient()
        self._memory_cache = InMemoryCache()

    @property
    def enabled(self) -> bool:
        return self._ttl_seconds > 0

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def _cache_key(self, tenant_id: str, feature: str) -> str:
        return f"{self.CACHE_KEY_PREFIX}{tenant_id}:{feature}"

    def _tenant_pattern(self, tenant_id: str) -> str:
        return f"{self.CACHE_KEY_PREFIX}{tenant_id}:*"

    def get(self, tenant_id: str, feature: str) -> Optional[FeatureResolution]:
        """Cached resolution, or None on miss, expiry, or disabled cache."""
        if not self.enabled:
            return None

        key = self._cache_key(tenant_id, feature)
        data = None
        if self._redis.available:
            data = self._redis.get(key)
        if data is None:
            data = self._memory_cache.get(key, self._ttl_seconds)
        if data is None:
            return None

        try:
            return FeatureResolution.from_dict(json.loads(data))
        except (ValueError, KeyError) as e:
            logger.warning(f"Discarding unreadable cached resolution: {e}")
            self._memory_cache.delete_pattern(key)
            return None

    def set(self, tenant_id: str, resolution: FeatureResolution) -> None:
        if not self.enabled:
            return
        key = self._cache_key(tenant_id, resolution.feature)
        data = json.dumps(resolution.to_dict())
        if self._redis.available:
            self._redis.set(key, data, self._ttl_seconds)
        self._memory_cache.set(key, data)

    def invalidate(self, tenant_id: str, reason: Optional[str] = None) -> int:
        """Drop every cached resolution for one tenant."""
        pattern = self._tenant_pattern(tenant_id)
        count = self._memory_cache.delete_pattern(pattern)
        if self._redis.available:
            count += self._redis.delete_pattern(pattern)
            self._publish(tenant_id, reason)

        logger.info(
            "Invalidated resolution cache for tenant",
            extra={"tenant_id": tenant_id, "reason": reason, "entries": count},
        )
        return count

    def invalidate_all(self, reason: Optional[str] = None) -> int:
        """Drop every cached resolution (platform-wide changes, catalog reload)."""
        count = len(self._memory_cache)
        self._memory_cache.clear()
        if self._redis.available:
            count += self._redis.delete_pattern(f"{self.CACHE_KEY_PREFIX}*")
            self._publish("*", reason or "mass_invalidation")

        logger.warning(
            "Mass invalidation of resolution cache",
            extra={"reason": reason, "entries": count},
        )
        return count

    def on_tier_change(
        self,
        tenant_id: str,
        old_tier: Optional[str] = None,
        new_tier: Optional[str] = None,
    ) -> int:
        """
        Handle a tenant tier change.

        CRITICAL: Must be called by whatever writes the tenant's tier.
        """
        return self.invalidate(tenant_id, reason=f"tier_change:{old_tier}->{new_tier}")

    def on_override_change(self, override: FeatureOverride) -> int:
        """
        Handle a created, updated or deleted override.

        Platform overrides affect every tenant, so they clear the whole cache.
        """
        reason = f"override_change:{override.scope.value}:{override.feature}"
        if override.scope == OverrideScope.PLATFORM:
            return self.invalidate_all(reason=reason)
        return self.invalidate(override.tenant_id, reason=reason)

    def _publish(self, tenant_id: str, reason: Optional[str]) -> None:
        self._redis.publish(
            INVALIDATION_CHANNEL,
            json.dumps({
                "tenant_id": tenant_id,
                "reason": reason,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }),
        )


# Module-level singleton
_cache_instance: Optional[ResolutionCache] = None
_cache_lock = Lock()


def get_resolution_cache() -> ResolutionCache:
    """Get the singleton ResolutionCache instance."""
    global _cache_instance
    if _cache_instance is None:
        with _cache_lock:
            if _cache_instance is None:
                _cache_instance = ResolutionCache()
    return _cache_instance


def reset_resolution_cache() -> None:
    """
    Reset the singleton instance (for testing).

    WARNING: Only use in tests!
    """
    global _cache_instance
    _cache_instance = None
