"""
Entitlement view cache - Redis-backed cache with explicit invalidation.

Provides:
- RedisClient: Redis wrapper with graceful degradation
- InMemoryCache: process-local fallback with TTL
- EntitlementViewCache: per-(tenant, user) EntitlementView cache with
  tenant, business-type and global invalidation

Invalidation triggers (callers MUST invoke these):
- role assignment / role definition change        -> tenant (or all)
- plan or add-on change                           -> tenant
- tenant override mutation                        -> tenant
- business-type override mutation                 -> business type
- global override mutation                        -> all
- rebind / unpin / undo                           -> tenant
- version publish / retire                        -> business type

Restricted (fail-closed) views are never cached.
"""

import json
import logging
import os
import fnmatch
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, Optional, Set, Tuple

import redis

from bizcore.entitlements.models import EntitlementView, Scope

logger = logging.getLogger(__name__)

# Cache configuration
DEFAULT_CACHE_TTL_SECONDS = 120
INVALIDATION_CHANNEL = "entitlements:view_invalidations"


class RedisClient:
    """
    Redis client wrapper with connection pooling and fallback.

    Provides graceful degradation when Redis is unavailable: every call
    becomes a no-op and the in-memory cache carries the load.
    """

    _instance: Optional["RedisClient"] = None
    _lock = Lock()

    def __new__(cls):
        """Singleton pattern."""
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self):
        if self._initialized:
            return

        self._redis = None
        self._available = False
        self._connect()
        self._initialized = True

    @classmethod
    def reset(cls) -> None:
        """Drop the singleton so the next instantiation reconnects (for testing)."""
        with cls._lock:
            cls._instance = None

    def _connect(self) -> None:
        """Connect to Redis if configured."""
        redis_url = os.getenv("REDIS_URL")
        if not redis_url:
            logger.info("REDIS_URL not configured - entitlement view cache is process-local")
            return

        try:
            self._redis = redis.Redis.from_url(
                redis_url,
                decode_responses=True,
                socket_timeout=5.0,
                socket_connect_timeout=5.0,
            )
            self._redis.ping()
            self._available = True
            logger.info("Redis connection established for entitlement view cache")
        except (redis.RedisError, ValueError) as e:
            logger.warning(f"Redis connection failed: {e} - falling back to in-memory cache")

    @property
    def available(self) -> bool:
        """Check if Redis is available."""
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

    def delete(self, *keys: str) -> int:
        if not self.available or not keys:
            return 0
        try:
            return self._redis.delete(*keys)
        except redis.RedisError as e:
            logger.warning(f"Redis DELETE failed: {e}")
            return 0

    def delete_pattern(self, pattern: str) -> int:
        """Delete all keys matching pattern."""
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

    def add_to_set(self, key: str, member: str, ttl_seconds: int) -> None:
        if not self.available:
            return
        try:
            pipe = self._redis.pipeline()
            pipe.sadd(key, member)
            pipe.expire(key, ttl_seconds)
            pipe.execute()
        except redis.RedisError as e:
            logger.warning(f"Redis SADD failed: {e}")

    def set_members(self, key: str) -> Set[str]:
        if not self.available:
            return set()
        try:
            return set(self._redis.smembers(key))
        except redis.RedisError as e:
            logger.warning(f"Redis SMEMBERS failed: {e}")
            return set()

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
    In-memory fallback cache when Redis is unavailable.

    Thread-safe with basic TTL support.
    """

    def __init__(self, max_size: int = 10000):
        self._cache: Dict[str, Tuple[str, datetime]] = {}
        self._lock = Lock()
        self._max_size = max_size

    def get(self, key: str, ttl_seconds: int) -> Optional[str]:
        """Get value if not expired."""
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

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._cache.pop(key, None) is not None

    def delete_pattern(self, pattern: str) -> int:
        """Delete keys matching a glob pattern."""
        with self._lock:
            keys_to_delete = [k for k in self._cache if fnmatch.fnmatch(k, pattern)]
            for key in keys_to_delete:
                del self._cache[key]
            return len(keys_to_delete)

    def clear(self) -> None:
        with self._lock:
            self._cache.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._cache)


class EntitlementViewCache:
    """
    Caching layer for EntitlementView.

    Uses Redis when available and always mirrors into memory. A
    business-type index (tenant ids seen per business type) lets
    publish/retire evict exactly the affected tenants.

    Usage:
        cache = get_entitlement_view_cache()

        view = cache.get(tenant_id, user_id)
        if view is None:
            view = builder.build(tenant_id, user_id)
            cache.set(view)

        cache.invalidate_tenant(tenant_id, reason="role_change")
    """

    VIEW_KEY_PREFIX = "entitlement_view:"
    BUSINESS_INDEX_PREFIX = "entitlement_view_bt:"

    def __init__(
        self,
        redis_client: Optional[RedisClient] = None,
        memory_cache: Optional[InMemoryCache] = None,
        ttl_seconds: Optional[int] = None,
    ):
        self._redis = redis_client if redis_client is not None else RedisClient()
        self._memory_cache = memory_cache if memory_cache is not None else InMemoryCache()
        if ttl_seconds is None:
            ttl_seconds = int(os.getenv("ENTITLEMENT_VIEW_CACHE_TTL", DEFAULT_CACHE_TTL_SECONDS))
        self._ttl_seconds = ttl_seconds
        self._business_index: Dict[str, Set[str]] = {}
        self._index_lock = Lock()

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def _view_key(self, tenant_id: str, user_id: str) -> str:
        return f"{self.VIEW_KEY_PREFIX}{tenant_id}:{user_id}"

    def _tenant_pattern(self, tenant_id: str) -> str:
        return f"{self.VIEW_KEY_PREFIX}{tenant_id}:*"

    def _business_index_key(self, business_type: str) -> str:
        return f"{self.BUSINESS_INDEX_PREFIX}{business_type}"

    # ------------------------------------------------------------------
    # Read / write
    # ------------------------------------------------------------------

    def get(self, tenant_id: str, user_id: str) -> Optional[EntitlementView]:
        key = self._view_key(tenant_id, user_id)

        # Redis is authoritative when reachable; other processes invalidate there.
        if self._redis.available:
            data = self._redis.get(key)
            source = "redis"
        else:
            data = self._memory_cache.get(key, self._ttl_seconds)
            source = "memory"
        if not data:
            logger.debug("Entitlement view cache miss", extra={"tenant_id": tenant_id, "user_id": user_id})
            return None

        try:
            view = EntitlementView.from_json(data)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"Failed to deserialize cached entitlement view: {e}")
            self._memory_cache.delete(key)
            return None

        logger.debug(
            "Entitlement view cache hit",
            extra={"tenant_id": tenant_id, "user_id": user_id, "source": source},
        )
        return view

    def set(self, view: EntitlementView) -> bool:
        """Cache a view. Restricted views are refused."""
        if view.restricted:
            return False

        key = self._view_key(view.tenant_id, view.user_id)
        data = view.to_json()

        if self._redis.available:
            self._redis.set(key, data, self._ttl_seconds)
        self._memory_cache.set(key, data)

        if view.business_type:
            with self._index_lock:
                self._business_index.setdefault(view.business_type, set()).add(view.tenant_id)
            self._redis.add_to_set(
                self._business_index_key(view.business_type),
                view.tenant_id,
                self._ttl_seconds,
            )
        return True

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def invalidate(self, scope: Scope, key: Optional[str] = None, reason: Optional[str] = None) -> int:
        """
        Scope-addressed invalidation hook.

        scope TENANT   -> key is a tenant id
        scope BUSINESS -> key is a business-type code
        scope GLOBAL   -> key ignored, everything is evicted
        """
        scope = Scope(scope)
        if scope == Scope.TENANT:
            return self.invalidate_tenant(key, reason)
        if scope == Scope.BUSINESS:
            return self.invalidate_business_type(key, reason)
        return self.invalidate_all(reason)

    def invalidate_tenant(self, tenant_id: str, reason: Optional[str] = None) -> int:
        """Evict every cached user view of one tenant."""
        pattern = self._tenant_pattern(tenant_id)
        count = self._memory_cache.delete_pattern(pattern)
        if self._redis.available:
            count += self._redis.delete_pattern(pattern)
        self._publish(Scope.TENANT, tenant_id, reason)

        logger.info(
            "Invalidated entitlement views for tenant",
            extra={"tenant_id": tenant_id, "reason": reason, "evicted": count},
        )
        return count

    def invalidate_business_type(self, business_type: str, reason: Optional[str] = None) -> int:
        """Evict views of every tenant seen with this business type."""
        index_key = self._business_index_key(business_type)
        with self._index_lock:
            tenants = set(self._business_index.pop(business_type, set()))
        tenants |= self._redis.set_members(index_key)
        self._redis.delete(index_key)

        count = 0
        for tenant_id in tenants:
            pattern = self._tenant_pattern(tenant_id)
            count += self._memory_cache.delete_pattern(pattern)
            if self._redis.available:
                count += self._redis.delete_pattern(pattern)
        self._publish(Scope.BUSINESS, business_type, reason)

        logger.info(
            "Invalidated entitlement views for business type",
            extra={"business_type": business_type, "tenants": len(tenants),
                   "reason": reason, "evicted": count},
        )
        return count

    def invalidate_all(self, reason: Optional[str] = None) -> int:
        """
        Evict every cached view.

        Triggered by global override mutations and catalog reloads.
        """
        count = len(self._memory_cache)
        self._memory_cache.clear()
        with self._index_lock:
            self._business_index.clear()
        if self._redis.available:
            count += self._redis.delete_pattern(f"{self.VIEW_KEY_PREFIX}*")
            self._redis.delete_pattern(f"{self.BUSINESS_INDEX_PREFIX}*")
        self._publish(Scope.GLOBAL, "*", reason)

        logger.warning(
            "Mass invalidation of entitlement view cache",
            extra={"reason": reason, "evicted": count},
        )
        return count

    def _publish(self, scope: Scope, key: Optional[str], reason: Optional[str]) -> None:
        if not self._redis.available:
            return
        self._redis.publish(
            INVALIDATION_CHANNEL,
            json.dumps({
                "scope": scope.value,
                "key": key,
                "reason": reason,
                "timestamp": datetime.now(timezone.utc).isoformat(),
            }),
        )

    # ------------------------------------------------------------------
    # Hooks for writers outside this package
    # ------------------------------------------------------------------

    def on_role_assignment_change(self, tenant_id: str, user_id: str) -> int:
        return self.invalidate_tenant(tenant_id, reason=f"role_assignment_change:user={user_id}")

    def on_role_definition_change(self, role_id: str, tenant_id: Optional[str] = None) -> int:
        """A custom role touches one tenant; a system role touches everyone."""
        if tenant_id is None:
            return self.invalidate_all(reason=f"system_role_change:{role_id}")
        return self.invalidate_tenant(tenant_id, reason=f"role_definition_change:{role_id}")

    def on_subscription_change(
        self,
        tenant_id: str,
        old_plan: Optional[str] = None,
        new_plan: Optional[str] = None,
    ) -> int:
        return self.invalidate_tenant(
            tenant_id, reason=f"subscription_change:{old_plan}->{new_plan}"
        )


# Module-level singleton
_cache_instance: Optional[EntitlementViewCache] = None
_cache_lock = Lock()


def get_entitlement_view_cache() -> EntitlementViewCache:
    """Get the singleton EntitlementViewCache instance."""
    global _cache_instance
    if _cache_instance is None:
        with _cache_lock:
            if _cache_instance is None:
                _cache_instance = EntitlementViewCache()
    return _cache_instance


def reset_entitlement_view_cache() -> None:
    """Reset the singleton (for testing)."""
    global _cache_instance
    with _cache_lock:
        _cache_instance = None
