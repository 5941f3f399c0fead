"""
Tests for EntitlementViewCache and its Redis / in-memory backends.
"""

import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from bizcore.entitlements.cache import (
    INVALIDATION_CHANNEL,
    EntitlementViewCache,
    InMemoryCache,
    RedisClient,
    get_entitlement_view_cache,
    reset_entitlement_view_cache,
)
from bizcore.entitlements.models import EntitlementView, Scope


def _view(tenant_id="t1", user_id="u1", business_type="clinic", **kw):
    return EntitlementView(
        tenant_id=tenant_id,
        user_id=user_id,
        business_type=business_type,
        permissions=kw.pop("permissions", {"bookings.read"}),
        features=kw.pop("features", {"telemedicine": True}),
        modules=kw.pop("modules", {"clinical": True}),
        version_id="v1",
        version_number=1,
        config_source="versioned",
        computed_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        **kw,
    )


class TestInMemoryCache:

    def test_set_get(self):
        cache = InMemoryCache()
        cache.set("k", "v")
        assert cache.get("k", ttl_seconds=60) == "v"

    def test_expired_entry_is_dropped(self):
        cache = InMemoryCache()
        cache.set("k", "v")
        assert cache.get("k", ttl_seconds=-1) is None
        assert len(cache) == 0

    def test_delete_pattern(self):
        cache = InMemoryCache()
        cache.set("entitlement_view:t1:u1", "a")
        cache.set("entitlement_view:t1:u2", "b")
        cache.set("entitlement_view:t2:u1", "c")
        assert cache.delete_pattern("entitlement_view:t1:*") == 2
        assert len(cache) == 1

    def test_evicts_oldest_when_full(self):
        cache = InMemoryCache(max_size=2)
        cache.set("a", "1")
        cache.set("b", "2")
        cache.set("c", "3")
        assert len(cache) == 2
        assert cache.get("a", 60) is None


class TestViewCacheMemory:

    def test_round_trip(self, view_cache):
        view = _view()
        assert view_cache.set(view) is True
        assert view_cache.get("t1", "u1") == view

    def test_miss(self, view_cache):
        assert view_cache.get("t1", "nobody") is None

    def test_restricted_views_are_not_cached(self, view_cache):
        restricted = EntitlementView.restricted_view("t1", "u1", reason="missing_role")
        assert view_cache.set(restricted) is False
        assert view_cache.get("t1", "u1") is None

    def test_invalidate_tenant_only_touches_that_tenant(self, view_cache):
        view_cache.set(_view("t1", "u1"))
        view_cache.set(_view("t1", "u2"))
        view_cache.set(_view("t2", "u1"))
        assert view_cache.invalidate_tenant("t1", reason="role_change") == 2
        assert view_cache.get("t1", "u1") is None
        assert view_cache.get("t2", "u1") is not None

    def test_invalidate_business_type(self, view_cache):
        view_cache.set(_view("t1", business_type="clinic"))
        view_cache.set(_view("t2", business_type="clinic"))
        view_cache.set(_view("t3", business_type="gym"))
        view_cache.invalidate(Scope.BUSINESS, "clinic")
        assert view_cache.get("t1", "u1") is None
        assert view_cache.get("t2", "u1") is None
        assert view_cache.get("t3", "u1") is not None

    def test_invalidate_global(self, view_cache):
        view_cache.set(_view("t1"))
        view_cache.set(_view("t3", business_type="gym"))
        view_cache.invalidate(Scope.GLOBAL)
        assert view_cache.get("t1", "u1") is None
        assert view_cache.get("t3", "u1") is None

    def test_corrupt_entry_is_a_miss(self, view_cache):
        view_cache._memory_cache.set("entitlement_view:t1:u1", "{not json")
        assert view_cache.get("t1", "u1") is None

    def test_ttl_from_env(self, offline_redis, monkeypatch):
        monkeypatch.setenv("ENTITLEMENT_VIEW_CACHE_TTL", "30")
        cache = EntitlementViewCache(redis_client=offline_redis)
        assert cache.ttl_seconds == 30


class TestInvalidationHooks:

    def test_role_assignment_change(self, view_cache):
        view_cache.set(_view("t1", "u1"))
        view_cache.on_role_assignment_change("t1", "u1")
        assert view_cache.get("t1", "u1") is None

    def test_custom_role_change_touches_one_tenant(self, view_cache):
        view_cache.set(_view("t1"))
        view_cache.set(_view("t2"))
        view_cache.on_role_definition_change("front-desk", tenant_id="t1")
        assert view_cache.get("t1", "u1") is None
        assert view_cache.get("t2", "u1") is not None

    def test_system_role_change_touches_everyone(self, view_cache):
        view_cache.set(_view("t1"))
        view_cache.set(_view("t2"))
        view_cache.on_role_definition_change("staff")
        assert view_cache.get("t1", "u1") is None
        assert view_cache.get("t2", "u1") is None

    def test_subscription_change(self, view_cache):
        view_cache.set(_view("t1"))
        view_cache.on_subscription_change("t1", "basic", "pro")
        assert view_cache.get("t1", "u1") is None


class TestViewCacheRedis:

    @pytest.fixture
    def online_redis(self):
        client = MagicMock(spec=RedisClient)
        client.available = True
        client.get.return_value = None
        client.set_members.return_value = {"t9"}
        client.delete_pattern.return_value = 1
        return client

    def test_redis_is_authoritative(self, online_redis):
        cache = EntitlementViewCache(redis_client=online_redis, memory_cache=InMemoryCache(), ttl_seconds=60)
        cache.set(_view())
        online_redis.set.assert_called_once()
        # Another process evicted the key in Redis: the local mirror must not answer.
        assert cache.get("t1", "u1") is None

    def test_redis_hit(self, online_redis):
        online_redis.get.return_value = _view().to_json()
        cache = EntitlementViewCache(redis_client=online_redis, memory_cache=InMemoryCache(), ttl_seconds=60)
        assert cache.get("t1", "u1") == _view()

    def test_set_records_business_index(self, online_redis):
        cache = EntitlementViewCache(redis_client=online_redis, memory_cache=InMemoryCache(), ttl_seconds=60)
        cache.set(_view(business_type="clinic"))
        online_redis.add_to_set.assert_called_once_with("entitlement_view_bt:clinic", "t1", 60)

    def test_business_invalidation_uses_redis_index(self, online_redis):
        cache = EntitlementViewCache(redis_client=online_redis, memory_cache=InMemoryCache(), ttl_seconds=60)
        cache.invalidate_business_type("clinic", reason="version_published")
        online_redis.delete_pattern.assert_any_call("entitlement_view:t9:*")

    def test_invalidation_is_published(self, online_redis):
        cache = EntitlementViewCache(redis_client=online_redis, memory_cache=InMemoryCache(), ttl_seconds=60)
        cache.invalidate_tenant("t1", reason="override_set")
        channel, message = online_redis.publish.call_args[0]
        assert channel == INVALIDATION_CHANNEL
        payload = json.loads(message)
        assert payload["scope"] == "tenant"
        assert payload["key"] == "t1"
        assert payload["reason"] == "override_set"


class TestRedisClient:

    def test_unavailable_without_url(self):
        client = RedisClient()
        assert client.available is False
        assert client.get("x") is None
        assert client.set("x", "y", 10) is False
        assert client.set_members("x") == set()

    def test_singleton_factory(self):
        reset_entitlement_view_cache()
        assert get_entitlement_view_cache() is get_entitlement_view_cache()
