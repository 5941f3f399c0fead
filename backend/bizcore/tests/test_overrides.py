"""
Tests for OverrideService (set / clear / expire, audit rows, cache eviction).
"""

from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
from sqlalchemy.exc import IntegrityError

from bizcore.entitlements.errors import (
    ConcurrentOverrideConflictError,
    NotFoundError,
    OverrideScopeError,
)
from bizcore.entitlements.models import EntitlementView, Scope, TargetKind
from bizcore.entitlements.overrides import OverrideService
from bizcore.entitlements.resolver import OverrideResolver
from bizcore.models import EntitlementAuditLog, FeatureOverride

pytestmark = pytest.mark.db

FEATURE = TargetKind.FEATURE


@pytest.fixture
def cache():
    return MagicMock()


@pytest.fixture
def service(seeded_db, catalog, cache, audit_logger):
    return OverrideService(seeded_db, catalog, cache=cache, audit_logger=audit_logger)


def _set(service, code="telemedicine", scope=Scope.TENANT, scope_key="t1", enabled=True, **kw):
    kw.setdefault("reason", "pilot")
    kw.setdefault("actor", "ops@platform")
    return service.set_override(FEATURE, code, scope, scope_key, enabled=enabled, **kw)


class TestSetOverride:

    def test_set_and_list(self, service):
        record = _set(service)
        assert record.scope == Scope.TENANT
        assert record.scope_key == "t1"
        listed = service.list_overrides("t1", "clinic")
        assert [o.id for o in listed] == [record.id]

    def test_list_filters_by_tenant_and_business(self, service):
        _set(service, scope_key="t1")
        _set(service, scope_key="t2")
        _set(service, code="e_prescriptions", scope=Scope.BUSINESS, scope_key="clinic")
        _set(service, code="bill_of_materials", scope=Scope.BUSINESS, scope_key="furniture")
        _set(service, code="maintenance_banner", scope=Scope.GLOBAL, scope_key=None)

        codes = sorted((o.target_code, o.scope_key) for o in service.list_overrides("t1", "clinic"))
        assert codes == [
            ("e_prescriptions", "clinic"),
            ("maintenance_banner", None),
            ("telemedicine", "t1"),
        ]

    def test_replacing_supersedes_previous_row(self, service):
        first = _set(service, enabled=True)
        second = _set(service, enabled=False, reason="pilot over")

        active = service.list_overrides("t1", None)
        assert [o.id for o in active] == [second.id]
        assert active[0].enabled is False

        history = service.override_history(FEATURE, "telemedicine")
        assert {o.id for o in history} == {first.id, second.id}
        assert [o.is_active for o in history if o.id == first.id] == [False]

    def test_global_override_uses_sentinel_storage_key(self, service, seeded_db):
        record = _set(service, code="maintenance_banner", scope=Scope.GLOBAL, scope_key=None)
        row = seeded_db.get(FeatureOverride, record.id)
        assert row.scope_key == "*"
        assert record.scope_key is None

    def test_get_active_override(self, service):
        record = _set(service, scope=Scope.BUSINESS, scope_key="clinic")
        found = service.get_active_override(FEATURE, "telemedicine", Scope.BUSINESS, "clinic")
        assert found.id == record.id
        assert service.get_active_override(FEATURE, "telemedicine", Scope.BUSINESS, "gym") is None
        assert service.get_active_override(FEATURE, "telemedicine", Scope.TENANT, "t1") is None

    def test_module_override(self, service):
        record = service.set_override(
            TargetKind.MODULE, "clinical", Scope.BUSINESS, "clinic",
            enabled=False, reason="incident", actor="ops",
        )
        assert record.target_kind == TargetKind.MODULE


class TestValidation:

    def test_tenant_override_on_business_scoped_feature(self, service):
        with pytest.raises(OverrideScopeError):
            _set(service, code="e_prescriptions", scope=Scope.TENANT, scope_key="t1")

    def test_business_override_on_global_feature(self, service):
        with pytest.raises(OverrideScopeError):
            _set(service, code="maintenance_banner", scope=Scope.BUSINESS, scope_key="clinic")

    def test_unknown_feature(self, service):
        with pytest.raises(NotFoundError):
            _set(service, code="hologram")

    def test_unknown_business_type(self, service):
        with pytest.raises(NotFoundError):
            _set(service, scope=Scope.BUSINESS, scope_key="spaceport")

    def test_global_with_key_rejected(self, service):
        with pytest.raises(ValueError):
            _set(service, code="maintenance_banner", scope=Scope.GLOBAL, scope_key="x")

    def test_tenant_without_key_rejected(self, service):
        with pytest.raises(ValueError):
            _set(service, scope_key=None)

    def test_reason_required(self, service):
        with pytest.raises(ValueError):
            _set(service, reason="  ")

    def test_past_expiry_rejected(self, service):
        with pytest.raises(ValueError):
            _set(service, expires_at=datetime.now(timezone.utc) - timedelta(minutes=1))

    def test_rejected_write_leaves_no_rows(self, service, seeded_db, cache):
        with pytest.raises(OverrideScopeError):
            _set(service, code="e_prescriptions", scope=Scope.TENANT, scope_key="t1")
        assert seeded_db.query(FeatureOverride).count() == 0
        cache.invalidate.assert_not_called()


class TestClearOverride:

    def test_clear_makes_override_absent(self, service, catalog):
        _set(service, scope=Scope.BUSINESS, scope_key="clinic", enabled=True)
        _set(service, scope=Scope.TENANT, scope_key="t1", enabled=False)

        assert service.clear_override(FEATURE, "telemedicine", Scope.TENANT, "t1", actor="ops", reason="done")

        resolution = OverrideResolver(catalog, service).resolve("telemedicine", "t1", "clinic")
        assert resolution.enabled is True
        assert resolution.source_scope == Scope.BUSINESS

    def test_clear_missing_returns_false(self, service, cache):
        assert service.clear_override(FEATURE, "telemedicine", Scope.TENANT, "t1", actor="ops", reason="x") is False
        cache.invalidate.assert_not_called()


class TestExpiry:

    def test_expire_overrides(self, service):
        soon = datetime.now(timezone.utc) + timedelta(hours=1)
        _set(service, scope_key="t1", expires_at=soon)
        _set(service, scope_key="t2")

        later = soon + timedelta(minutes=1)
        assert service.expire_overrides(now=later) == 1
        remaining = service.list_overrides("t1", None) + service.list_overrides("t2", None)
        assert [o.scope_key for o in remaining] == ["t2"]

    def test_nothing_to_expire(self, service):
        assert service.expire_overrides() == 0


class TestAuditAndCache:

    def test_every_mutation_is_audited(self, service, seeded_db):
        record = _set(service)
        _set(service, enabled=False)
        service.clear_override(FEATURE, "telemedicine", Scope.TENANT, "t1", actor="ops", reason="done")

        actions = [
            row.action for row in
            seeded_db.query(EntitlementAuditLog).order_by(EntitlementAuditLog.created_at).all()
        ]
        assert actions.count("override.set") == 2
        assert actions.count("override.cleared") == 1

        first = seeded_db.query(EntitlementAuditLog).filter(EntitlementAuditLog.entity_id == record.id).first()
        assert first.actor == "ops@platform"
        assert first.tenant_id == "t1"
        assert first.new_value["enabled"] is True

    def test_tenant_write_evicts_tenant_scope(self, service, cache):
        _set(service, scope_key="t1")
        args, kwargs = cache.invalidate.call_args
        assert args == (Scope.TENANT, "t1")
        assert kwargs["reason"].startswith("override_set:feature:telemedicine")

    def test_business_write_evicts_business_scope(self, service, cache):
        _set(service, code="e_prescriptions", scope=Scope.BUSINESS, scope_key="clinic")
        assert cache.invalidate.call_args[0] == (Scope.BUSINESS, "clinic")

    def test_global_write_evicts_every_cached_view(self, service, cache):
        _set(service, code="maintenance_banner", scope=Scope.GLOBAL, scope_key=None)
        args, kwargs = cache.invalidate.call_args
        assert args == (Scope.GLOBAL, None)
        assert kwargs["reason"].startswith("override_set:feature:maintenance_banner")

    def test_global_write_empties_populated_view_cache(self, seeded_db, catalog, view_cache, audit_logger):
        for tenant_id, business_type in (("t1", "clinic"), ("t2", "clinic"), ("g1", "gym")):
            view_cache.set(EntitlementView(
                tenant_id=tenant_id,
                user_id="u1",
                business_type=business_type,
                permissions={"bookings.read"},
                features={"maintenance_banner": False},
                modules={"core": True},
                version_id=None,
                version_number=None,
                config_source="legacy",
                computed_at=datetime.now(timezone.utc),
            ))
        assert view_cache.get("g1", "u1") is not None
        svc = OverrideService(seeded_db, catalog, cache=view_cache, audit_logger=audit_logger)

        _set(svc, code="maintenance_banner", scope=Scope.GLOBAL, scope_key=None)

        for tenant_id in ("t1", "t2", "g1"):
            assert view_cache.get(tenant_id, "u1") is None


class TestConcurrency:

    def test_unique_violation_becomes_conflict_error(self, catalog, cache, audit_logger):
        db = MagicMock()
        db.query.return_value.filter.return_value.first.return_value = None
        db.flush.side_effect = IntegrityError("INSERT", {}, Exception("duplicate key"))
        svc = OverrideService(db, catalog, cache=cache, audit_logger=audit_logger)

        with pytest.raises(ConcurrentOverrideConflictError) as exc:
            _set(svc)
        assert exc.value.details["code"] == "telemedicine"
        db.rollback.assert_called_once()
        cache.invalidate.assert_not_called()
