"""
Unit + property-based tests for permission composition.

Tests cover:
- role ∪ plan ∪ add-ons, exactly, with no duplicates
- unknown codes surface as CatalogIntegrityError
- tenant-custom roles cannot leak into other tenants
- add-ons whose prerequisites are missing grant nothing
- Property-based (Hypothesis): union, monotonicity, idempotence and
  add-on order independence
"""

import logging

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from bizcore.entitlements.catalog import InMemoryCatalogSource
from bizcore.entitlements.composer import PermissionComposer, compose
from bizcore.entitlements.errors import CatalogIntegrityError
from bizcore.entitlements.models import RoleDefinition


UNIVERSE = [
    "bookings.read",
    "bookings.write",
    "invoices.read",
    "invoices.write",
    "reports.read",
    "reports.export",
    "members.read",
    "settings.manage",
]

perm_sets = st.frozensets(st.sampled_from(UNIVERSE), max_size=len(UNIVERSE))


def _catalog(**overrides) -> InMemoryCatalogSource:
    kwargs = dict(
        permissions=UNIVERSE,
        roles=[
            RoleDefinition(id="staff", slug="staff", permissions=frozenset({"bookings.read"})),
            RoleDefinition(
                id="t1-front-desk",
                slug="front-desk",
                permissions=frozenset({"bookings.write"}),
                tenant_id="t1",
            ),
        ],
        plans={"pro": ["bookings.read", "invoices.write"], "basic": ["bookings.read"]},
        addons={"analytics": ["reports.read"], "exports": ["reports.export"]},
    )
    kwargs.update(overrides)
    return InMemoryCatalogSource(**kwargs)


# ---------------------------------------------------------------------------
# Example scenario
# ---------------------------------------------------------------------------

class TestComposeScenario:

    def test_staff_pro_analytics_is_exactly_three_codes(self):
        composer = PermissionComposer(_catalog())
        result = composer.compose_for("staff", "pro", ["analytics"], tenant_id="t9")
        assert result == frozenset({"bookings.read", "invoices.write", "reports.read"})
        assert len(result) == 3

    def test_shipped_catalog_gives_same_result(self, catalog):
        composer = PermissionComposer(catalog)
        result = composer.compose_for("staff", "pro", ["analytics"])
        assert result == {"bookings.read", "invoices.write", "reports.read"}

    def test_no_addons(self):
        composer = PermissionComposer(_catalog())
        assert composer.compose_for("staff", "basic") == {"bookings.read"}

    def test_result_is_frozen(self):
        result = compose({"bookings.read"}, {"invoices.write"})
        assert isinstance(result, frozenset)


# ---------------------------------------------------------------------------
# Integrity
# ---------------------------------------------------------------------------

class TestComposeIntegrity:

    def test_unknown_code_in_input_raises(self):
        with pytest.raises(CatalogIntegrityError) as exc:
            compose({"bookings.read"}, {"nope.read"}, known_permissions=frozenset(UNIVERSE))
        assert exc.value.details["unknown"] == ["nope.read"]

    def test_unknown_plan_raises_integrity_error(self):
        composer = PermissionComposer(_catalog())
        with pytest.raises(CatalogIntegrityError) as exc:
            composer.compose_for("staff", "enterprise")
        assert exc.value.details["kind"] == "plan"

    def test_unknown_addon_raises_integrity_error(self):
        composer = PermissionComposer(_catalog())
        with pytest.raises(CatalogIntegrityError):
            composer.compose_for("staff", "pro", ["sms_pack"])

    def test_unknown_role_raises_integrity_error(self):
        composer = PermissionComposer(_catalog())
        with pytest.raises(CatalogIntegrityError):
            composer.compose_for("ghost", "pro")

    def test_custom_role_of_another_tenant_is_rejected(self):
        composer = PermissionComposer(_catalog())
        with pytest.raises(CatalogIntegrityError):
            composer.compose_for("t1-front-desk", "pro", tenant_id="t2")

    def test_custom_role_in_own_tenant(self):
        composer = PermissionComposer(_catalog())
        result = composer.compose_for("t1-front-desk", "basic", tenant_id="t1")
        assert result == {"bookings.read", "bookings.write"}

    def test_empty_role_is_rejected_at_catalog_construction(self):
        with pytest.raises(CatalogIntegrityError):
            _catalog(roles=[RoleDefinition(id="empty", slug="empty", permissions=frozenset())])

    def test_role_with_unknown_code_is_rejected_at_catalog_construction(self):
        with pytest.raises(CatalogIntegrityError):
            _catalog(roles=[RoleDefinition(id="x", slug="x", permissions=frozenset({"made.up"}))])

    def test_plan_with_unknown_code_is_rejected_at_catalog_construction(self):
        with pytest.raises(CatalogIntegrityError):
            _catalog(plans={"pro": ["made.up"]})


# ---------------------------------------------------------------------------
# Add-on prerequisites
# ---------------------------------------------------------------------------

def _hr_catalog() -> InMemoryCatalogSource:
    return _catalog(
        addons={
            "analytics": ["reports.read"],
            "hrms": ["members.read"],
            "payroll": ["settings.manage"],
        },
        addon_requirements={"payroll": ["hrms"]},
    )


class TestAddonDependencies:

    def test_addon_without_its_prerequisite_grants_nothing(self, caplog):
        composer = PermissionComposer(_hr_catalog())
        with caplog.at_level(logging.WARNING, logger="bizcore.entitlements.composer"):
            result = composer.compose_for("staff", "basic", ["payroll"], tenant_id="t1")
        assert result == {"bookings.read"}
        missing = [r for r in caplog.records if r.getMessage() == "permission_composer.addon_dependency_missing"]
        assert missing[0].addon_code == "payroll"
        assert missing[0].reason == "ADDON_DEPENDENCY_MISSING"

    def test_prerequisite_present(self):
        composer = PermissionComposer(_hr_catalog())
        result = composer.compose_for("staff", "basic", ["payroll", "hrms"])
        assert result == {"bookings.read", "members.read", "settings.manage"}

    def test_entitled_addons_keeps_order_and_independent_addons(self):
        composer = PermissionComposer(_hr_catalog())
        assert composer.entitled_addons(["analytics", "payroll"]) == ("analytics",)
        assert composer.entitled_addons(["hrms", "payroll"]) == ("hrms", "payroll")

    def test_any_listed_prerequisite_suffices(self):
        catalog = _catalog(
            addons={"hrms": ["members.read"], "hrms_lite": ["members.read"], "payroll": ["settings.manage"]},
            addon_requirements={"payroll": ["hrms", "hrms_lite"]},
        )
        assert PermissionComposer(catalog).entitled_addons(["hrms_lite", "payroll"]) == ("hrms_lite", "payroll")

    def test_shipped_catalog_payroll_requires_hrms(self, catalog):
        composer = PermissionComposer(catalog)
        assert not composer.compose_for("staff", "pro", ["payroll"]) & {"payroll.run"}
        assert "payroll.run" in composer.compose_for("staff", "pro", ["hrms", "payroll"])

    @pytest.mark.parametrize("requirements", [
        {"payroll": ["ghost"]},
        {"ghost": ["hrms"]},
        {"payroll": ["payroll"]},
    ])
    def test_bad_requirements_rejected_at_catalog_construction(self, requirements):
        with pytest.raises(CatalogIntegrityError):
            _catalog(
                addons={"hrms": ["members.read"], "payroll": ["settings.manage"]},
                addon_requirements=requirements,
            )


# ---------------------------------------------------------------------------
# Property-based
# ---------------------------------------------------------------------------

class TestComposeProperties:

    @given(role=perm_sets, plan=perm_sets, addons=st.lists(perm_sets, max_size=4))
    @settings(max_examples=200)
    def test_result_is_exact_union(self, role, plan, addons):
        expected = set(role) | set(plan)
        for a in addons:
            expected |= a
        assert compose(role, plan, addons, known_permissions=frozenset(UNIVERSE)) == expected

    @given(role=perm_sets, plan=perm_sets, addons=st.lists(perm_sets, max_size=4), extra=perm_sets)
    @settings(max_examples=200)
    def test_adding_an_addon_never_removes_permissions(self, role, plan, addons, extra):
        before = compose(role, plan, addons)
        after = compose(role, plan, addons + [extra])
        assert before <= after

    @given(role=perm_sets, plan=perm_sets, addons=st.lists(perm_sets, max_size=4))
    @settings(max_examples=100)
    def test_addon_order_does_not_matter(self, role, plan, addons):
        assert compose(role, plan, addons) == compose(role, plan, list(reversed(addons)))

    @given(role=perm_sets, plan=perm_sets)
    @settings(max_examples=100)
    def test_duplicate_inputs_are_idempotent(self, role, plan):
        assert compose(role, plan, [plan, role]) == compose(role, plan)
