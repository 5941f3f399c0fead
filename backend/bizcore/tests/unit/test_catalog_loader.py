"""
Tests for catalog loading and validation (config/catalog.yml).
"""

import pytest

from bizcore.entitlements.errors import CatalogIntegrityError, NotFoundError
from bizcore.entitlements.loader import (
    CatalogLoader,
    build_catalog,
    get_catalog_loader,
    parse_catalog,
)
from bizcore.entitlements.models import Scope


def _minimal(**extra):
    doc = {
        "permissions": [{"code": "bookings.read"}, {"code": "invoices.write"}],
        "roles": [{"id": "staff", "permissions": ["bookings.read"]}],
        "plans": [{"code": "pro", "permissions": ["bookings.read", "invoices.write"]}],
        "modules": [{"code": "scheduling", "scope": "business"}],
        "features": [{"code": "online_booking", "module": "scheduling"}],
        "business_types": [
            {"code": "gym", "modules": [{"code": "scheduling"}], "features": [{"code": "online_booking"}]},
        ],
    }
    doc.update(extra)
    return doc


class TestShippedCatalog:

    def test_all_verticals_present(self, catalog):
        codes = {b.code for b in catalog.list_business_types()}
        assert {
            "clinic", "gym", "pg_hostel", "coworking", "legal",
            "logistics", "education", "tourism", "real_estate", "furniture",
        } <= codes

    def test_clinic_requires_versioning(self, catalog):
        assert catalog.get_business_type("clinic").requires_versioning is True

    def test_telemedicine_is_tenant_scoped_and_off_by_default(self, catalog):
        feature = catalog.get_feature("telemedicine")
        assert feature.scope == Scope.TENANT
        assert feature.default_enabled is False

    def test_every_business_type_has_a_legacy_mapping(self, catalog):
        for bt in catalog.list_business_types():
            mapping = catalog.get_legacy_mapping(bt.code)
            assert mapping is not None
            assert mapping.validation_problems() == []

    def test_deprecated_permission_is_still_known(self, catalog):
        assert "legacy.sync" in catalog.known_permissions()
        assert catalog.is_deprecated("legacy.sync")

    def test_payroll_requires_hrms(self, catalog):
        assert catalog.get_addon_requirements("payroll") == {"hrms"}
        assert catalog.get_addon_requirements("hrms") == frozenset()


class TestParseCatalog:

    def test_minimal_document(self):
        catalog = build_catalog(parse_catalog(_minimal()))
        assert catalog.get_plan_permissions("pro") == {"bookings.read", "invoices.write"}
        assert catalog.get_feature("online_booking").scope == Scope.TENANT

    def test_unknown_top_level_key_rejected(self):
        with pytest.raises(CatalogIntegrityError):
            parse_catalog(_minimal(surprise=True))

    def test_permission_code_must_be_dotted(self):
        doc = _minimal(permissions=[{"code": "bookings"}])
        with pytest.raises(CatalogIntegrityError):
            parse_catalog(doc)

    def test_bad_scope_rejected(self):
        doc = _minimal(modules=[{"code": "scheduling", "scope": "planet"}])
        with pytest.raises(CatalogIntegrityError):
            parse_catalog(doc)

    def test_role_with_unknown_permission_fails_build(self):
        doc = _minimal(roles=[{"id": "staff", "permissions": ["bookings.delete"]}])
        with pytest.raises(CatalogIntegrityError):
            build_catalog(parse_catalog(doc))

    def test_legacy_mapping_with_unknown_feature_fails_build(self):
        doc = _minimal(business_types=[{"code": "gym", "modules": [{"code": "scheduling"}],
                                        "features": [{"code": "sauna"}]}])
        with pytest.raises(CatalogIntegrityError):
            build_catalog(parse_catalog(doc))

    def test_addon_requirements(self):
        doc = _minimal(addons=[
            {"code": "hrms", "permissions": ["bookings.read"]},
            {"code": "payroll", "requires": ["hrms"], "permissions": ["invoices.write"]},
        ])
        catalog = build_catalog(parse_catalog(doc))
        assert catalog.get_addon_requirements("payroll") == {"hrms"}
        with pytest.raises(NotFoundError):
            catalog.get_addon_requirements("ghost")

    def test_addon_requiring_unknown_addon_fails_build(self):
        doc = _minimal(addons=[{"code": "payroll", "requires": ["hrms"], "permissions": ["invoices.write"]}])
        with pytest.raises(CatalogIntegrityError):
            build_catalog(parse_catalog(doc))

    def test_business_type_without_mapping(self):
        doc = _minimal(business_types=[{"code": "gym"}])
        catalog = build_catalog(parse_catalog(doc))
        assert catalog.get_legacy_mapping("gym") is None

    def test_lookup_miss_is_not_found(self):
        catalog = build_catalog(parse_catalog(_minimal()))
        with pytest.raises(NotFoundError):
            catalog.get_role("owner")


class TestCatalogLoader:

    def test_loads_explicit_path(self, make_yaml_config):
        path = make_yaml_config("catalog.yml", _minimal())
        loader = get_catalog_loader(str(path))
        assert loader.catalog.has_feature("online_booking")
        assert loader.schema.plans[0].code == "pro"

    def test_env_var_path(self, make_yaml_config, monkeypatch):
        path = make_yaml_config("catalog.yml", _minimal())
        monkeypatch.setenv("ENTITLEMENT_CATALOG_PATH", str(path))
        assert CatalogLoader().catalog.has_module("scheduling")

    def test_singleton(self, make_yaml_config):
        path = make_yaml_config("catalog.yml", _minimal())
        assert get_catalog_loader(str(path)) is get_catalog_loader()

    def test_default_path_is_shipped_catalog(self, monkeypatch):
        monkeypatch.delenv("ENTITLEMENT_CATALOG_PATH", raising=False)
        assert get_catalog_loader().catalog.has_feature("telemedicine")

    def test_reload_failure_keeps_previous_catalog(self, make_yaml_config):
        path = make_yaml_config("catalog.yml", _minimal())
        loader = get_catalog_loader(str(path))
        before = loader.catalog

        make_yaml_config("catalog.yml", _minimal(roles=[{"id": "staff", "permissions": ["nope.read"]}]))
        with pytest.raises(CatalogIntegrityError):
            loader.reload()
        assert loader.catalog is before

    def test_missing_file(self, temp_config_dir):
        with pytest.raises(FileNotFoundError):
            get_catalog_loader(str(temp_config_dir / "absent.yml"))
