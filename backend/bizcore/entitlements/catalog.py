"""
In-memory CatalogSource.

Built from the YAML catalog (see loader.py) or directly in tests. All
referential checks happen at construction, so a catalog that exists is a
catalog whose role/plan/add-on maps only reference known permission codes,
whose add-on prerequisites name known add-ons and whose roles are never
empty.
"""

import logging
from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional

from bizcore.entitlements.errors import CatalogIntegrityError, NotFoundError
from bizcore.entitlements.models import (
    BusinessTypeDefinition,
    FeatureDefinition,
    ModuleDefinition,
    RoleDefinition,
    VersionSnapshot,
)
from bizcore.entitlements.sources import CatalogSource

logger = logging.getLogger(__name__)


class InMemoryCatalogSource(CatalogSource):
    """
    Immutable catalog held in dictionaries.

    Usage:
        catalog = InMemoryCatalogSource(
            permissions=["bookings.read", "invoices.write"],
            roles=[RoleDefinition(id="staff", slug="staff", permissions=frozenset({"bookings.read"}))],
            plans={"pro": ["invoices.write"]},
        )
    """

    def __init__(
        self,
        permissions: Iterable[str],
        roles: Iterable[RoleDefinition] = (),
        plans: Optional[Mapping[str, Iterable[str]]] = None,
        addons: Optional[Mapping[str, Iterable[str]]] = None,
        addon_requirements: Optional[Mapping[str, Iterable[str]]] = None,
        features: Iterable[FeatureDefinition] = (),
        modules: Iterable[ModuleDefinition] = (),
        business_types: Iterable[BusinessTypeDefinition] = (),
        legacy_mappings: Optional[Mapping[str, VersionSnapshot]] = None,
        deprecated_permissions: Iterable[str] = (),
    ):
        self._permissions: FrozenSet[str] = frozenset(permissions)
        self._deprecated: FrozenSet[str] = frozenset(deprecated_permissions)
        self._roles: Dict[str, RoleDefinition] = {r.id: r for r in roles}
        self._plans: Dict[str, FrozenSet[str]] = {
            code: frozenset(perms) for code, perms in (plans or {}).items()
        }
        self._addons: Dict[str, FrozenSet[str]] = {
            code: frozenset(perms) for code, perms in (addons or {}).items()
        }
        self._addon_requirements: Dict[str, FrozenSet[str]] = {
            code: frozenset(reqs) for code, reqs in (addon_requirements or {}).items()
        }
        self._features: Dict[str, FeatureDefinition] = {f.code: f for f in features}
        self._modules: Dict[str, ModuleDefinition] = {m.code: m for m in modules}
        self._business_types: Dict[str, BusinessTypeDefinition] = {
            b.code: b for b in business_types
        }
        self._legacy: Dict[str, VersionSnapshot] = dict(legacy_mappings or {})
        self._validate()

    def _validate(self) -> None:
        problems = []

        unknown_deprecated = self._deprecated - self._permissions
        if unknown_deprecated:
            problems.append(f"deprecated codes not in catalog: {sorted(unknown_deprecated)}")

        for role in self._roles.values():
            if not role.permissions:
                problems.append(f"role '{role.id}' resolves to an empty permission set")
            unknown = role.permissions - self._permissions
            if unknown:
                problems.append(f"role '{role.id}' references unknown permissions {sorted(unknown)}")

        for label, mapping in (("plan", self._plans), ("addon", self._addons)):
            for code, perms in mapping.items():
                unknown = perms - self._permissions
                if unknown:
                    problems.append(f"{label} '{code}' references unknown permissions {sorted(unknown)}")

        for code, reqs in self._addon_requirements.items():
            if code not in self._addons:
                problems.append(f"requirements declared for unknown addon '{code}'")
            if code in reqs:
                problems.append(f"addon '{code}' requires itself")
            unknown = reqs - set(self._addons)
            if unknown:
                problems.append(f"addon '{code}' requires unknown addons {sorted(unknown)}")

        for feature in self._features.values():
            if feature.module_code and feature.module_code not in self._modules:
                problems.append(f"feature '{feature.code}' references unknown module '{feature.module_code}'")

        for bt, snapshot in self._legacy.items():
            if bt not in self._business_types:
                problems.append(f"legacy mapping for unknown business type '{bt}'")
            for entry in snapshot.modules:
                if entry.code not in self._modules:
                    problems.append(f"legacy mapping '{bt}' references unknown module '{entry.code}'")
            for entry in snapshot.features:
                if entry.code not in self._features:
                    problems.append(f"legacy mapping '{bt}' references unknown feature '{entry.code}'")

        if problems:
            logger.error("catalog.integrity_failed", extra={"problems": problems})
            raise CatalogIntegrityError(
                f"Catalog failed integrity checks: {'; '.join(problems)}",
                problems=problems,
            )

    # -- permissions -------------------------------------------------------

    def known_permissions(self) -> FrozenSet[str]:
        return self._permissions

    def is_deprecated(self, code: str) -> bool:
        return code in self._deprecated

    def get_role(self, role_id: str) -> RoleDefinition:
        try:
            return self._roles[role_id]
        except KeyError:
            raise NotFoundError("role", role_id)

    def get_plan_permissions(self, plan_code: str) -> FrozenSet[str]:
        try:
            return self._plans[plan_code]
        except KeyError:
            raise NotFoundError("plan", plan_code)

    def get_addon_permissions(self, addon_code: str) -> FrozenSet[str]:
        try:
            return self._addons[addon_code]
        except KeyError:
            raise NotFoundError("addon", addon_code)

    def get_addon_requirements(self, addon_code: str) -> FrozenSet[str]:
        if addon_code not in self._addons:
            raise NotFoundError("addon", addon_code)
        return self._addon_requirements.get(addon_code, frozenset())

    # -- features / modules ------------------------------------------------

    def get_feature(self, code: str) -> FeatureDefinition:
        try:
            return self._features[code]
        except KeyError:
            raise NotFoundError("feature", code)

    def list_features(self) -> List[FeatureDefinition]:
        return list(self._features.values())

    def has_feature(self, code: str) -> bool:
        return code in self._features

    def get_module(self, code: str) -> ModuleDefinition:
        try:
            return self._modules[code]
        except KeyError:
            raise NotFoundError("module", code)

    def list_modules(self) -> List[ModuleDefinition]:
        return list(self._modules.values())

    def has_module(self, code: str) -> bool:
        return code in self._modules

    # -- business types ----------------------------------------------------

    def get_business_type(self, code: str) -> BusinessTypeDefinition:
        try:
            return self._business_types[code]
        except KeyError:
            raise NotFoundError("business_type", code)

    def list_business_types(self) -> List[BusinessTypeDefinition]:
        return list(self._business_types.values())

    def get_legacy_mapping(self, business_type: str) -> Optional[VersionSnapshot]:
        return self._legacy.get(business_type)
