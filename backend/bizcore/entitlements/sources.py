"""
Collaborator interfaces consumed by the entitlement core.

The core never queries storage directly. It reads through these
interfaces, which lets the composer and resolver stay pure and lets tests
swap in in-memory implementations.

- CatalogSource: read-only reference data (permissions, roles, plans,
  add-ons, features, modules, business types, legacy mappings)
- OverrideSource: override records
- VersionSource: business-type versions and tenant bindings
- TenantRecordSource: a tenant/user's role, plan, add-ons and binding
"""

from abc import ABC, abstractmethod
from datetime import datetime
from typing import FrozenSet, List, Optional

from bizcore.entitlements.models import (
    BusinessTypeDefinition,
    FeatureDefinition,
    ModuleDefinition,
    OverrideRecord,
    RoleDefinition,
    Scope,
    TargetKind,
    TenantEntitlementRecord,
    VersionRecord,
    VersionSnapshot,
    pick_active_override,
)


class CatalogSource(ABC):
    """Read-only catalog. Lookups of unknown keys raise NotFoundError."""

    @abstractmethod
    def known_permissions(self) -> FrozenSet[str]:
        """Every permission code, deprecated ones included."""

    @abstractmethod
    def get_role(self, role_id: str) -> RoleDefinition:
        ...

    def get_role_permissions(self, role_id: str) -> FrozenSet[str]:
        return self.get_role(role_id).permissions

    @abstractmethod
    def get_plan_permissions(self, plan_code: str) -> FrozenSet[str]:
        ...

    @abstractmethod
    def get_addon_permissions(self, addon_code: str) -> FrozenSet[str]:
        ...

    def get_addon_requirements(self, addon_code: str) -> FrozenSet[str]:
        """Prerequisite add-ons; at least one must be entitled. Empty = none."""
        return frozenset()

    @abstractmethod
    def get_feature(self, code: str) -> FeatureDefinition:
        ...

    @abstractmethod
    def list_features(self) -> List[FeatureDefinition]:
        ...

    @abstractmethod
    def get_module(self, code: str) -> ModuleDefinition:
        ...

    @abstractmethod
    def list_modules(self) -> List[ModuleDefinition]:
        ...

    @abstractmethod
    def get_business_type(self, code: str) -> BusinessTypeDefinition:
        ...

    @abstractmethod
    def get_legacy_mapping(self, business_type: str) -> Optional[VersionSnapshot]:
        """Flat pre-versioning mapping, or None if the business type has none."""

    def has_feature(self, code: str) -> bool:
        return any(f.code == code for f in self.list_features())

    def has_module(self, code: str) -> bool:
        return any(m.code == code for m in self.list_modules())


class OverrideSource(ABC):
    """Override lookups for the resolver."""

    @abstractmethod
    def list_overrides(self, tenant_id: Optional[str], business_type: Optional[str]) -> List[OverrideRecord]:
        """
        Batch fetch: every active override that may apply to the tenant,
        i.e. global ones, business-scoped ones for business_type and
        tenant-scoped ones for tenant_id.
        """

    def get_active_override(
        self,
        kind: TargetKind,
        code: str,
        scope: Scope,
        scope_key: Optional[str],
        now: Optional[datetime] = None,
    ) -> Optional[OverrideRecord]:
        tenant_id = scope_key if scope == Scope.TENANT else None
        business_type = scope_key if scope == Scope.BUSINESS else None
        candidates = [
            o for o in self.list_overrides(tenant_id, business_type)
            if o.matches(kind, code, scope, scope_key)
        ]
        return pick_active_override(candidates, now)


class VersionSource(ABC):
    """Business-type versions as seen by the session builder."""

    @abstractmethod
    def get_published_version(
        self, business_type: str, version_number: Optional[int] = None
    ) -> Optional[VersionRecord]:
        """
        Return a published version (or, when a number is given, a published
        or retired one). version_number None => latest effective published.
        Returns None when nothing matches.
        """

    @abstractmethod
    def get_version(self, version_id: str) -> Optional[VersionRecord]:
        """Return any version by id, or None."""


class TenantRecordSource(ABC):

    @abstractmethod
    def get_tenant_record(self, tenant_id: str, user_id: str) -> Optional[TenantEntitlementRecord]:
        """None if the tenant does not exist."""
