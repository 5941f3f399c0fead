"""
SQLAlchemy-backed collaborators for the entitlement core.

- SqlCatalogSource: CatalogSource over the catalog tables
- SqlTenantRecordSource: TenantRecordSource over tenant / assignment tables;
  add-ons are filtered through their billing window (AddonSubscription)

Both are read-only.
"""

import logging
from datetime import datetime, timezone
from typing import FrozenSet, List, Optional

from sqlalchemy.orm import Session

from bizcore.entitlements.errors import NotFoundError
from bizcore.entitlements.models import (
    AddonStatus,
    AddonSubscription,
    BusinessTypeDefinition,
    FeatureDefinition,
    ModuleDefinition,
    RoleDefinition,
    Scope,
    SnapshotEntry,
    TenantEntitlementRecord,
    VersionSnapshot,
)
from bizcore.entitlements.sources import CatalogSource, TenantRecordSource
from bizcore.models.base import ensure_utc
from bizcore.models.catalog import (
    Addon,
    BusinessFeatureMapping,
    BusinessModuleMapping,
    BusinessTypeRecord,
    FeatureRegistryEntry,
    ModuleRegistryEntry,
    PermissionRecord,
    Plan,
    Role,
)
from bizcore.models.tenant import (
    Tenant,
    TenantAddon,
    TenantPlanAssignment,
    TenantVersionBinding,
    UserRoleAssignment,
)

logger = logging.getLogger(__name__)


class SqlCatalogSource(CatalogSource):
    """Catalog read straight from the database on every call."""

    def __init__(self, db: Session):
        self.db = db

    def known_permissions(self) -> FrozenSet[str]:
        return frozenset(code for (code,) in self.db.query(PermissionRecord.code).all())

    def get_role(self, role_id: str) -> RoleDefinition:
        role = self.db.get(Role, role_id)
        if role is None or not role.is_active:
            raise NotFoundError("role", role_id)
        return RoleDefinition(
            id=role.id,
            slug=role.slug,
            permissions=frozenset(role.permission_codes),
            tenant_id=role.tenant_id,
            is_system=role.is_system,
        )

    def get_plan_permissions(self, plan_code: str) -> FrozenSet[str]:
        plan = self.db.get(Plan, plan_code)
        if plan is None or not plan.is_active:
            raise NotFoundError("plan", plan_code)
        return frozenset(p.permission_code for p in plan.permissions)

    def get_addon_permissions(self, addon_code: str) -> FrozenSet[str]:
        addon = self.db.get(Addon, addon_code)
        if addon is None or not addon.is_active:
            raise NotFoundError("addon", addon_code)
        return frozenset(p.permission_code for p in addon.permissions)

    def get_addon_requirements(self, addon_code: str) -> FrozenSet[str]:
        addon = self.db.get(Addon, addon_code)
        if addon is None or not addon.is_active:
            raise NotFoundError("addon", addon_code)
        return frozenset(addon.required_addon_codes)

    def get_feature(self, code: str) -> FeatureDefinition:
        row = self.db.get(FeatureRegistryEntry, code)
        if row is None:
            raise NotFoundError("feature", code)
        return _feature(row)

    def list_features(self) -> List[FeatureDefinition]:
        rows = self.db.query(FeatureRegistryEntry).order_by(FeatureRegistryEntry.code).all()
        return [_feature(r) for r in rows]

    def has_feature(self, code: str) -> bool:
        return self.db.get(FeatureRegistryEntry, code) is not None

    def get_module(self, code: str) -> ModuleDefinition:
        row = self.db.get(ModuleRegistryEntry, code)
        if row is None:
            raise NotFoundError("module", code)
        return _module(row)

    def list_modules(self) -> List[ModuleDefinition]:
        rows = self.db.query(ModuleRegistryEntry).order_by(ModuleRegistryEntry.code).all()
        return [_module(r) for r in rows]

    def has_module(self, code: str) -> bool:
        return self.db.get(ModuleRegistryEntry, code) is not None

    def get_business_type(self, code: str) -> BusinessTypeDefinition:
        row = self.db.get(BusinessTypeRecord, code)
        if row is None or not row.is_active:
            raise NotFoundError("business_type", code)
        return BusinessTypeDefinition(
            code=row.code,
            name=row.name,
            requires_versioning=row.requires_versioning,
        )

    def get_legacy_mapping(self, business_type: str) -> Optional[VersionSnapshot]:
        modules = (
            self.db.query(BusinessModuleMapping)
            .filter(BusinessModuleMapping.business_type_code == business_type)
            .order_by(BusinessModuleMapping.display_order, BusinessModuleMapping.module_code)
            .all()
        )
        features = (
            self.db.query(BusinessFeatureMapping)
            .filter(BusinessFeatureMapping.business_type_code == business_type)
            .order_by(BusinessFeatureMapping.display_order, BusinessFeatureMapping.feature_code)
            .all()
        )
        if not modules and not features:
            return None
        return VersionSnapshot(
            modules=tuple(
                SnapshotEntry(m.module_code, m.default_enabled, m.is_required, m.display_order)
                for m in modules
            ),
            features=tuple(
                SnapshotEntry(f.feature_code, f.default_enabled, f.is_required, f.display_order)
                for f in features
            ),
        )


def _feature(row: FeatureRegistryEntry) -> FeatureDefinition:
    return FeatureDefinition(
        code=row.code,
        name=row.name,
        scope=Scope(row.scope),
        default_enabled=row.default_enabled,
        module_code=row.module_code,
    )


def _module(row: ModuleRegistryEntry) -> ModuleDefinition:
    return ModuleDefinition(
        code=row.code,
        name=row.name,
        scope=Scope(row.scope),
        default_enabled=row.default_enabled,
    )


def _subscription(row: TenantAddon) -> AddonSubscription:
    return AddonSubscription(
        addon_code=row.addon_code,
        status=AddonStatus(row.status or AddonStatus.ACTIVE.value),
        paid_until=ensure_utc(row.expires_at),
        trial_ends_at=ensure_utc(row.trial_ends_at),
        grace_until=ensure_utc(row.grace_until),
    )


class SqlTenantRecordSource(TenantRecordSource):
    """Reads a tenant/user's role, plan, add-ons and version binding."""

    def __init__(self, db: Session):
        self.db = db

    def get_tenant_record(self, tenant_id: str, user_id: str) -> Optional[TenantEntitlementRecord]:
        tenant = self.db.get(Tenant, tenant_id)
        if tenant is None or not tenant.is_active:
            return None

        assignment = (
            self.db.query(UserRoleAssignment)
            .filter(
                UserRoleAssignment.tenant_id == tenant_id,
                UserRoleAssignment.user_id == user_id,
                UserRoleAssignment.is_active.is_(True),
            )
            .first()
        )

        plan = self.db.get(TenantPlanAssignment, tenant_id)
        plan_code = plan.plan_code if plan is not None and plan.is_active else None

        now = datetime.now(timezone.utc)
        addon_rows = (
            self.db.query(TenantAddon)
            .filter(TenantAddon.tenant_id == tenant_id, TenantAddon.is_active.is_(True))
            .order_by(TenantAddon.addon_code)
            .all()
        )
        addon_codes = tuple(
            a.addon_code for a in addon_rows if _subscription(a).is_entitled(now)
        )

        binding = self.db.get(TenantVersionBinding, tenant_id)
        business_type = binding.business_type_code if binding is not None else tenant.business_type_code

        return TenantEntitlementRecord(
            tenant_id=tenant_id,
            user_id=user_id,
            business_type=business_type,
            role_id=assignment.role_id if assignment is not None else None,
            plan_code=plan_code,
            addon_codes=addon_codes,
            pinned_version_id=binding.pinned_version_id if binding is not None else None,
        )
