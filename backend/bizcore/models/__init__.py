"""
Database models for the entitlement engine.

Importing this package registers every table on bizcore.db_base.Base.
"""

from bizcore.models.base import (
    TimestampMixin,
    TenantScopedMixin,
    ImmutableRecordError,
    generate_uuid,
    utcnow,
    ensure_utc,
)
from bizcore.models.catalog import (
    RegistryScope,
    PermissionRecord,
    Role,
    RolePermission,
    Plan,
    PlanPermission,
    Addon,
    AddonDependency,
    AddonPermission,
    FeatureRegistryEntry,
    ModuleRegistryEntry,
    BusinessTypeRecord,
    BusinessModuleMapping,
    BusinessFeatureMapping,
)
from bizcore.models.tenant import (
    BindingAction,
    Tenant,
    UserRoleAssignment,
    TenantPlanAssignment,
    TenantAddon,
    TenantVersionBinding,
    TenantBusinessTypeHistory,
)
from bizcore.models.feature_override import FeatureOverride, GLOBAL_SCOPE_KEY
from bizcore.models.business_version import BusinessTypeVersion, VersionStatus
from bizcore.models.entitlement_audit import EntitlementAuditLog

__all__ = [
    "TimestampMixin",
    "TenantScopedMixin",
    "ImmutableRecordError",
    "generate_uuid",
    "utcnow",
    "ensure_utc",
    "RegistryScope",
    "PermissionRecord",
    "Role",
    "RolePermission",
    "Plan",
    "PlanPermission",
    "Addon",
    "AddonDependency",
    "AddonPermission",
    "FeatureRegistryEntry",
    "ModuleRegistryEntry",
    "BusinessTypeRecord",
    "BusinessModuleMapping",
    "BusinessFeatureMapping",
    "BindingAction",
    "Tenant",
    "UserRoleAssignment",
    "TenantPlanAssignment",
    "TenantAddon",
    "TenantVersionBinding",
    "TenantBusinessTypeHistory",
    "FeatureOverride",
    "GLOBAL_SCOPE_KEY",
    "BusinessTypeVersion",
    "VersionStatus",
    "EntitlementAuditLog",
]
