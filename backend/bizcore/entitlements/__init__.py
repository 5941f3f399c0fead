"""
Entitlement and feature resolution engine.

This package provides:
- PermissionComposer: role ∪ plan ∪ add-on permission composition
- OverrideResolver: tenant → business → global feature/module resolution
- BusinessVersionManager: immutable business-type versions and tenant bindings
- OverrideService: scoped feature/module overrides with supersede history
- EntitlementSessionBuilder: one immutable EntitlementView per (tenant, user)
- EntitlementViewCache: Redis-backed view cache with scoped invalidation
- require_permission / require_feature / require_module: FastAPI guards

Resolution order: tenant override → business override → version snapshot
→ global override → registry default
"""

from bizcore.entitlements.models import (
    PRECEDENCE,
    Scope,
    TargetKind,
    ResolutionOrigin,
    ConfigSourceKind,
    OverrideRecord,
    SnapshotEntry,
    VersionSnapshot,
    VersionRecord,
    VersionedConfig,
    LegacyConfig,
    EffectiveVersion,
    FeatureDefinition,
    ModuleDefinition,
    RoleDefinition,
    BusinessTypeDefinition,
    TenantEntitlementRecord,
    Resolution,
    ResolvedConfiguration,
    EntitlementView,
)
from bizcore.entitlements.errors import (
    EntitlementError,
    CatalogIntegrityError,
    NotFoundError,
    IncompleteEntitlementError,
    VersionNotFoundError,
    RetiredTargetError,
    ConcurrentOverrideConflictError,
    InvalidVersionTransitionError,
    ImmutableVersionError,
    VersionValidationError,
    LastPublishedVersionError,
    StaleBindingError,
    TenantBindingNotFoundError,
    OverrideScopeError,
)
from bizcore.entitlements.catalog import InMemoryCatalogSource
from bizcore.entitlements.composer import PermissionComposer, compose
from bizcore.entitlements.resolver import OverrideResolver
from bizcore.entitlements.cache import EntitlementViewCache, get_entitlement_view_cache
from bizcore.entitlements.audit import EntitlementAuditLogger, AccessDenialEvent
from bizcore.entitlements.overrides import OverrideService
from bizcore.entitlements.versions import BusinessVersionManager
from bizcore.entitlements.loader import CatalogLoader, get_catalog_loader
from bizcore.entitlements.service import EntitlementSessionBuilder, get_session_builder
from bizcore.entitlements.middleware import (
    AccessRestrictedError,
    get_entitlement_view,
    require_permission,
    require_feature,
    require_module,
)

__all__ = [
    "PRECEDENCE",
    "Scope",
    "TargetKind",
    "ResolutionOrigin",
    "ConfigSourceKind",
    "OverrideRecord",
    "SnapshotEntry",
    "VersionSnapshot",
    "VersionRecord",
    "VersionedConfig",
    "LegacyConfig",
    "EffectiveVersion",
    "FeatureDefinition",
    "ModuleDefinition",
    "RoleDefinition",
    "BusinessTypeDefinition",
    "TenantEntitlementRecord",
    "Resolution",
    "ResolvedConfiguration",
    "EntitlementView",
    "EntitlementError",
    "CatalogIntegrityError",
    "NotFoundError",
    "IncompleteEntitlementError",
    "VersionNotFoundError",
    "RetiredTargetError",
    "ConcurrentOverrideConflictError",
    "InvalidVersionTransitionError",
    "ImmutableVersionError",
    "VersionValidationError",
    "LastPublishedVersionError",
    "StaleBindingError",
    "TenantBindingNotFoundError",
    "OverrideScopeError",
    "InMemoryCatalogSource",
    "PermissionComposer",
    "compose",
    "OverrideResolver",
    "EntitlementViewCache",
    "get_entitlement_view_cache",
    "EntitlementAuditLogger",
    "AccessDenialEvent",
    "OverrideService",
    "BusinessVersionManager",
    "CatalogLoader",
    "get_catalog_loader",
    "EntitlementSessionBuilder",
    "get_session_builder",
    "AccessRestrictedError",
    "get_entitlement_view",
    "require_permission",
    "require_feature",
    "require_module",
]
