"""
Entitlement session builder — one immutable EntitlementView per
(tenant, user).

Build pipeline:
    1. Load the tenant record (role, plan, add-ons, binding)
    2. Compose permissions (role ∪ plan ∪ add-ons)
    3. Resolve the ConfigSource: pinned version → latest published →
       legacy flat mapping (only when the business type does not require
       versioning)
    4. Batch-resolve modules and features through the override resolver
    5. Assemble the view

Fail-closed: a missing tenant, role or plan raises
IncompleteEntitlementError carrying a zero-permission view. Missing
add-ons are fine. build() never writes.

get_view() adds cache read-through with single-flight protection so N
concurrent misses for one (tenant, user) compute once.
"""

import logging
import os
from datetime import datetime, timezone
from threading import Lock
from typing import Dict, Optional

from sqlalchemy.orm import Session

from bizcore.entitlements.cache import EntitlementViewCache, get_entitlement_view_cache
from bizcore.entitlements.composer import PermissionComposer
from bizcore.entitlements.errors import (
    IncompleteEntitlementError,
    NotFoundError,
    VersionNotFoundError,
)
from bizcore.entitlements.models import (
    ConfigSource,
    EntitlementView,
    LegacyConfig,
    Resolution,
    TargetKind,
    TenantEntitlementRecord,
    VersionedConfig,
    VersionSnapshot,
)
from bizcore.entitlements.resolver import OverrideResolver
from bizcore.entitlements.sources import (
    CatalogSource,
    OverrideSource,
    TenantRecordSource,
    VersionSource,
)

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Single-flight: one build per (tenant, user) key at a time
# ---------------------------------------------------------------------------

class _SingleFlightRegistry:
    """
    The first caller for a key acquires its lock and computes; later
    callers wait on the lock and then read from cache.
    """

    def __init__(self):
        self._locks: Dict[str, Lock] = {}
        self._registry_lock = Lock()

    def get_lock(self, key: str) -> Lock:
        with self._registry_lock:
            if key not in self._locks:
                self._locks[key] = Lock()
            return self._locks[key]

    def release(self, key: str) -> None:
        with self._registry_lock:
            self._locks.pop(key, None)


_single_flight = _SingleFlightRegistry()


class EntitlementSessionBuilder:
    """
    Orchestrates composer, version lookup and resolver.

    One instance per request / job. Stateless between calls except for
    injected collaborators.
    """

    def __init__(
        self,
        catalog: CatalogSource,
        tenants: TenantRecordSource,
        overrides: OverrideSource,
        versions: VersionSource,
        cache: Optional[EntitlementViewCache] = None,
    ):
        self.catalog = catalog
        self.tenants = tenants
        self.versions = versions
        self.composer = PermissionComposer(catalog)
        self.resolver = OverrideResolver(catalog, overrides)
        self._cache = cache or get_entitlement_view_cache()

    # ------------------------------------------------------------------
    # Primary API
    # ------------------------------------------------------------------

    def build(self, tenant_id: str, user_id: str, now: Optional[datetime] = None) -> EntitlementView:
        """
        Compute the view from scratch. Pure with respect to storage.

        Raises:
            IncompleteEntitlementError: unknown tenant, no role or no plan
            VersionNotFoundError: business type requires versioning but
                nothing is published (or the pin is dangling)
            CatalogIntegrityError: catalog references unknown codes
        """
        now = now or datetime.now(timezone.utc)
        record = self.tenants.get_tenant_record(tenant_id, user_id)

        if record is None:
            self._fail_closed(tenant_id, user_id, "tenant", None, now)
        if not record.role_id:
            self._fail_closed(tenant_id, user_id, "role", record.business_type, now)
        if not record.plan_code:
            self._fail_closed(tenant_id, user_id, "plan", record.business_type, now)

        permissions = self.composer.compose_for(
            record.role_id,
            record.plan_code,
            record.addon_codes,
            tenant_id=tenant_id,
        )

        config = self.resolve_config_source(record)
        snapshot = config.snapshot if config is not None else VersionSnapshot()
        resolved = self.resolver.resolve_all(tenant_id, record.business_type, snapshot, now=now)

        view = EntitlementView(
            tenant_id=tenant_id,
            user_id=user_id,
            business_type=record.business_type,
            permissions=permissions,
            features=resolved.feature_flags(),
            modules=resolved.module_flags(),
            feature_sources=resolved.feature_sources(),
            module_sources=resolved.module_sources(),
            version_id=config.version_id if isinstance(config, VersionedConfig) else None,
            version_number=config.version_number if isinstance(config, VersionedConfig) else None,
            config_source=config.kind.value if config is not None else "none",
            computed_at=now,
        )

        logger.info(
            "entitlement_view.built",
            extra={
                "tenant_id": tenant_id,
                "user_id": user_id,
                "business_type": record.business_type,
                "config_source": view.config_source,
                "version_number": view.version_number,
                "permission_count": len(view.permissions),
                "enabled_features": len(view.enabled_features),
                "enabled_modules": len(view.enabled_modules),
            },
        )
        return view

    def resolve_config_source(self, record: TenantEntitlementRecord) -> Optional[ConfigSource]:
        """
        Decide which configuration seeds the business layer. Resolved once
        per build.

        Returns None only for tenants without a business type.
        """
        business_type = record.business_type
        if not business_type:
            return None

        if record.pinned_version_id:
            pinned = self.versions.get_version(record.pinned_version_id)
            if pinned is None or pinned.is_draft or pinned.business_type != business_type:
                raise VersionNotFoundError(
                    f"Tenant {record.tenant_id} is pinned to unusable version {record.pinned_version_id}",
                    business_type=business_type,
                    version=record.pinned_version_id,
                )
            return VersionedConfig(
                business_type=business_type,
                version_id=pinned.id,
                version_number=pinned.version_number,
                snapshot=pinned.snapshot,
                is_pinned=True,
            )

        latest = self.versions.get_published_version(business_type)
        if latest is not None:
            return VersionedConfig(
                business_type=business_type,
                version_id=latest.id,
                version_number=latest.version_number,
                snapshot=latest.snapshot,
            )

        definition = self.catalog.get_business_type(business_type)
        if definition.requires_versioning:
            raise VersionNotFoundError(
                f"Business type '{business_type}' requires versioning but has no published version",
                business_type=business_type,
            )

        legacy = self.catalog.get_legacy_mapping(business_type)
        if legacy is None:
            logger.warning(
                "entitlement_view.legacy_mapping_missing",
                extra={"tenant_id": record.tenant_id, "business_type": business_type},
            )
            legacy = VersionSnapshot()
        return LegacyConfig(business_type=business_type, snapshot=legacy)

    def get_view(self, tenant_id: str, user_id: str) -> EntitlementView:
        """
        Cached build.

        1. Check cache → return on hit
        2. Acquire single-flight lock for (tenant, user)
        3. Re-check cache
        4. build() and cache the result
        """
        cached = self._cache.get(tenant_id, user_id)
        if cached is not None:
            return cached

        key = f"{tenant_id}:{user_id}"
        lock = _single_flight.get_lock(key)
        with lock:
            try:
                cached = self._cache.get(tenant_id, user_id)
                if cached is not None:
                    return cached
                view = self.build(tenant_id, user_id)
                self._cache.set(view)
                return view
            finally:
                _single_flight.release(key)

    def build_fail_closed(self, tenant_id: str, user_id: str) -> EntitlementView:
        """
        get_view() for callers that must always receive a view: incomplete
        entitlements yield the restricted view instead of raising.
        """
        try:
            return self.get_view(tenant_id, user_id)
        except IncompleteEntitlementError as e:
            return e.view

    # ------------------------------------------------------------------
    # Checks and diagnostics
    # ------------------------------------------------------------------

    def check_permission(self, tenant_id: str, user_id: str, permission: str) -> bool:
        return self.build_fail_closed(tenant_id, user_id).has_permission(permission)

    def check_feature(self, tenant_id: str, user_id: str, feature: str) -> bool:
        return self.build_fail_closed(tenant_id, user_id).has_feature(feature)

    def check_module(self, tenant_id: str, user_id: str, module: str) -> bool:
        return self.build_fail_closed(tenant_id, user_id).has_module(module)

    def explain(
        self,
        tenant_id: str,
        code: str,
        kind: TargetKind = TargetKind.FEATURE,
        now: Optional[datetime] = None,
    ) -> Resolution:
        """
        Answer "why does this tenant have (or lack) X": the resolved value
        with the deciding scope, origin and override id.
        """
        record = self.tenants.get_tenant_record(tenant_id, "")
        if record is None:
            raise NotFoundError("tenant", tenant_id)
        config = self.resolve_config_source(record)
        snapshot = config.snapshot if config is not None else None
        return self.resolver.resolve(
            code,
            tenant_id,
            record.business_type,
            kind=kind,
            snapshot=snapshot,
            now=now,
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _fail_closed(
        self,
        tenant_id: str,
        user_id: str,
        missing: str,
        business_type: Optional[str],
        now: datetime,
    ) -> None:
        view = EntitlementView.restricted_view(
            tenant_id,
            user_id,
            reason=f"missing_{missing}",
            business_type=business_type,
            now=now,
        )
        self._emit_support_alert(tenant_id, user_id, missing)
        raise IncompleteEntitlementError(tenant_id, user_id, missing, view)

    def _emit_support_alert(self, tenant_id: str, user_id: str, missing: str) -> None:
        """
        Logs at CRITICAL level with a structured payload so monitoring can
        page support for a tenant locked out by incomplete entitlements.
        """
        logger.critical(
            "entitlement_view.incomplete",
            extra={
                "alert_type": "entitlement_incomplete",
                "tenant_id": tenant_id,
                "user_id": user_id,
                "missing": missing,
                "action_required": "Assign the missing role or plan",
            },
        )


# ---------------------------------------------------------------------------
# Module-level factory
# ---------------------------------------------------------------------------

def get_session_builder(
    db: Session,
    catalog: Optional[CatalogSource] = None,
    cache: Optional[EntitlementViewCache] = None,
) -> EntitlementSessionBuilder:
    """
    Wire a builder against the database.

    The catalog comes from config/catalog.yml when
    ENTITLEMENT_CATALOG_SOURCE=config (default) and from the catalog
    tables when it is "database".
    """
    from bizcore.entitlements.loader import get_catalog_loader
    from bizcore.entitlements.overrides import OverrideService
    from bizcore.entitlements.repositories import SqlCatalogSource, SqlTenantRecordSource
    from bizcore.entitlements.versions import BusinessVersionManager

    if catalog is None:
        if os.getenv("ENTITLEMENT_CATALOG_SOURCE", "config") == "database":
            catalog = SqlCatalogSource(db)
        else:
            catalog = get_catalog_loader().catalog

    cache = cache or get_entitlement_view_cache()
    return EntitlementSessionBuilder(
        catalog=catalog,
        tenants=SqlTenantRecordSource(db),
        overrides=OverrideService(db, catalog, cache=cache),
        versions=BusinessVersionManager(db, catalog, cache=cache),
        cache=cache,
    )
