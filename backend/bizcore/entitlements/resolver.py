"""
Override resolver — effective enabled state of features and modules.

Walks PRECEDENCE (tenant → business → global) and stops at the first
active override. With none present the defaults apply:

    1. active tenant override
    2. active business-type override
    3. active global override
    4. the version snapshot entry's default_enabled
    5. registry default_enabled

A global override therefore acts as a platform-wide switch even for
targets the business type ships. Required snapshot entries are locked on
for the business type and are decided before any override is consulted.

Overrides declared at a scope the target's scope tag does not allow are
ignored (OverrideService rejects them on write; this covers other
sources).
"""

import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from bizcore.entitlements.errors import CatalogIntegrityError, NotFoundError
from bizcore.entitlements.models import (
    PRECEDENCE,
    OverrideRecord,
    Resolution,
    ResolutionOrigin,
    ResolvedConfiguration,
    Scope,
    SnapshotEntry,
    TargetKind,
    VersionSnapshot,
    override_allowed,
    pick_active_override,
)
from bizcore.entitlements.sources import CatalogSource, OverrideSource

logger = logging.getLogger(__name__)

_IndexKey = Tuple[TargetKind, str, Scope]


class OverrideResolver:
    """
    Resolves features and modules for one tenant.

    Usage:
        resolver = OverrideResolver(catalog, override_source)
        r = resolver.resolve("telemedicine", "t1", "clinic", snapshot=snapshot)
        r.enabled, r.source_scope  # True, Scope.TENANT
    """

    def __init__(
        self,
        catalog: CatalogSource,
        overrides: OverrideSource,
        precedence: Sequence[Scope] = PRECEDENCE,
    ):
        self.catalog = catalog
        self.overrides = overrides
        self.precedence = tuple(precedence)

    # ------------------------------------------------------------------
    # Single target
    # ------------------------------------------------------------------

    def resolve(
        self,
        code: str,
        tenant_id: str,
        business_type: Optional[str],
        kind: TargetKind = TargetKind.FEATURE,
        snapshot: Optional[VersionSnapshot] = None,
        now: Optional[datetime] = None,
        overrides: Optional[List[OverrideRecord]] = None,
    ) -> Resolution:
        """
        Resolve one feature or module.

        Args:
            code: Feature or module code
            tenant_id: Tenant being resolved
            business_type: Tenant's business type (None if unassigned)
            kind: FEATURE or MODULE
            snapshot: Version snapshot seeding the business layer
            now: Evaluation instant for override expiry
            overrides: Pre-fetched overrides (batch callers)

        Raises:
            NotFoundError: code is not in the registry
        """
        now = now or datetime.now(timezone.utc)
        kind = TargetKind(kind)
        if overrides is None:
            overrides = self.overrides.list_overrides(tenant_id, business_type)
        index = self._index(overrides, tenant_id, business_type)
        entry = snapshot.entry(kind, code) if snapshot is not None else None
        return self._resolve_one(kind, code, entry, index, now)

    # ------------------------------------------------------------------
    # Batch
    # ------------------------------------------------------------------

    def resolve_all(
        self,
        tenant_id: str,
        business_type: Optional[str],
        snapshot: Optional[VersionSnapshot],
        now: Optional[datetime] = None,
    ) -> ResolvedConfiguration:
        """
        Resolve every module and feature in the snapshot plus every
        globally-scoped registry entry, with a single override fetch.

        Raises:
            CatalogIntegrityError: the snapshot references an unknown code
        """
        now = now or datetime.now(timezone.utc)
        snapshot = snapshot or VersionSnapshot()
        overrides = self.overrides.list_overrides(tenant_id, business_type)
        index = self._index(overrides, tenant_id, business_type)

        result = ResolvedConfiguration()
        for kind, target in (
            (TargetKind.MODULE, result.modules),
            (TargetKind.FEATURE, result.features),
        ):
            for code in self._codes_for(kind, snapshot):
                entry = snapshot.entry(kind, code)
                try:
                    target[code] = self._resolve_one(kind, code, entry, index, now)
                except NotFoundError as e:
                    raise CatalogIntegrityError(
                        f"Snapshot for '{business_type}' references unknown {kind.value} '{code}'",
                        business_type=business_type,
                        code=code,
                    ) from e

        logger.debug(
            "override_resolver.resolved",
            extra={
                "tenant_id": tenant_id,
                "business_type": business_type,
                "modules": len(result.modules),
                "features": len(result.features),
                "overrides_considered": len(overrides),
            },
        )
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _codes_for(self, kind: TargetKind, snapshot: VersionSnapshot) -> List[str]:
        codes = [e.code for e in snapshot.entries(kind)]
        seen = set(codes)
        registry: Iterable = (
            self.catalog.list_modules() if kind == TargetKind.MODULE else self.catalog.list_features()
        )
        for definition in registry:
            if Scope(definition.scope) == Scope.GLOBAL and definition.code not in seen:
                codes.append(definition.code)
                seen.add(definition.code)
        return codes

    def _definition(self, kind: TargetKind, code: str):
        if kind == TargetKind.MODULE:
            return self.catalog.get_module(code)
        return self.catalog.get_feature(code)

    @staticmethod
    def _index(
        overrides: Iterable[OverrideRecord],
        tenant_id: Optional[str],
        business_type: Optional[str],
    ) -> Dict[_IndexKey, List[OverrideRecord]]:
        """Group overrides that apply to this tenant by (kind, code, scope)."""
        index: Dict[_IndexKey, List[OverrideRecord]] = defaultdict(list)
        for o in overrides:
            scope = Scope(o.scope)
            if scope == Scope.TENANT and (tenant_id is None or o.scope_key != tenant_id):
                continue
            if scope == Scope.BUSINESS and (business_type is None or o.scope_key != business_type):
                continue
            index[(TargetKind(o.target_kind), o.target_code, scope)].append(o)
        return index

    def _resolve_one(
        self,
        kind: TargetKind,
        code: str,
        entry: Optional[SnapshotEntry],
        index: Dict[_IndexKey, List[OverrideRecord]],
        now: datetime,
    ) -> Resolution:
        definition = self._definition(kind, code)

        if entry is not None and entry.is_required:
            return Resolution(code, kind, True, Scope.BUSINESS, ResolutionOrigin.REQUIRED)

        for scope in self.precedence:
            candidates = index.get((kind, code, scope), [])
            if candidates and not override_allowed(definition.scope, scope):
                logger.warning(
                    "override_resolver.override_scope_ignored",
                    extra={"code": code, "kind": kind.value, "scope": scope.value,
                           "scope_tag": Scope(definition.scope).value},
                )
                continue

            override = pick_active_override(candidates, now)
            if override is not None:
                return Resolution(code, kind, override.enabled, scope, ResolutionOrigin.OVERRIDE, override.id)

        if entry is not None:
            return Resolution(code, kind, entry.default_enabled, Scope.BUSINESS, ResolutionOrigin.SNAPSHOT)

        return Resolution(code, kind, definition.default_enabled, Scope.GLOBAL, ResolutionOrigin.DEFAULT)
