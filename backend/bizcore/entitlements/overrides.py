"""
Override service — the only writer of feature_overrides.

Every mutation:
1. Validates the target against the catalog and its scope tag
2. Writes the change (supersede = deactivate old row + insert new row)
3. Appends an audit row in the same unit of work
4. Evicts cached views for the affected scope

The caller owns the transaction: this service flushes, the caller commits.
On a uniqueness violation the session is rolled back and
ConcurrentOverrideConflictError is raised; retry with a fresh read.
"""

import logging
from datetime import datetime, timezone
from typing import List, Optional

from sqlalchemy import and_, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bizcore.entitlements.audit import (
    AuditAction,
    AuditEntityType,
    EntitlementAuditEvent,
    EntitlementAuditLogger,
    get_audit_logger,
)
from bizcore.entitlements.cache import EntitlementViewCache, get_entitlement_view_cache
from bizcore.entitlements.errors import ConcurrentOverrideConflictError, OverrideScopeError
from bizcore.entitlements.models import (
    OverrideRecord,
    Scope,
    TargetKind,
    override_allowed,
)
from bizcore.entitlements.sources import CatalogSource, OverrideSource
from bizcore.models.base import ensure_utc
from bizcore.models.feature_override import FeatureOverride, GLOBAL_SCOPE_KEY

logger = logging.getLogger(__name__)


def _storage_key(scope: Scope, scope_key: Optional[str]) -> str:
    return GLOBAL_SCOPE_KEY if scope == Scope.GLOBAL else scope_key


def to_record(row: FeatureOverride) -> OverrideRecord:
    """Map an ORM row to the resolver's value type."""
    return OverrideRecord(
        id=row.id,
        target_kind=TargetKind(row.target_kind),
        target_code=row.target_code,
        scope=Scope(row.scope),
        scope_key=row.public_scope_key,
        enabled=row.enabled,
        reason=row.reason,
        created_by=row.created_by,
        created_at=ensure_utc(row.created_at),
        is_active=row.is_active,
        expires_at=ensure_utc(row.expires_at),
    )


class OverrideService(OverrideSource):
    """
    Create, clear and expire overrides.

    Usage:
        svc = OverrideService(db, catalog)
        svc.set_override(TargetKind.FEATURE, "telemedicine", Scope.TENANT, "t1",
                         enabled=True, reason="pilot", actor="ops@platform")
        db.commit()
    """

    def __init__(
        self,
        db: Session,
        catalog: CatalogSource,
        cache: Optional[EntitlementViewCache] = None,
        audit_logger: Optional[EntitlementAuditLogger] = None,
    ):
        self.db = db
        self.catalog = catalog
        self._cache = cache or get_entitlement_view_cache()
        self._audit = audit_logger or get_audit_logger()

    # ------------------------------------------------------------------
    # OverrideSource
    # ------------------------------------------------------------------

    def list_overrides(self, tenant_id: Optional[str], business_type: Optional[str]) -> List[OverrideRecord]:
        clauses = [FeatureOverride.scope == Scope.GLOBAL.value]
        if business_type:
            clauses.append(and_(
                FeatureOverride.scope == Scope.BUSINESS.value,
                FeatureOverride.scope_key == business_type,
            ))
        if tenant_id:
            clauses.append(and_(
                FeatureOverride.scope == Scope.TENANT.value,
                FeatureOverride.scope_key == tenant_id,
            ))
        rows = (
            self.db.query(FeatureOverride)
            .filter(FeatureOverride.is_active.is_(True), or_(*clauses))
            .all()
        )
        return [to_record(r) for r in rows]

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def set_override(
        self,
        kind: TargetKind,
        code: str,
        scope: Scope,
        scope_key: Optional[str],
        enabled: bool,
        reason: str,
        actor: str,
        expires_at: Optional[datetime] = None,
    ) -> OverrideRecord:
        """
        Create or replace the active override for (kind, code, scope, scope_key).

        Raises:
            NotFoundError: unknown target or business type
            OverrideScopeError: scope not allowed by the target's scope tag
            ValueError: missing reason / actor, bad scope_key, past expiry
            ConcurrentOverrideConflictError: lost a race with another writer
        """
        kind = TargetKind(kind)
        scope = Scope(scope)
        self._validate_target(kind, code, scope, scope_key)
        if not reason or not reason.strip():
            raise ValueError("Override reason is required")
        if not actor:
            raise ValueError("Override actor is required")
        now = datetime.now(timezone.utc)
        if expires_at is not None and ensure_utc(expires_at) <= now:
            raise ValueError("expires_at must be in the future")

        existing = self._find_active(kind, code, scope, scope_key)
        old_value = to_record(existing).to_dict() if existing else None

        row = FeatureOverride(
            target_kind=kind.value,
            target_code=code,
            scope=scope.value,
            scope_key=_storage_key(scope, scope_key),
            enabled=enabled,
            reason=reason,
            created_by=actor,
            is_active=True,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )

        try:
            if existing is not None:
                self._deactivate(existing, actor, now)
                self.db.flush()
            self.db.add(row)
            self.db.flush()
            record = to_record(row)
            self._audit.record(self.db, EntitlementAuditEvent(
                action=AuditAction.OVERRIDE_SET,
                entity_type=AuditEntityType.OVERRIDE,
                entity_id=row.id,
                actor=actor,
                reason=reason,
                scope=scope.value,
                scope_key=scope_key,
                tenant_id=scope_key if scope == Scope.TENANT else None,
                old_value=old_value,
                new_value=record.to_dict(),
            ))
            self.db.flush()
        except IntegrityError as e:
            self.db.rollback()
            logger.warning(
                "override.conflict",
                extra={"kind": kind.value, "code": code, "scope": scope.value, "scope_key": scope_key},
            )
            raise ConcurrentOverrideConflictError(
                f"Concurrent override write for {kind.value} '{code}' at {scope.value}/{scope_key}",
                kind=kind.value,
                code=code,
                scope=scope.value,
                scope_key=scope_key,
            ) from e

        logger.info(
            "override.set",
            extra={
                "override_id": row.id,
                "kind": kind.value,
                "code": code,
                "scope": scope.value,
                "scope_key": scope_key,
                "enabled": enabled,
                "actor": actor,
            },
        )
        self._invalidate(scope, scope_key, reason=f"override_set:{kind.value}:{code}")
        return record

    def clear_override(
        self,
        kind: TargetKind,
        code: str,
        scope: Scope,
        scope_key: Optional[str],
        actor: str,
        reason: str,
    ) -> bool:
        """
        Soft-delete the active override. Returns False if there was none.

        A cleared override is absent: resolution falls through to the next
        scope in the precedence list.
        """
        kind = TargetKind(kind)
        scope = Scope(scope)
        existing = self._find_active(kind, code, scope, scope_key)
        if existing is None:
            return False

        old_value = to_record(existing).to_dict()
        self._deactivate(existing, actor, datetime.now(timezone.utc))
        self._audit.record(self.db, EntitlementAuditEvent(
            action=AuditAction.OVERRIDE_CLEARED,
            entity_type=AuditEntityType.OVERRIDE,
            entity_id=existing.id,
            actor=actor,
            reason=reason,
            scope=scope.value,
            scope_key=scope_key,
            tenant_id=scope_key if scope == Scope.TENANT else None,
            old_value=old_value,
            new_value=None,
        ))
        self.db.flush()

        logger.info(
            "override.cleared",
            extra={"override_id": existing.id, "kind": kind.value, "code": code,
                   "scope": scope.value, "scope_key": scope_key, "actor": actor},
        )
        self._invalidate(scope, scope_key, reason=f"override_cleared:{kind.value}:{code}")
        return True

    def expire_overrides(self, now: Optional[datetime] = None, actor: str = "system") -> int:
        """
        Deactivate every active override whose expires_at has passed.

        Expired overrides are already ignored by the resolver; this job
        keeps the table and the unique index tidy. Returns the count.
        """
        now = now or datetime.now(timezone.utc)
        rows = (
            self.db.query(FeatureOverride)
            .filter(
                FeatureOverride.is_active.is_(True),
                FeatureOverride.expires_at.isnot(None),
                FeatureOverride.expires_at <= now,
            )
            .all()
        )

        scopes = set()
        for row in rows:
            old_value = to_record(row).to_dict()
            self._deactivate(row, actor, now)
            self._audit.record(self.db, EntitlementAuditEvent(
                action=AuditAction.OVERRIDE_EXPIRED,
                entity_type=AuditEntityType.OVERRIDE,
                entity_id=row.id,
                actor=actor,
                reason="expired",
                scope=row.scope,
                scope_key=row.public_scope_key,
                tenant_id=row.scope_key if row.scope == Scope.TENANT.value else None,
                old_value=old_value,
                new_value=None,
            ))
            scopes.add((Scope(row.scope), row.public_scope_key))

        if rows:
            self.db.flush()
            for scope, scope_key in scopes:
                self._invalidate(scope, scope_key, reason="override_expired")

        logger.info("override.expired_cleanup", extra={"count": len(rows)})
        return len(rows)

    def override_history(self, kind: TargetKind, code: str) -> List[OverrideRecord]:
        """Every override row (active or not) for a target, oldest first."""
        rows = (
            self.db.query(FeatureOverride)
            .filter(
                FeatureOverride.target_kind == TargetKind(kind).value,
                FeatureOverride.target_code == code,
            )
            .order_by(FeatureOverride.created_at.asc(), FeatureOverride.id.asc())
            .all()
        )
        return [to_record(r) for r in rows]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _validate_target(self, kind: TargetKind, code: str, scope: Scope, scope_key: Optional[str]) -> None:
        definition = self.catalog.get_module(code) if kind == TargetKind.MODULE else self.catalog.get_feature(code)

        if scope == Scope.GLOBAL and scope_key is not None:
            raise ValueError("Global overrides take no scope_key")
        if scope != Scope.GLOBAL and not scope_key:
            raise ValueError(f"{scope.value} overrides require a scope_key")
        if scope == Scope.BUSINESS:
            self.catalog.get_business_type(scope_key)

        if not override_allowed(definition.scope, scope):
            raise OverrideScopeError(
                f"{kind.value} '{code}' is tagged '{Scope(definition.scope).value}' "
                f"and cannot be overridden at '{scope.value}' scope",
                code=code,
                scope=scope.value,
                scope_tag=Scope(definition.scope).value,
            )

    def _find_active(
        self, kind: TargetKind, code: str, scope: Scope, scope_key: Optional[str]
    ) -> Optional[FeatureOverride]:
        return (
            self.db.query(FeatureOverride)
            .filter(
                FeatureOverride.target_kind == kind.value,
                FeatureOverride.target_code == code,
                FeatureOverride.scope == scope.value,
                FeatureOverride.scope_key == _storage_key(scope, scope_key),
                FeatureOverride.is_active.is_(True),
            )
            .first()
        )

    @staticmethod
    def _deactivate(row: FeatureOverride, actor: str, now: datetime) -> None:
        row.is_active = False
        row.deactivated_at = now
        row.deactivated_by = actor

    def _invalidate(self, scope: Scope, scope_key: Optional[str], reason: str) -> None:
        self._cache.invalidate(scope, scope_key, reason=reason)
