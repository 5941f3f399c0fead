"""
Business-type version manager — immutable configuration snapshots and
tenant bindings.

Ensures that:
1. Published snapshots never change. Publishing N+1 does not touch N.
2. Every binding transition appends exactly one history row, in the same
   flush as the binding write.
3. Every check runs before the first write. A rejected transition leaves
   no trace.
4. Cached views are evicted for exactly the affected scope.

Lifecycle:
    create_draft → update_draft* → publish → retire
    create_version_from_legacy → (draft) → publish

Tenant bindings:
    assign_business_type → rebind / unpin_tenant / undo_last_transition

The caller owns the transaction: methods flush, the caller commits.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func, or_
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from bizcore.entitlements.audit import (
    AuditAction,
    AuditEntityType,
    EntitlementAuditEvent,
    EntitlementAuditLogger,
    get_audit_logger,
)
from bizcore.entitlements.cache import EntitlementViewCache, get_entitlement_view_cache
from bizcore.entitlements.errors import (
    ImmutableVersionError,
    InvalidVersionTransitionError,
    LastPublishedVersionError,
    NotFoundError,
    RetiredTargetError,
    StaleBindingError,
    TenantBindingNotFoundError,
    VersionNotFoundError,
    VersionValidationError,
)
from bizcore.entitlements.models import (
    EffectiveVersion,
    VersionRecord,
    VersionSnapshot,
)
from bizcore.entitlements.sources import CatalogSource, VersionSource
from bizcore.models.base import ensure_utc
from bizcore.models.business_version import BusinessTypeVersion, VersionStatus
from bizcore.models.catalog import BusinessTypeRecord
from bizcore.models.tenant import (
    BindingAction,
    Tenant,
    TenantBusinessTypeHistory,
    TenantVersionBinding,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def to_version_record(row: BusinessTypeVersion) -> VersionRecord:
    return VersionRecord(
        id=row.id,
        business_type=row.business_type_code,
        version_number=row.version_number,
        status=row.status,
        snapshot=VersionSnapshot.from_payload(row.module_snapshot, row.feature_snapshot),
        snapshot_hash=row.snapshot_hash,
        effective_at=ensure_utc(row.effective_at),
        published_at=ensure_utc(row.published_at),
        retired_at=ensure_utc(row.retired_at),
    )


class BusinessVersionManager(VersionSource):
    """
    Manages business-type version lifecycle and tenant bindings.

    Usage:
        mgr = BusinessVersionManager(db, catalog)
        draft = mgr.create_draft("clinic", snapshot, actor="ops")
        mgr.publish(draft.id, actor="ops")
        mgr.assign_business_type("t1", "clinic", actor="onboarding", reason="signup")
        db.commit()
    """

    def __init__(
        self,
        db: Session,
        catalog: CatalogSource,
        cache: Optional[EntitlementViewCache] = None,
        audit_logger: Optional[EntitlementAuditLogger] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.catalog = catalog
        self._cache = cache or get_entitlement_view_cache()
        self._audit = audit_logger or get_audit_logger()
        self._clock = clock or _utcnow

    # ------------------------------------------------------------------
    # Reads (VersionSource)
    # ------------------------------------------------------------------

    def _get_row(self, version_id: str) -> Optional[BusinessTypeVersion]:
        return self.db.get(BusinessTypeVersion, version_id)

    def _require_row(self, version_id: str) -> BusinessTypeVersion:
        row = self._get_row(version_id)
        if row is None:
            raise VersionNotFoundError(f"Version {version_id} not found", version=version_id)
        return row

    def get_version(self, version_id: str) -> Optional[VersionRecord]:
        row = self._get_row(version_id)
        return to_version_record(row) if row is not None else None

    def get_published_version(
        self, business_type: str, version_number: Optional[int] = None
    ) -> Optional[VersionRecord]:
        """
        version_number None => latest: highest-numbered PUBLISHED version
        whose effective_at has passed. With a number, a published or retired
        version with that number (drafts are never served).
        """
        query = self.db.query(BusinessTypeVersion).filter(
            BusinessTypeVersion.business_type_code == business_type
        )
        if version_number is not None:
            row = query.filter(
                BusinessTypeVersion.version_number == version_number,
                BusinessTypeVersion.status.in_(
                    [VersionStatus.PUBLISHED.value, VersionStatus.RETIRED.value]
                ),
            ).first()
            return to_version_record(row) if row is not None else None

        row = self._live_versions(business_type).first()
        return to_version_record(row) if row is not None else None

    def _live_versions(self, business_type: str, now: Optional[datetime] = None):
        """PUBLISHED versions whose effective_at has passed, newest first."""
        now = now or self._clock()
        return (
            self.db.query(BusinessTypeVersion)
            .filter(
                BusinessTypeVersion.business_type_code == business_type,
                BusinessTypeVersion.status == VersionStatus.PUBLISHED.value,
                or_(
                    BusinessTypeVersion.effective_at.is_(None),
                    BusinessTypeVersion.effective_at <= now,
                ),
            )
            .order_by(BusinessTypeVersion.version_number.desc())
        )

    def list_versions(self, business_type: str, status: Optional[VersionStatus] = None) -> List[VersionRecord]:
        query = self.db.query(BusinessTypeVersion).filter(
            BusinessTypeVersion.business_type_code == business_type
        )
        if status is not None:
            query = query.filter(BusinessTypeVersion.status == VersionStatus(status).value)
        rows = query.order_by(BusinessTypeVersion.version_number.asc()).all()
        return [to_version_record(r) for r in rows]

    def get_version_details(self, version_id: str) -> Dict[str, Any]:
        """Version metadata, snapshot and how many tenants are pinned to it."""
        row = self._require_row(version_id)
        pinned = (
            self.db.query(func.count(TenantVersionBinding.tenant_id))
            .filter(TenantVersionBinding.pinned_version_id == version_id)
            .scalar()
        )
        return {
            "id": row.id,
            "business_type": row.business_type_code,
            "version_number": row.version_number,
            "status": row.status,
            "name": row.name,
            "description": row.description,
            "modules": list(row.module_snapshot or []),
            "features": list(row.feature_snapshot or []),
            "snapshot_hash": row.snapshot_hash,
            "effective_at": _iso(row.effective_at),
            "published_at": _iso(row.published_at),
            "published_by": row.published_by,
            "retired_at": _iso(row.retired_at),
            "retired_by": row.retired_by,
            "created_by": row.created_by,
            "migration_notes": row.migration_notes,
            "is_backward_compatible": row.is_backward_compatible,
            "pinned_tenant_count": pinned or 0,
        }

    # ------------------------------------------------------------------
    # Draft lifecycle
    # ------------------------------------------------------------------

    def create_draft(
        self,
        business_type: str,
        snapshot: VersionSnapshot,
        actor: str,
        name: Optional[str] = None,
        description: Optional[str] = None,
        migration_notes: Optional[str] = None,
        is_backward_compatible: bool = True,
        effective_at: Optional[datetime] = None,
    ) -> VersionRecord:
        """Create a DRAFT numbered one past the highest existing version."""
        self.catalog.get_business_type(business_type)

        current_max = (
            self.db.query(func.max(BusinessTypeVersion.version_number))
            .filter(BusinessTypeVersion.business_type_code == business_type)
            .scalar()
        )
        next_number = (current_max or 0) + 1

        row = BusinessTypeVersion(
            business_type_code=business_type,
            version_number=next_number,
            status=VersionStatus.DRAFT.value,
            name=name or f"{business_type} v{next_number}",
            description=description,
            module_snapshot=snapshot.module_payload(),
            feature_snapshot=snapshot.feature_payload(),
            created_by=actor,
            migration_notes=migration_notes,
            is_backward_compatible=is_backward_compatible,
            effective_at=effective_at,
        )
        self.db.add(row)
        self.db.flush()

        self._audit.record(self.db, EntitlementAuditEvent(
            action=AuditAction.VERSION_DRAFTED,
            entity_type=AuditEntityType.VERSION,
            entity_id=row.id,
            actor=actor,
            scope="business",
            scope_key=business_type,
            new_value={"version_number": next_number, **snapshot.to_payload()},
        ))
        self.db.flush()

        logger.info(
            "business_version.drafted",
            extra={"business_type": business_type, "version_number": next_number, "version_id": row.id},
        )
        return to_version_record(row)

    def update_draft(
        self,
        version_id: str,
        actor: str,
        snapshot: Optional[VersionSnapshot] = None,
        name: Optional[str] = None,
        description: Optional[str] = None,
        migration_notes: Optional[str] = None,
        is_backward_compatible: Optional[bool] = None,
        effective_at: Optional[datetime] = None,
    ) -> VersionRecord:
        """Edit a draft. Published and retired versions are immutable."""
        row = self._require_row(version_id)
        if not row.is_draft:
            raise ImmutableVersionError(
                f"Version {version_id} is {row.status}; only drafts can be edited",
                version_id=version_id,
                status=row.status,
            )

        old_value = {"modules": row.module_snapshot, "features": row.feature_snapshot}
        if snapshot is not None:
            row.module_snapshot = snapshot.module_payload()
            row.feature_snapshot = snapshot.feature_payload()
        if name is not None:
            row.name = name
        if description is not None:
            row.description = description
        if migration_notes is not None:
            row.migration_notes = migration_notes
        if is_backward_compatible is not None:
            row.is_backward_compatible = is_backward_compatible
        if effective_at is not None:
            row.effective_at = effective_at

        self._audit.record(self.db, EntitlementAuditEvent(
            action=AuditAction.VERSION_UPDATED,
            entity_type=AuditEntityType.VERSION,
            entity_id=row.id,
            actor=actor,
            scope="business",
            scope_key=row.business_type_code,
            old_value=old_value,
            new_value={"modules": row.module_snapshot, "features": row.feature_snapshot},
        ))
        self.db.flush()
        return to_version_record(row)

    def discard_draft(self, version_id: str, actor: str) -> None:
        """Delete an unpublished draft."""
        row = self._require_row(version_id)
        if not row.is_draft:
            raise InvalidVersionTransitionError(version_id, row.status, "discard")
        self.db.delete(row)
        self.db.flush()
        logger.info(
            "business_version.draft_discarded",
            extra={"version_id": version_id, "business_type": row.business_type_code, "actor": actor},
        )

    def create_version_from_legacy(self, business_type: str, actor: str) -> VersionRecord:
        """Seed a draft from the flat pre-versioning mapping."""
        snapshot = self.catalog.get_legacy_mapping(business_type)
        if snapshot is None:
            raise NotFoundError("legacy_mapping", business_type)
        return self.create_draft(
            business_type,
            snapshot,
            actor=actor,
            name=f"{business_type} (migrated from legacy mapping)",
            migration_notes="Created from legacy business-type mapping",
        )

    def validate_draft(self, version_id: str, effective_at: Optional[datetime] = None) -> List[str]:
        """Every reason publish() would reject this draft. Empty list = publishable."""
        row = self._require_row(version_id)
        snapshot = VersionSnapshot.from_payload(row.module_snapshot, row.feature_snapshot)
        problems = snapshot.validation_problems()

        for entry in snapshot.modules:
            if not self.catalog.has_module(entry.code):
                problems.append(f"unknown module code '{entry.code}'")
        for entry in snapshot.features:
            if not self.catalog.has_feature(entry.code):
                problems.append(f"unknown feature code '{entry.code}'")

        when = ensure_utc(effective_at or row.effective_at)
        if when is not None and when < self._clock():
            problems.append(f"effective_at {when.isoformat()} is in the past")
        return problems

    # ------------------------------------------------------------------
    # Publish / retire
    # ------------------------------------------------------------------

    def publish(
        self,
        version_id: str,
        actor: str,
        effective_at: Optional[datetime] = None,
    ) -> VersionRecord:
        """
        DRAFT → PUBLISHED.

        Freezes the snapshot (writes snapshot_hash), advances the
        business type's latest pointer in the same flush when the version
        is already in effect and evicts the business type's cached views.
        A future effective_at is picked up by activate_due_versions().
        Other versions are not touched.

        Raises:
            VersionNotFoundError: no such version
            InvalidVersionTransitionError: not a draft
            VersionValidationError: empty/duplicate/unknown codes, past effective_at
        """
        row = self._require_row(version_id)
        if not row.is_draft:
            raise InvalidVersionTransitionError(version_id, row.status, "publish")

        problems = self.validate_draft(version_id, effective_at)
        if problems:
            logger.warning(
                "business_version.publish_rejected",
                extra={"version_id": version_id, "problems": problems},
            )
            raise VersionValidationError(version_id, problems)

        now = self._clock()
        snapshot = VersionSnapshot.from_payload(row.module_snapshot, row.feature_snapshot)
        try:
            row.status = VersionStatus.PUBLISHED.value
            row.snapshot_hash = snapshot.fingerprint()
            row.published_at = now
            row.published_by = actor
            row.effective_at = effective_at or row.effective_at or now
            self.db.flush()
            self._refresh_latest_pointer(row.business_type_code)

            self._audit.record(self.db, EntitlementAuditEvent(
                action=AuditAction.VERSION_PUBLISHED,
                entity_type=AuditEntityType.VERSION,
                entity_id=row.id,
                actor=actor,
                scope="business",
                scope_key=row.business_type_code,
                old_value={"status": VersionStatus.DRAFT.value},
                new_value={
                    "status": VersionStatus.PUBLISHED.value,
                    "version_number": row.version_number,
                    "snapshot_hash": row.snapshot_hash,
                    "effective_at": _iso(row.effective_at),
                },
            ))
            self.db.flush()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("business_version.publish_failed", extra={"version_id": version_id})
            raise

        logger.info(
            "business_version.published",
            extra={
                "business_type": row.business_type_code,
                "version_number": row.version_number,
                "version_id": row.id,
                "snapshot_hash": row.snapshot_hash,
                "actor": actor,
            },
        )
        self._cache.invalidate_business_type(
            row.business_type_code, reason=f"version_published:v{row.version_number}"
        )
        return to_version_record(row)

    def retire(
        self,
        version_id: str,
        actor: str,
        reason: str,
        force: bool = False,
    ) -> VersionRecord:
        """
        PUBLISHED → RETIRED (terminal).

        Tenants pinned to a retired version keep reading it. Retiring
        requires another version that is already in effect, otherwise
        force=True; a published version with a future effective_at does
        not count because floating tenants cannot resolve it yet.
        """
        row = self._require_row(version_id)
        if not row.is_published:
            raise InvalidVersionTransitionError(version_id, row.status, "retire")

        others = (
            self._live_versions(row.business_type_code)
            .filter(BusinessTypeVersion.id != row.id)
            .count()
        )
        if not others and not force:
            raise LastPublishedVersionError(
                f"Version {version_id} is the only version in effect for "
                f"'{row.business_type_code}'; pass force=True to retire it",
                version_id=version_id,
                business_type=row.business_type_code,
            )

        now = self._clock()
        try:
            row.status = VersionStatus.RETIRED.value
            row.retired_at = now
            row.retired_by = actor
            self.db.flush()
            self._refresh_latest_pointer(row.business_type_code)

            self._audit.record(self.db, EntitlementAuditEvent(
                action=AuditAction.VERSION_RETIRED,
                entity_type=AuditEntityType.VERSION,
                entity_id=row.id,
                actor=actor,
                reason=reason,
                scope="business",
                scope_key=row.business_type_code,
                old_value={"status": VersionStatus.PUBLISHED.value},
                new_value={"status": VersionStatus.RETIRED.value, "forced": force},
            ))
            self.db.flush()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception("business_version.retire_failed", extra={"version_id": version_id})
            raise

        logger.info(
            "business_version.retired",
            extra={
                "business_type": row.business_type_code,
                "version_number": row.version_number,
                "version_id": row.id,
                "forced": force,
                "actor": actor,
            },
        )
        self._cache.invalidate_business_type(
            row.business_type_code, reason=f"version_retired:v{row.version_number}"
        )
        return to_version_record(row)

    def _refresh_latest_pointer(self, business_type: str, now: Optional[datetime] = None) -> bool:
        """
        Point the registry at the version get_published_version serves.

        Returns True when the pointer moved.
        """
        record = self.db.get(BusinessTypeRecord, business_type)
        if record is None:
            return False
        latest = self._live_versions(business_type, now).first()
        latest_id = latest.id if latest else None
        if record.latest_version_id == latest_id:
            return False
        record.latest_version_number = latest.version_number if latest else None
        record.latest_version_id = latest_id
        return True

    def activate_due_versions(self, now: Optional[datetime] = None) -> int:
        """
        Move registry pointers onto versions whose effective_at has passed.

        publish() with a future effective_at leaves the pointer (and cached
        views) on the version in effect. Run this periodically, the same
        way expire_overrides is run; every business type whose pointer
        moves has its cached views evicted. Returns that count.
        """
        now = now or self._clock()
        moved = []
        for record in self.db.query(BusinessTypeRecord).all():
            previous = record.latest_version_number
            if self._refresh_latest_pointer(record.code, now):
                moved.append((record.code, previous, record.latest_version_number))
        if not moved:
            return 0
        self.db.flush()

        for business_type, previous, current in moved:
            logger.info(
                "business_version.activated",
                extra={
                    "business_type": business_type,
                    "previous_version_number": previous,
                    "version_number": current,
                },
            )
            self._cache.invalidate_business_type(
                business_type, reason=f"version_effective:v{current}"
            )
        return len(moved)

    # ------------------------------------------------------------------
    # Tenant bindings
    # ------------------------------------------------------------------

    def get_binding(self, tenant_id: str) -> Optional[TenantVersionBinding]:
        return self.db.get(TenantVersionBinding, tenant_id)

    def get_effective_version(self, tenant_id: str) -> EffectiveVersion:
        """The version the tenant observes right now, pinned or floating."""
        binding = self.get_binding(tenant_id)
        if binding is None:
            raise TenantBindingNotFoundError(tenant_id)

        if binding.pinned_version_id is not None:
            version = self.get_version(binding.pinned_version_id)
        else:
            version = self.get_published_version(binding.business_type_code)
        if version is None:
            raise VersionNotFoundError(
                f"No resolvable version for tenant {tenant_id}",
                business_type=binding.business_type_code,
                version=binding.pinned_version_id,
            )
        return EffectiveVersion(
            tenant_id=tenant_id,
            business_type=binding.business_type_code,
            version_id=version.id,
            version_number=version.version_number,
            status=version.status,
            is_pinned=binding.is_pinned,
        )

    def assign_business_type(
        self,
        tenant_id: str,
        business_type: str,
        actor: str,
        reason: str,
        pinned_version_id: Optional[str] = None,
    ) -> TenantBusinessTypeHistory:
        """
        Create (or move) a tenant's binding to a business type.

        Floating by default; pass pinned_version_id to pin at assignment.
        Records ASSIGN for a first binding and REASSIGN for a move.
        """
        self.catalog.get_business_type(business_type)
        tenant = self.db.get(Tenant, tenant_id)
        if tenant is None:
            raise NotFoundError("tenant", tenant_id)
        if pinned_version_id is not None:
            self._check_target(business_type, pinned_version_id, rollback=False)

        binding = self.get_binding(tenant_id)
        action = BindingAction.ASSIGN if binding is None else BindingAction.REASSIGN
        return self._write_transition(
            tenant_id=tenant_id,
            binding=binding,
            business_type=business_type,
            to_version_id=pinned_version_id,
            action=action,
            reason=reason,
            actor=actor,
            audit_action=AuditAction.BINDING_ASSIGNED,
            tenant=tenant,
        )

    def rebind(
        self,
        tenant_id: str,
        from_version_id: Optional[str],
        to_version_id: Optional[str],
        reason: str,
        actor: str,
        rollback: bool = False,
    ) -> TenantBusinessTypeHistory:
        """
        Move a tenant's pinned version with compare-and-set semantics.

        Args:
            from_version_id: The pinned version the caller believes is
                current (None = floating). Must match the stored binding.
            to_version_id: Target version, or None to float.
            rollback: Allows a retired target.

        Raises:
            TenantBindingNotFoundError: tenant has no binding
            StaleBindingError: from_version_id does not match
            VersionNotFoundError: target missing, a draft, or of another business type
            RetiredTargetError: target retired and rollback is False
        """
        binding = self.get_binding(tenant_id)
        if binding is None:
            raise TenantBindingNotFoundError(tenant_id)
        if binding.pinned_version_id != from_version_id:
            raise StaleBindingError(tenant_id, from_version_id, binding.pinned_version_id)
        if to_version_id is not None:
            self._check_target(binding.business_type_code, to_version_id, rollback)

        if rollback:
            action, audit_action = BindingAction.ROLLBACK, AuditAction.BINDING_ROLLED_BACK
        elif to_version_id is None:
            action, audit_action = BindingAction.UNPIN, AuditAction.BINDING_UNPINNED
        else:
            action, audit_action = BindingAction.MIGRATE, AuditAction.BINDING_REBOUND

        return self._write_transition(
            tenant_id=tenant_id,
            binding=binding,
            business_type=binding.business_type_code,
            to_version_id=to_version_id,
            action=action,
            reason=reason,
            actor=actor,
            audit_action=audit_action,
        )

    def set_binding(
        self,
        tenant_id: str,
        version_id: Optional[str],
        reason: str,
        actor: str,
    ) -> TenantBusinessTypeHistory:
        """rebind() from whatever the binding currently holds."""
        binding = self.get_binding(tenant_id)
        if binding is None:
            raise TenantBindingNotFoundError(tenant_id)
        return self.rebind(tenant_id, binding.pinned_version_id, version_id, reason, actor)

    def unpin_tenant(self, tenant_id: str, reason: str, actor: str) -> Optional[TenantBusinessTypeHistory]:
        """Float a pinned tenant. Returns None when already floating."""
        binding = self.get_binding(tenant_id)
        if binding is None:
            raise TenantBindingNotFoundError(tenant_id)
        if binding.pinned_version_id is None:
            logger.info("business_version.unpin_noop", extra={"tenant_id": tenant_id})
            return None
        return self.rebind(tenant_id, binding.pinned_version_id, None, reason, actor)

    def undo_last_transition(self, tenant_id: str, reason: str, actor: str) -> TenantBusinessTypeHistory:
        """
        Restore the binding recorded in the latest history row's
        rollback_data. Retired versions are allowed as targets.
        """
        last = (
            self.db.query(TenantBusinessTypeHistory)
            .filter(TenantBusinessTypeHistory.tenant_id == tenant_id)
            .order_by(TenantBusinessTypeHistory.sequence.desc())
            .first()
        )
        if last is None or not last.rollback_data:
            raise VersionNotFoundError(
                f"Tenant {tenant_id} has no earlier binding to restore",
            )

        binding = self.get_binding(tenant_id)
        prior_business_type = last.rollback_data["business_type_code"]
        prior_version_id = last.rollback_data.get("pinned_version_id")

        if binding is not None and binding.business_type_code == prior_business_type:
            return self.rebind(
                tenant_id,
                binding.pinned_version_id,
                prior_version_id,
                reason,
                actor,
                rollback=True,
            )

        if prior_version_id is not None:
            self._check_target(prior_business_type, prior_version_id, rollback=True)
        return self._write_transition(
            tenant_id=tenant_id,
            binding=binding,
            business_type=prior_business_type,
            to_version_id=prior_version_id,
            action=BindingAction.ROLLBACK,
            reason=reason,
            actor=actor,
            audit_action=AuditAction.BINDING_ROLLED_BACK,
            tenant=self.db.get(Tenant, tenant_id),
        )

    def get_history(self, tenant_id: str) -> List[TenantBusinessTypeHistory]:
        return (
            self.db.query(TenantBusinessTypeHistory)
            .filter(TenantBusinessTypeHistory.tenant_id == tenant_id)
            .order_by(TenantBusinessTypeHistory.sequence.asc())
            .all()
        )

    def version_seen_at(self, tenant_id: str, when: datetime) -> Optional[VersionRecord]:
        """
        Reconstruct the version a tenant observed at `when` from the
        history log and the publish/retire timeline. None if the tenant
        was not bound yet or nothing was published.
        """
        when = ensure_utc(when)
        transition = None
        for row in self.get_history(tenant_id):
            if ensure_utc(row.created_at) <= when:
                transition = row
            else:
                break
        if transition is None:
            return None

        if transition.to_version_id is not None:
            return self.get_version(transition.to_version_id)

        candidates = []
        for row in self.db.query(BusinessTypeVersion).filter(
            BusinessTypeVersion.business_type_code == transition.business_type_code,
            BusinessTypeVersion.status != VersionStatus.DRAFT.value,
        ):
            published_at = ensure_utc(row.published_at)
            effective_at = ensure_utc(row.effective_at) or published_at
            retired_at = ensure_utc(row.retired_at)
            if published_at is None or published_at > when or effective_at > when:
                continue
            if retired_at is not None and retired_at <= when:
                continue
            candidates.append(row)
        if not candidates:
            return None
        return to_version_record(max(candidates, key=lambda r: r.version_number))

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_target(self, business_type: str, version_id: str, rollback: bool) -> BusinessTypeVersion:
        target = self._get_row(version_id)
        if target is None or target.business_type_code != business_type or target.is_draft:
            raise VersionNotFoundError(
                f"Version {version_id} is not a published version of '{business_type}'",
                business_type=business_type,
                version=version_id,
            )
        if target.is_retired and not rollback:
            raise RetiredTargetError(version_id)
        return target

    def _next_sequence(self, tenant_id: str) -> int:
        current = (
            self.db.query(func.max(TenantBusinessTypeHistory.sequence))
            .filter(TenantBusinessTypeHistory.tenant_id == tenant_id)
            .scalar()
        )
        return (current or 0) + 1

    def _write_transition(
        self,
        tenant_id: str,
        binding: Optional[TenantVersionBinding],
        business_type: str,
        to_version_id: Optional[str],
        action: BindingAction,
        reason: str,
        actor: str,
        audit_action: AuditAction,
        tenant: Optional[Tenant] = None,
    ) -> TenantBusinessTypeHistory:
        """Binding write + history row + audit row, flushed together."""
        if not reason or not reason.strip():
            raise ValueError("A reason is required for binding transitions")

        now = self._clock()
        rollback_data = None
        from_business_type = None
        from_version_id = None
        if binding is not None:
            from_business_type = binding.business_type_code
            from_version_id = binding.pinned_version_id
            rollback_data = {
                "business_type_code": binding.business_type_code,
                "pinned_version_id": binding.pinned_version_id,
                "updated_by": binding.updated_by,
                "updated_at": _iso(binding.updated_at),
            }

        try:
            if binding is None:
                binding = TenantVersionBinding(
                    tenant_id=tenant_id,
                    business_type_code=business_type,
                    pinned_version_id=to_version_id,
                    updated_by=actor,
                    created_at=now,
                    updated_at=now,
                )
                self.db.add(binding)
            else:
                binding.business_type_code = business_type
                binding.pinned_version_id = to_version_id
                binding.updated_by = actor
                binding.updated_at = now
            if tenant is not None:
                tenant.business_type_code = business_type

            history = TenantBusinessTypeHistory(
                tenant_id=tenant_id,
                sequence=self._next_sequence(tenant_id),
                from_business_type_code=from_business_type,
                business_type_code=business_type,
                from_version_id=from_version_id,
                to_version_id=to_version_id,
                action=action.value,
                reason=reason,
                performed_by=actor,
                rollback_data=rollback_data,
                created_at=now,
            )
            self.db.add(history)

            self._audit.record(self.db, EntitlementAuditEvent(
                action=audit_action,
                entity_type=AuditEntityType.BINDING,
                entity_id=tenant_id,
                actor=actor,
                reason=reason,
                scope="tenant",
                scope_key=tenant_id,
                tenant_id=tenant_id,
                old_value=rollback_data,
                new_value={"business_type_code": business_type, "pinned_version_id": to_version_id},
                timestamp=now,
            ))
            self.db.flush()
        except SQLAlchemyError:
            self.db.rollback()
            logger.exception(
                "business_version.transition_failed",
                extra={"tenant_id": tenant_id, "action": action.value},
            )
            raise

        logger.info(
            "business_version.tenant_transition",
            extra={
                "tenant_id": tenant_id,
                "action": action.value,
                "business_type": business_type,
                "from_version_id": from_version_id,
                "to_version_id": to_version_id,
                "actor": actor,
            },
        )
        self._cache.invalidate_tenant(tenant_id, reason=f"binding_{action.value}")
        return history


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = ensure_utc(value)
    return value.isoformat() if value is not None else None
