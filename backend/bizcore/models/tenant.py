"""
Per-tenant entitlement records.

- Tenant: a business account with an assigned business type
- UserRoleAssignment: which role a user holds inside a tenant
- TenantPlanAssignment: the single active subscription plan
- TenantAddon: purchased add-ons (zero or more)
- TenantVersionBinding: which BusinessTypeVersion the tenant observes
- TenantBusinessTypeHistory: append-only log of every binding transition

TenantBusinessTypeHistory is the sole source of truth for "which
configuration did tenant T see on date X". Rows are never updated or
deleted.
"""

from enum import Enum

from sqlalchemy import (
    Column,
    String,
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    JSON,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB

from bizcore.db_base import Base
from bizcore.models.base import (
    TimestampMixin,
    TenantScopedMixin,
    ImmutableRecordError,
    generate_uuid,
    utcnow,
)

JSONType = JSON().with_variant(JSONB(), "postgresql")


class BindingAction(str, Enum):
    """Kind of transition recorded in TenantBusinessTypeHistory."""

    ASSIGN = "assign"
    REASSIGN = "reassign"
    MIGRATE = "migrate"
    ROLLBACK = "rollback"
    UNPIN = "unpin"


class Tenant(Base, TimestampMixin):
    """Business account. business_type_code selects the vertical configuration."""

    __tablename__ = "tenants"

    id = Column(String(255), primary_key=True, default=generate_uuid)
    name = Column(String(255), nullable=False)

    business_type_code = Column(
        String(50),
        ForeignKey("business_types.code"),
        nullable=True,
        index=True,
        comment="Assigned business type. NULL until onboarding completes.",
    )

    is_active = Column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Tenant(id={self.id}, business_type={self.business_type_code})>"


class UserRoleAssignment(Base, TenantScopedMixin, TimestampMixin):
    """A user's role inside one tenant. One active assignment per (tenant, user)."""

    __tablename__ = "user_role_assignments"

    id = Column(String(255), primary_key=True, default=generate_uuid)
    user_id = Column(String(255), nullable=False, index=True)

    role_id = Column(
        String(255),
        ForeignKey("roles.id", ondelete="CASCADE"),
        nullable=False,
    )

    is_active = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "user_id", name="uq_user_role_tenant_user"),
    )

    def __repr__(self) -> str:
        return f"<UserRoleAssignment(tenant={self.tenant_id}, user={self.user_id}, role={self.role_id})>"


class TenantPlanAssignment(Base, TimestampMixin):
    """Exactly one active plan per tenant."""

    __tablename__ = "tenant_plan_assignments"

    tenant_id = Column(
        String(255),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        primary_key=True,
    )
    plan_code = Column(
        String(100),
        ForeignKey("plans.code"),
        nullable=False,
    )
    is_active = Column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<TenantPlanAssignment(tenant={self.tenant_id}, plan={self.plan_code})>"


class TenantAddon(Base, TenantScopedMixin, TimestampMixin):
    """
    Purchased add-on and its billing window.

    expires_at is the end of the paid period (NULL = open-ended). A
    trialing row is entitled until trial_ends_at; any non-cancelled row is
    entitled until grace_until once its paid or trial window has lapsed.
    Inactive rows grant nothing. See AddonSubscription for the evaluation.
    """

    __tablename__ = "tenant_addons"

    id = Column(String(255), primary_key=True, default=generate_uuid)
    addon_code = Column(
        String(100),
        ForeignKey("addons.code"),
        nullable=False,
    )
    is_active = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    status = Column(
        String(20),
        nullable=False,
        default="active",
        comment="active | trialing | grace | cancelled",
    )
    trial_ends_at = Column(DateTime(timezone=True), nullable=True)
    grace_until = Column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "addon_code", name="uq_tenant_addon"),
    )

    def __repr__(self) -> str:
        return f"<TenantAddon(tenant={self.tenant_id}, addon={self.addon_code})>"


class TenantVersionBinding(Base, TimestampMixin):
    """
    Which business-type version a tenant observes.

    pinned_version_id IS NULL => floating: the tenant follows the latest
    published version of its business type.

    Mutated only by BusinessVersionManager transitions, each of which
    appends a TenantBusinessTypeHistory row.
    """

    __tablename__ = "tenant_version_bindings"

    tenant_id = Column(
        String(255),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        primary_key=True,
    )

    business_type_code = Column(
        String(50),
        ForeignKey("business_types.code"),
        nullable=False,
        index=True,
    )

    pinned_version_id = Column(
        String(255),
        ForeignKey("business_type_versions.id"),
        nullable=True,
        comment="NULL => float to latest published",
    )

    updated_by = Column(String(255), nullable=True)

    @property
    def is_pinned(self) -> bool:
        return self.pinned_version_id is not None

    def __repr__(self) -> str:
        return (
            f"<TenantVersionBinding(tenant={self.tenant_id}, "
            f"business_type={self.business_type_code}, pinned={self.pinned_version_id})>"
        )


class TenantBusinessTypeHistory(Base):
    """Append-only record of a binding transition."""

    __tablename__ = "tenant_business_type_history"

    id = Column(String(255), primary_key=True, default=generate_uuid)

    tenant_id = Column(
        String(255),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=False,
    )

    from_business_type_code = Column(String(50), nullable=True)
    business_type_code = Column(String(50), nullable=False)

    from_version_id = Column(
        String(255),
        nullable=True,
        comment="Pinned version before the transition. NULL => was floating or unbound.",
    )
    to_version_id = Column(
        String(255),
        nullable=True,
        comment="Pinned version after the transition. NULL => floating.",
    )

    sequence = Column(
        Integer,
        nullable=False,
        comment="Per-tenant transition counter, starting at 1",
    )

    action = Column(String(20), nullable=False)
    reason = Column(Text, nullable=False)
    performed_by = Column(String(255), nullable=False)

    rollback_data = Column(
        JSONType,
        nullable=True,
        comment="Binding state before this transition, used by undo",
    )

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("tenant_id", "sequence", name="uq_tbt_history_tenant_sequence"),
        Index("ix_tbt_history_tenant_created", "tenant_id", "created_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<TenantBusinessTypeHistory(tenant={self.tenant_id}, action={self.action}, "
            f"{self.from_version_id}->{self.to_version_id})>"
        )


@event.listens_for(TenantBusinessTypeHistory, "before_update")
def _reject_history_update(mapper, connection, target):
    raise ImmutableRecordError(
        TenantBusinessTypeHistory.__tablename__, target.id, "history rows are append-only"
    )


@event.listens_for(TenantBusinessTypeHistory, "before_delete")
def _reject_history_delete(mapper, connection, target):
    raise ImmutableRecordError(
        TenantBusinessTypeHistory.__tablename__, target.id, "history rows are append-only"
    )
