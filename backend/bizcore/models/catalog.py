"""
Catalog reference data: permissions, roles, plans, add-ons, the
feature/module registry, the business-type registry and the legacy flat
business-type mappings.

Catalog rows are read-only to the entitlement core. They are seeded by
operators and consumed through a CatalogSource (see
bizcore.entitlements.repositories.SqlCatalogSource).

Permission codes are never deleted once referenced; they are deprecated
through is_deprecated and keep resolving.

Global roles have tenant_id = NULL and is_system = True.
Tenant-custom roles carry the owning tenant_id and may only be used by
that tenant.
"""

from enum import Enum
from typing import List

from sqlalchemy import (
    Column,
    String,
    Boolean,
    Integer,
    ForeignKey,
    Index,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from bizcore.db_base import Base
from bizcore.models.base import TimestampMixin, generate_uuid


class RegistryScope(str, Enum):
    """Narrowest scope at which a feature or module may be overridden."""

    GLOBAL = "global"
    BUSINESS = "business"
    TENANT = "tenant"


class PermissionRecord(Base, TimestampMixin):
    """Atomic capability identified by a resource.action code."""

    __tablename__ = "permissions"

    code = Column(
        String(100),
        primary_key=True,
        comment="Permission code, e.g. 'bookings.read'",
    )

    description = Column(Text, nullable=True)

    is_deprecated = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="Soft deprecation flag. Deprecated codes still resolve.",
    )

    def __repr__(self) -> str:
        return f"<PermissionRecord(code={self.code}, deprecated={self.is_deprecated})>"


class Role(Base, TimestampMixin):
    """
    Named permission set.

    - tenant_id IS NULL => global system role (owner, admin, staff, ...)
    - tenant_id IS NOT NULL => tenant-custom role
    """

    __tablename__ = "roles"

    id = Column(
        String(255),
        primary_key=True,
        default=generate_uuid,
        comment="Internal UUID primary key",
    )

    tenant_id = Column(
        String(255),
        ForeignKey("tenants.id", ondelete="CASCADE"),
        nullable=True,
        index=True,
        comment="Owning tenant ID. NULL for global roles.",
    )

    slug = Column(
        String(100),
        nullable=False,
        comment="Machine-friendly role identifier (e.g. 'staff')",
    )

    name = Column(String(100), nullable=False)

    is_system = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="True for global roles shipped with the platform",
    )

    is_active = Column(
        Boolean,
        nullable=False,
        default=True,
        comment="Soft-delete flag",
    )

    permissions = relationship(
        "RolePermission",
        back_populates="role",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        UniqueConstraint("tenant_id", "slug", name="uq_roles_tenant_slug"),
        Index("ix_roles_tenant_active", "tenant_id", "is_active"),
    )

    def __repr__(self) -> str:
        scope = f"tenant={self.tenant_id}" if self.tenant_id else "global"
        return f"<Role(id={self.id}, slug={self.slug}, {scope})>"

    @property
    def permission_codes(self) -> List[str]:
        return [rp.permission_code for rp in self.permissions]


class RolePermission(Base):
    """Explicit permission grant for a role."""

    __tablename__ = "role_permissions"

    id = Column(String(255), primary_key=True, default=generate_uuid)

    role_id = Column(
        String(255),
        ForeignKey("roles.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )

    permission_code = Column(String(100), nullable=False)

    role = relationship("Role", back_populates="permissions")

    __table_args__ = (
        UniqueConstraint("role_id", "permission_code", name="uq_role_permission"),
    )

    def __repr__(self) -> str:
        return f"<RolePermission(role_id={self.role_id}, permission={self.permission_code})>"


class Plan(Base, TimestampMixin):
    """Subscription plan. Billing lives elsewhere; only the permission grant is modelled here."""

    __tablename__ = "plans"

    code = Column(String(100), primary_key=True, comment="Plan code, e.g. 'pro'")
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    permissions = relationship(
        "PlanPermission",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Plan(code={self.code})>"


class PlanPermission(Base):
    __tablename__ = "plan_permissions"

    id = Column(String(255), primary_key=True, default=generate_uuid)
    plan_code = Column(
        String(100),
        ForeignKey("plans.code", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    permission_code = Column(String(100), nullable=False)

    __table_args__ = (
        UniqueConstraint("plan_code", "permission_code", name="uq_plan_permission"),
    )


class Addon(Base, TimestampMixin):
    """Purchasable add-on granting extra permissions on top of the plan."""

    __tablename__ = "addons"

    code = Column(String(100), primary_key=True, comment="Add-on code, e.g. 'analytics'")
    name = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    permissions = relationship(
        "AddonPermission",
        lazy="selectin",
        cascade="all, delete-orphan",
    )
    dependencies = relationship(
        "AddonDependency",
        foreign_keys="AddonDependency.addon_code",
        lazy="selectin",
        cascade="all, delete-orphan",
    )

    @property
    def required_addon_codes(self) -> List[str]:
        return sorted(d.requires_addon_code for d in self.dependencies)

    def __repr__(self) -> str:
        return f"<Addon(code={self.code})>"


class AddonPermission(Base):
    __tablename__ = "addon_permissions"

    id = Column(String(255), primary_key=True, default=generate_uuid)
    addon_code = Column(
        String(100),
        ForeignKey("addons.code", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    permission_code = Column(String(100), nullable=False)

    __table_args__ = (
        UniqueConstraint("addon_code", "permission_code", name="uq_addon_permission"),
    )


class AddonDependency(Base):
    """
    Add-on prerequisite. An add-on with dependencies grants nothing unless
    at least one of them is also entitled for the tenant.
    """

    __tablename__ = "addon_dependencies"

    id = Column(String(255), primary_key=True, default=generate_uuid)
    addon_code = Column(
        String(100),
        ForeignKey("addons.code", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    requires_addon_code = Column(String(100), ForeignKey("addons.code"), nullable=False)

    __table_args__ = (
        UniqueConstraint("addon_code", "requires_addon_code", name="uq_addon_dependency"),
    )


class FeatureRegistryEntry(Base, TimestampMixin):
    """Global feature registry. default_enabled is the bottom of the override chain."""

    __tablename__ = "feature_registry"

    code = Column(String(100), primary_key=True, comment="Feature code, e.g. 'telemedicine'")
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    module_code = Column(
        String(100),
        nullable=True,
        comment="Module this feature belongs to, if any",
    )

    scope = Column(
        String(20),
        nullable=False,
        default=RegistryScope.TENANT.value,
        comment="Narrowest override scope: global | business | tenant",
    )

    default_enabled = Column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        return f"<FeatureRegistryEntry(code={self.code}, scope={self.scope})>"


class ModuleRegistryEntry(Base, TimestampMixin):
    """Global module registry."""

    __tablename__ = "module_registry"

    code = Column(String(100), primary_key=True, comment="Module code, e.g. 'appointments'")
    name = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)

    scope = Column(
        String(20),
        nullable=False,
        default=RegistryScope.TENANT.value,
        comment="Narrowest override scope: global | business | tenant",
    )

    default_enabled = Column(Boolean, nullable=False, default=False)

    def __repr__(self) -> str:
        return f"<ModuleRegistryEntry(code={self.code}, scope={self.scope})>"


class BusinessTypeRecord(Base, TimestampMixin):
    """
    Business-type registry (clinic, gym, pg_hostel, ...).

    latest_version_number / latest_version_id point at the highest
    published BusinessTypeVersion already in effect. publish() and retire()
    advance them in the same unit of work; versions published with a future
    effective_at are picked up by BusinessVersionManager.activate_due_versions().
    """

    __tablename__ = "business_types"

    code = Column(String(50), primary_key=True)
    name = Column(String(255), nullable=False)

    requires_versioning = Column(
        Boolean,
        nullable=False,
        default=False,
        comment="When true the legacy flat mapping is never used",
    )

    latest_version_number = Column(Integer, nullable=True)
    latest_version_id = Column(String(255), nullable=True)

    is_active = Column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<BusinessTypeRecord(code={self.code}, latest={self.latest_version_number})>"


class BusinessModuleMapping(Base, TimestampMixin):
    """Legacy flat business-type -> module mapping (pre-versioning)."""

    __tablename__ = "business_module_map"

    id = Column(String(255), primary_key=True, default=generate_uuid)
    business_type_code = Column(
        String(50),
        ForeignKey("business_types.code", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    module_code = Column(String(100), nullable=False)
    is_required = Column(Boolean, nullable=False, default=False)
    default_enabled = Column(Boolean, nullable=False, default=True)
    display_order = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("business_type_code", "module_code", name="uq_business_module"),
    )


class BusinessFeatureMapping(Base, TimestampMixin):
    """Legacy flat business-type -> feature mapping (pre-versioning)."""

    __tablename__ = "business_feature_map"

    id = Column(String(255), primary_key=True, default=generate_uuid)
    business_type_code = Column(
        String(50),
        ForeignKey("business_types.code", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    feature_code = Column(String(100), nullable=False)
    is_required = Column(Boolean, nullable=False, default=False)
    default_enabled = Column(Boolean, nullable=False, default=True)
    display_order = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        UniqueConstraint("business_type_code", "feature_code", name="uq_business_feature"),
    )
