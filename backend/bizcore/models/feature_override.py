"""
Feature / module override records.

An override forces a feature or module on or off at one scope:

    scope     scope_key
    -------   ---------------------
    global    GLOBAL_SCOPE_KEY ("*")
    business  business-type code
    tenant    tenant id

At most one ACTIVE override may exist per (target_kind, target_code,
scope, scope_key). This is enforced by a partial unique index so that two
concurrent writers cannot both succeed; the loser gets an IntegrityError
which the service surfaces as ConcurrentOverrideConflictError.

Deleting an override is a soft delete (is_active = False). Inactive and
expired overrides are treated as absent, never as "disabled".
"""

from sqlalchemy import (
    Column,
    String,
    Boolean,
    DateTime,
    Index,
    Text,
    text,
)

from bizcore.db_base import Base
from bizcore.models.base import TimestampMixin, generate_uuid

# The unique index treats NULLs as distinct, so global overrides use a sentinel key.
GLOBAL_SCOPE_KEY = "*"


class FeatureOverride(Base, TimestampMixin):
    """One override row. Mutations are audited by OverrideService."""

    __tablename__ = "feature_overrides"

    id = Column(String(255), primary_key=True, default=generate_uuid)

    target_kind = Column(
        String(20),
        nullable=False,
        comment="feature | module",
    )

    target_code = Column(String(100), nullable=False)

    scope = Column(
        String(20),
        nullable=False,
        comment="global | business | tenant",
    )

    scope_key = Column(
        String(255),
        nullable=False,
        comment="'*' for global, business-type code or tenant id",
    )

    enabled = Column(Boolean, nullable=False)
    reason = Column(Text, nullable=False)
    created_by = Column(String(255), nullable=False)

    is_active = Column(
        Boolean,
        nullable=False,
        default=True,
        comment="Soft-delete flag",
    )

    expires_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Override is ignored after this instant",
    )

    deactivated_at = Column(DateTime(timezone=True), nullable=True)
    deactivated_by = Column(String(255), nullable=True)

    __table_args__ = (
        Index(
            "uq_feature_overrides_active_target",
            "target_kind",
            "target_code",
            "scope",
            "scope_key",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
        Index("ix_feature_overrides_scope_key", "scope", "scope_key", "is_active"),
    )

    @property
    def public_scope_key(self):
        """scope_key as callers see it: None for global."""
        if self.scope_key == GLOBAL_SCOPE_KEY:
            return None
        return self.scope_key

    def __repr__(self) -> str:
        return (
            f"<FeatureOverride({self.target_kind}:{self.target_code} "
            f"{self.scope}/{self.scope_key}={self.enabled}, active={self.is_active})>"
        )
