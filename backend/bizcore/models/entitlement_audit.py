"""
Append-only audit trail for entitlement configuration changes.

Every override mutation and every version / binding transition writes one
row: who, when, what changed (old -> new) and why.

CRITICAL: This table is append-only. Rows are never updated or deleted;
ORM guards reject both.
"""

from sqlalchemy import (
    Column,
    String,
    DateTime,
    Index,
    JSON,
    Text,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB

from bizcore.db_base import Base
from bizcore.models.base import ImmutableRecordError, generate_uuid, utcnow

# Use JSON with PostgreSQL variant for JSONB - allows SQLite in tests
JSONType = JSON().with_variant(JSONB(), "postgresql")


class EntitlementAuditLog(Base):
    """One entitlement configuration change."""

    __tablename__ = "entitlement_audit_log"

    id = Column(String(255), primary_key=True, default=generate_uuid)

    action = Column(
        String(50),
        nullable=False,
        comment="e.g. override.set, version.published, binding.rebound",
    )

    entity_type = Column(String(50), nullable=False)
    entity_id = Column(String(255), nullable=False)

    scope = Column(String(20), nullable=True)
    scope_key = Column(String(255), nullable=True)
    tenant_id = Column(String(255), nullable=True, index=True)

    old_value = Column(JSONType, nullable=True)
    new_value = Column(JSONType, nullable=True)

    reason = Column(Text, nullable=True)
    actor = Column(String(255), nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("ix_entitlement_audit_entity", "entity_type", "entity_id"),
        Index("ix_entitlement_audit_created", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<EntitlementAuditLog(action={self.action}, entity={self.entity_type}:{self.entity_id})>"


@event.listens_for(EntitlementAuditLog, "before_update")
def _reject_update(mapper, connection, target):
    raise ImmutableRecordError(EntitlementAuditLog.__tablename__, target.id, "audit rows are append-only")


@event.listens_for(EntitlementAuditLog, "before_delete")
def _reject_delete(mapper, connection, target):
    raise ImmutableRecordError(EntitlementAuditLog.__tablename__, target.id, "audit rows are append-only")
