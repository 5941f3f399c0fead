"""
Business-type version model.

A BusinessTypeVersion is a numbered snapshot of the modules and features a
business type ships with. Tenants pin to a version or float on the latest
published one.

State machine:
    DRAFT → PUBLISHED → RETIRED

- DRAFT: editable, never visible to tenants
- PUBLISHED: snapshot frozen forever; the highest-numbered effective
  published version is "latest"
- RETIRED: terminal; still readable by tenants pinned to it, excluded
  from "latest"

Snapshots are stored as JSON lists of entries:
    {"code": "appointments", "default_enabled": true,
     "is_required": true, "display_order": 1}

snapshot_hash is the SHA-256 of the canonical JSON of both lists, written
at publish time. An ORM guard rejects any change to the snapshot columns of
a non-draft row.
"""

from enum import Enum

from sqlalchemy import (
    Column,
    String,
    Boolean,
    DateTime,
    Integer,
    Index,
    JSON,
    Text,
    UniqueConstraint,
    ForeignKey,
    event,
    inspect,
)
from sqlalchemy.dialects.postgresql import JSONB

from bizcore.db_base import Base
from bizcore.models.base import TimestampMixin, ImmutableRecordError, generate_uuid

JSONType = JSON().with_variant(JSONB(), "postgresql")


class VersionStatus(str, Enum):
    """Lifecycle state of a business-type version."""

    DRAFT = "draft"
    PUBLISHED = "published"
    RETIRED = "retired"


# Columns that may only change while the row is a draft.
FROZEN_COLUMNS = (
    "business_type_code",
    "version_number",
    "module_snapshot",
    "feature_snapshot",
    "snapshot_hash",
)


class BusinessTypeVersion(Base, TimestampMixin):
    """Immutable (once published) configuration snapshot for a business type."""

    __tablename__ = "business_type_versions"

    id = Column(String(255), primary_key=True, default=generate_uuid)

    business_type_code = Column(
        String(50),
        ForeignKey("business_types.code"),
        nullable=False,
    )

    version_number = Column(
        Integer,
        nullable=False,
        comment="Monotonically increasing per business type, starting at 1",
    )

    status = Column(
        String(20),
        nullable=False,
        default=VersionStatus.DRAFT.value,
    )

    name = Column(String(255), nullable=True)
    description = Column(Text, nullable=True)

    module_snapshot = Column(JSONType, nullable=False, default=list)
    feature_snapshot = Column(JSONType, nullable=False, default=list)

    snapshot_hash = Column(
        String(64),
        nullable=True,
        comment="SHA-256 of canonical snapshot JSON, set at publish",
    )

    effective_at = Column(
        DateTime(timezone=True),
        nullable=True,
        comment="Earliest instant this version may be served as latest",
    )

    published_at = Column(DateTime(timezone=True), nullable=True)
    published_by = Column(String(255), nullable=True)
    retired_at = Column(DateTime(timezone=True), nullable=True)
    retired_by = Column(String(255), nullable=True)
    created_by = Column(String(255), nullable=False)

    migration_notes = Column(Text, nullable=True)
    is_backward_compatible = Column(Boolean, nullable=False, default=True)

    __table_args__ = (
        UniqueConstraint(
            "business_type_code",
            "version_number",
            name="uq_business_type_versions_number",
        ),
        Index("ix_business_type_versions_status", "business_type_code", "status"),
    )

    @property
    def is_draft(self) -> bool:
        return self.status == VersionStatus.DRAFT.value

    @property
    def is_published(self) -> bool:
        return self.status == VersionStatus.PUBLISHED.value

    @property
    def is_retired(self) -> bool:
        return self.status == VersionStatus.RETIRED.value

    def __repr__(self) -> str:
        return (
            f"<BusinessTypeVersion(business_type={self.business_type_code}, "
            f"v{self.version_number}, status={self.status})>"
        )


@event.listens_for(BusinessTypeVersion, "before_update")
def _guard_frozen_snapshot(mapper, connection, target):
    state = inspect(target)
    status_history = state.attrs.status.history
    previous_status = status_history.deleted[0] if status_history.deleted else target.status
    if previous_status == VersionStatus.DRAFT.value:
        return
    for column in FROZEN_COLUMNS:
        if state.attrs[column].history.has_changes():
            raise ImmutableRecordError(
                BusinessTypeVersion.__tablename__,
                target.id,
                f"{column} cannot change once the version is {previous_status}",
            )


@event.listens_for(BusinessTypeVersion, "before_delete")
def _guard_delete(mapper, connection, target):
    if not target.is_draft:
        raise ImmutableRecordError(
            BusinessTypeVersion.__tablename__, target.id, "only drafts can be deleted"
        )
