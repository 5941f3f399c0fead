"""
Entitlement Audit Logger - record every entitlement configuration change.

Provides:
- EntitlementAuditEvent: structured change event (who, when, old/new, why)
- AccessDenialEvent: structured guard denial
- EntitlementAuditLogger: persists change events to entitlement_audit_log
  and mirrors everything to the "entitlements.audit" logger

Change events are added to the caller's session and flushed with the
mutation they describe, so the audit row and the change commit (or roll
back) together.

CRITICAL: Override mutations and version/binding transitions MUST be
audited. Denials are logged but not persisted.
"""

import json
import logging
import uuid
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from enum import Enum
from threading import Lock
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from bizcore.models.entitlement_audit import EntitlementAuditLog

logger = logging.getLogger(__name__)

# Dedicated audit logger for structured logging
audit_logger = logging.getLogger("entitlements.audit")


class AuditAction(str, Enum):
    OVERRIDE_SET = "override.set"
    OVERRIDE_CLEARED = "override.cleared"
    OVERRIDE_EXPIRED = "override.expired"
    VERSION_DRAFTED = "version.drafted"
    VERSION_UPDATED = "version.updated"
    VERSION_PUBLISHED = "version.published"
    VERSION_RETIRED = "version.retired"
    BINDING_ASSIGNED = "binding.assigned"
    BINDING_REBOUND = "binding.rebound"
    BINDING_ROLLED_BACK = "binding.rolled_back"
    BINDING_UNPINNED = "binding.unpinned"


class AuditEntityType(str, Enum):
    OVERRIDE = "override"
    VERSION = "business_type_version"
    BINDING = "tenant_version_binding"


@dataclass
class EntitlementAuditEvent:
    """One configuration change."""

    action: AuditAction
    entity_type: AuditEntityType
    entity_id: str
    actor: str
    reason: Optional[str] = None
    scope: Optional[str] = None
    scope_key: Optional[str] = None
    tenant_id: Optional[str] = None
    old_value: Optional[Dict[str, Any]] = None
    new_value: Optional[Dict[str, Any]] = None
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["action"] = AuditAction(self.action).value
        data["entity_type"] = AuditEntityType(self.entity_type).value
        data["timestamp"] = self.timestamp.isoformat()
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), default=str)


@dataclass
class AccessDenialEvent:
    """A request rejected by the entitlement guard."""

    tenant_id: Optional[str]
    user_id: Optional[str]
    requirement: str
    reason: str
    endpoint: Optional[str] = None
    method: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class EntitlementAuditLogger:
    """Writes audit rows and structured log lines."""

    def record(self, db: Session, event: EntitlementAuditEvent) -> EntitlementAuditLog:
        """Add the audit row to the caller's unit of work and log it."""
        row = EntitlementAuditLog(
            id=event.event_id,
            action=AuditAction(event.action).value,
            entity_type=AuditEntityType(event.entity_type).value,
            entity_id=event.entity_id,
            scope=event.scope,
            scope_key=event.scope_key,
            tenant_id=event.tenant_id,
            old_value=event.old_value,
            new_value=event.new_value,
            reason=event.reason,
            actor=event.actor,
            created_at=event.timestamp,
        )
        db.add(row)

        audit_logger.info(
            "entitlement_change",
            extra={"audit_event": event.to_dict()},
        )
        return row

    def log_denial(self, event: AccessDenialEvent) -> None:
        audit_logger.warning(
            "entitlement_access_denied",
            extra={"audit_event": event.to_dict()},
        )


_audit_logger_instance: Optional[EntitlementAuditLogger] = None
_audit_lock = Lock()


def get_audit_logger() -> EntitlementAuditLogger:
    """Get the process-wide EntitlementAuditLogger."""
    global _audit_logger_instance
    if _audit_logger_instance is None:
        with _audit_lock:
            if _audit_logger_instance is None:
                _audit_logger_instance = EntitlementAuditLogger()
    return _audit_logger_instance


def reset_audit_logger() -> None:
    """Reset the singleton (for testing)."""
    global _audit_logger_instance
    with _audit_lock:
        _audit_logger_instance = None
