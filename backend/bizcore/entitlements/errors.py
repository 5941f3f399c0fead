"""
Structured error classes for entitlement resolution.

Every error carries a machine-readable error_code and a to_dict() payload.
None of these are recovered from locally except by the legacy-config
fallback in the session builder; they propagate to the caller.
"""

from typing import Any, Dict, Optional, TYPE_CHECKING

from fastapi import status

if TYPE_CHECKING:
    from bizcore.entitlements.models import EntitlementView


class EntitlementError(Exception):
    """Base exception for entitlement errors."""

    error_code = "entitlement_error"
    http_status = status.HTTP_500_INTERNAL_SERVER_ERROR

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON response or structured logs."""
        return {
            "error": self.error_code,
            "message": self.message,
            "details": dict(self.details),
        }


class CatalogIntegrityError(EntitlementError):
    """
    A catalog mapping references an unknown code, or a role resolves to
    an empty set. This is a configuration bug, never silently dropped.
    """

    error_code = "catalog_integrity"


class NotFoundError(EntitlementError):
    """A collaborator lookup (role, plan, addon, feature, ...) missed."""

    error_code = "not_found"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} '{key}' not found", kind=kind, key=key)


class IncompleteEntitlementError(EntitlementError):
    """
    Fail-closed: a tenant/user is missing a role or a plan.

    Carries a zero-permission, zero-feature view so callers that need
    something to render can show a restricted state.
    """

    error_code = "entitlement_incomplete"
    http_status = status.HTTP_403_FORBIDDEN

    def __init__(self, tenant_id: str, user_id: str, missing: str, view: "EntitlementView"):
        self.tenant_id = tenant_id
        self.user_id = user_id
        self.missing = missing
        self.view = view
        super().__init__(
            f"Entitlements incomplete for tenant {tenant_id} user {user_id}: missing {missing}",
            tenant_id=tenant_id,
            user_id=user_id,
            missing=missing,
        )


class VersionNotFoundError(EntitlementError):
    """A version (or any published version) could not be resolved."""

    error_code = "version_not_found"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, message: str, business_type: Optional[str] = None, version: Optional[Any] = None):
        self.business_type = business_type
        self.version = version
        super().__init__(message, business_type=business_type, version=version)


class RetiredTargetError(EntitlementError):
    """Rebind target is retired and the transition is not a rollback."""

    error_code = "retired_target"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, version_id: str):
        self.version_id = version_id
        super().__init__(
            f"Version {version_id} is retired; only a rollback may target it",
            version_id=version_id,
        )


class ConcurrentOverrideConflictError(EntitlementError):
    """Another writer created the same active override first. Retry with a fresh read."""

    error_code = "override_conflict"
    http_status = status.HTTP_409_CONFLICT


class InvalidVersionTransitionError(EntitlementError):
    """Lifecycle transition not allowed from the version's current status."""

    error_code = "invalid_version_transition"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, version_id: str, current: str, attempted: str):
        self.version_id = version_id
        self.current = current
        self.attempted = attempted
        super().__init__(
            f"Cannot {attempted} version {version_id} in status {current}",
            version_id=version_id,
            current=current,
            attempted=attempted,
        )


class ImmutableVersionError(EntitlementError):
    """Attempt to edit the snapshot of a non-draft version."""

    error_code = "immutable_version"
    http_status = status.HTTP_409_CONFLICT


class VersionValidationError(EntitlementError):
    """Draft failed publish validation. problems lists every failed check."""

    error_code = "version_validation_failed"
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY

    def __init__(self, version_id: str, problems: list):
        self.version_id = version_id
        self.problems = list(problems)
        super().__init__(
            f"Version {version_id} failed validation: {'; '.join(self.problems)}",
            version_id=version_id,
            problems=self.problems,
        )


class LastPublishedVersionError(EntitlementError):
    """Retiring the only published version of a business type without force."""

    error_code = "last_published_version"
    http_status = status.HTTP_409_CONFLICT


class StaleBindingError(EntitlementError):
    """Compare-and-set on the tenant binding failed; someone else moved it."""

    error_code = "stale_binding"
    http_status = status.HTTP_409_CONFLICT

    def __init__(self, tenant_id: str, expected: Optional[str], actual: Optional[str]):
        self.tenant_id = tenant_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Binding for tenant {tenant_id} is {actual!r}, expected {expected!r}",
            tenant_id=tenant_id,
            expected=expected,
            actual=actual,
        )


class TenantBindingNotFoundError(EntitlementError):
    """Tenant has no version binding (no business type assigned)."""

    error_code = "binding_not_found"
    http_status = status.HTTP_404_NOT_FOUND

    def __init__(self, tenant_id: str):
        self.tenant_id = tenant_id
        super().__init__(f"Tenant {tenant_id} has no business-type binding", tenant_id=tenant_id)


class OverrideScopeError(EntitlementError):
    """Override declared at a scope the feature's scope tag does not allow."""

    error_code = "override_scope_not_allowed"
    http_status = status.HTTP_422_UNPROCESSABLE_ENTITY
