"""
FastAPI guards for entitlement enforcement.

Provides:
- require_permission: dependency requiring a composed permission
- require_feature: dependency requiring an enabled feature
- require_module: dependency requiring an enabled module
- get_entitlement_view: dependency returning the caller's view

The authenticated tenant and user are read from request.state.tenant_id
and request.state.user_id (set by the auth layer). The session builder is
read from request.state.entitlements, falling back to
app.state.entitlements.

Every failure denies access:
- no tenant/user on the request → 401
- incomplete entitlements (no role, no plan) → 403 "Access restricted"
- requirement not met → 403
- any entitlement evaluation error → 503
"""

import logging
from typing import Callable, Optional

from fastapi import Depends, HTTPException, Request, status

from bizcore.entitlements.audit import AccessDenialEvent, get_audit_logger
from bizcore.entitlements.errors import EntitlementError, IncompleteEntitlementError
from bizcore.entitlements.models import EntitlementView
from bizcore.entitlements.service import EntitlementSessionBuilder

logger = logging.getLogger(__name__)

RESTRICTED_MESSAGE = "Access restricted, contact support"


class AccessRestrictedError(HTTPException):
    """HTTP 403 with a support-facing message and the unmet requirement."""

    def __init__(self, requirement: Optional[str] = None, reason: Optional[str] = None):
        super().__init__(
            status_code=status.HTTP_403_FORBIDDEN,
            detail={
                "error": "access_restricted",
                "error_code": "ACCESS_RESTRICTED",
                "message": RESTRICTED_MESSAGE,
                "requirement": requirement,
                "reason": reason,
            },
        )


def _builder_for(request: Request) -> EntitlementSessionBuilder:
    builder = getattr(request.state, "entitlements", None)
    if builder is None:
        builder = getattr(request.app.state, "entitlements", None)
    if builder is None:
        logger.critical(
            "entitlement_guard.builder_missing",
            extra={"path": request.url.path, "alert_type": "entitlement_eval_failed"},
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error_code": "ENTITLEMENT_EVAL_FAILED",
                "message": "Unable to verify entitlements. Please retry.",
            },
        )
    return builder


def _deny(request: Request, tenant_id: Optional[str], user_id: Optional[str], requirement: str, reason: str):
    get_audit_logger().log_denial(AccessDenialEvent(
        tenant_id=tenant_id,
        user_id=user_id,
        requirement=requirement,
        reason=reason,
        endpoint=request.url.path,
        method=request.method,
    ))
    return AccessRestrictedError(requirement=requirement, reason=reason)


def get_entitlement_view(request: Request) -> EntitlementView:
    """Resolve (cached) the caller's view. Raises HTTPException on failure."""
    tenant_id = getattr(request.state, "tenant_id", None)
    user_id = getattr(request.state, "user_id", None)
    if not tenant_id or not user_id:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
        )

    builder = _builder_for(request)
    try:
        return builder.get_view(tenant_id, user_id)
    except IncompleteEntitlementError as e:
        raise _deny(request, tenant_id, user_id, "*", f"missing_{e.missing}")
    except EntitlementError as e:
        logger.critical(
            "entitlement_guard.evaluation_failed",
            extra={
                "tenant_id": tenant_id,
                "user_id": user_id,
                "path": request.url.path,
                "error_code": e.error_code,
                "error": e.message,
                "alert_type": "entitlement_eval_failed",
            },
        )
        get_audit_logger().log_denial(AccessDenialEvent(
            tenant_id=tenant_id,
            user_id=user_id,
            requirement="*",
            reason=f"Entitlement evaluation failed: {e.error_code}",
            endpoint=request.url.path,
            method=request.method,
        ))
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail={
                "error_code": "ENTITLEMENT_EVAL_FAILED",
                "message": "Unable to verify entitlements. Please retry.",
            },
        )


def _requirement(kind: str, code: str, check: Callable[[EntitlementView, str], bool]) -> Callable:
    def dependency(
        request: Request,
        view: EntitlementView = Depends(get_entitlement_view),
    ) -> EntitlementView:
        if not check(view, code):
            raise _deny(request, view.tenant_id, view.user_id, f"{kind}:{code}", f"{kind}_not_granted")
        return view

    dependency.__name__ = f"require_{kind}_{code.replace('.', '_')}"
    return dependency


def require_permission(permission: str) -> Callable:
    """
    Usage:
        @app.get("/api/invoices", dependencies=[Depends(require_permission("invoices.read"))])
    """
    return _requirement("permission", permission, lambda v, c: v.has_permission(c))


def require_feature(feature: str) -> Callable:
    return _requirement("feature", feature, lambda v, c: v.has_feature(c))


def require_module(module: str) -> Callable:
    return _requirement("module", module, lambda v, c: v.has_module(c))
