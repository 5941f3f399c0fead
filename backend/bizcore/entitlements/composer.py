"""
Permission composer.

effective permissions = role ∪ plan ∪ addon_1 ∪ ... ∪ addon_n

Strictly additive: there are no deny permissions, so adding an input can
only grow the result. compose() is pure and safe to call per request.
"""

import logging
from typing import FrozenSet, Iterable, Optional, Sequence, Tuple

from bizcore.entitlements.errors import CatalogIntegrityError, NotFoundError
from bizcore.entitlements.sources import CatalogSource

logger = logging.getLogger(__name__)


def compose(
    role: Iterable[str],
    plan: Iterable[str],
    addons: Sequence[Iterable[str]] = (),
    known_permissions: Optional[FrozenSet[str]] = None,
) -> FrozenSet[str]:
    """
    Union of role, plan and add-on permission sets.

    Args:
        role: Permission codes granted by the user's role
        plan: Permission codes granted by the tenant's plan
        addons: One permission set per active add-on
        known_permissions: When given, every code must be in it

    Raises:
        CatalogIntegrityError: an input references an unknown code
    """
    result = set(role)
    result.update(plan)
    for addon in addons:
        result.update(addon)

    if known_permissions is not None:
        unknown = result - known_permissions
        if unknown:
            raise CatalogIntegrityError(
                f"Unknown permission codes: {sorted(unknown)}",
                unknown=sorted(unknown),
            )
    return frozenset(result)


class PermissionComposer:
    """
    Catalog-bound composer: resolves role / plan / add-on codes to
    permission sets, then composes them.

    Unknown role, plan or add-on codes are configuration errors and surface
    as CatalogIntegrityError. So does a tenant-custom role used outside its
    own tenant. Add-ons whose prerequisites are missing grant nothing.
    """

    def __init__(self, catalog: CatalogSource):
        self.catalog = catalog

    def entitled_addons(
        self,
        addon_codes: Sequence[str],
        tenant_id: Optional[str] = None,
    ) -> Tuple[str, ...]:
        """
        Drop add-ons whose prerequisites are not met.

        An add-on declaring prerequisites counts only when at least one of
        them is among addon_codes. Prerequisites are checked one level deep.

        Raises:
            NotFoundError: an add-on code is not in the catalog
        """
        present = set(addon_codes)
        granted = []
        for code in addon_codes:
            requires = self.catalog.get_addon_requirements(code)
            if requires and not requires & present:
                logger.warning(
                    "permission_composer.addon_dependency_missing",
                    extra={
                        "tenant_id": tenant_id,
                        "addon_code": code,
                        "requires": sorted(requires),
                        "reason": "ADDON_DEPENDENCY_MISSING",
                    },
                )
                continue
            granted.append(code)
        return tuple(granted)

    def compose_for(
        self,
        role_id: str,
        plan_code: str,
        addon_codes: Sequence[str] = (),
        tenant_id: Optional[str] = None,
    ) -> FrozenSet[str]:
        try:
            role = self.catalog.get_role(role_id)
            plan = self.catalog.get_plan_permissions(plan_code)
            addons = [
                self.catalog.get_addon_permissions(code)
                for code in self.entitled_addons(addon_codes, tenant_id)
            ]
        except NotFoundError as e:
            raise CatalogIntegrityError(
                f"Composition references unknown {e.kind} '{e.key}'",
                kind=e.kind,
                key=e.key,
            ) from e

        if role.tenant_id is not None and tenant_id is not None and role.tenant_id != tenant_id:
            raise CatalogIntegrityError(
                f"Role '{role_id}' belongs to tenant {role.tenant_id}, not {tenant_id}",
                role_id=role_id,
                tenant_id=tenant_id,
            )

        if not role.permissions:
            raise CatalogIntegrityError(f"Role '{role_id}' resolves to an empty permission set")

        return compose(
            role.permissions,
            plan,
            addons,
            known_permissions=self.catalog.known_permissions(),
        )
