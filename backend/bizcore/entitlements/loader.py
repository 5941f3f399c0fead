"""
Catalog configuration loader.

Loads permissions, roles, plans, add-ons, the feature/module registry and
business types from config/catalog.yml, validates the document with
pydantic and exposes it as an InMemoryCatalogSource.

Consumers:
  - EntitlementSessionBuilder (when ENTITLEMENT_CATALOG_SOURCE=config)
  - seed_catalog(): copies the YAML catalog into the database tables

Usage:
    from bizcore.entitlements.loader import get_catalog_loader

    catalog = get_catalog_loader().catalog
    catalog.get_plan_permissions("pro")
"""

import logging
import os
from pathlib import Path
from threading import Lock
from typing import Any, Dict, Optional

import yaml
from pydantic import ValidationError
from sqlalchemy.orm import Session

from bizcore.entitlements.catalog import InMemoryCatalogSource
from bizcore.entitlements.errors import CatalogIntegrityError
from bizcore.entitlements.models import (
    BusinessTypeDefinition,
    FeatureDefinition,
    ModuleDefinition,
    RoleDefinition,
    SnapshotEntry,
    VersionSnapshot,
)
from bizcore.entitlements.schemas import CatalogSchema
from bizcore.models.catalog import (
    Addon,
    AddonDependency,
    AddonPermission,
    BusinessFeatureMapping,
    BusinessModuleMapping,
    BusinessTypeRecord,
    FeatureRegistryEntry,
    ModuleRegistryEntry,
    PermissionRecord,
    Plan,
    PlanPermission,
    Role,
    RolePermission,
)

logger = logging.getLogger(__name__)

CATALOG_FILENAME = "catalog.yml"


def parse_catalog(data: Dict[str, Any]) -> CatalogSchema:
    """Validate a raw catalog document."""
    try:
        return CatalogSchema.model_validate(data or {})
    except ValidationError as e:
        raise CatalogIntegrityError(
            f"Catalog document is malformed: {e.error_count()} error(s)",
            errors=[err["msg"] for err in e.errors()],
        ) from e


def build_catalog(schema: CatalogSchema) -> InMemoryCatalogSource:
    """Turn a validated document into an InMemoryCatalogSource."""
    return InMemoryCatalogSource(
        permissions=[p.code for p in schema.permissions],
        deprecated_permissions=[p.code for p in schema.permissions if p.deprecated],
        roles=[
            RoleDefinition(
                id=r.id,
                slug=r.id,
                permissions=frozenset(r.permissions),
                tenant_id=r.tenant_id,
                is_system=r.tenant_id is None,
            )
            for r in schema.roles
        ],
        plans={p.code: p.permissions for p in schema.plans},
        addons={a.code: a.permissions for a in schema.addons},
        addon_requirements={a.code: a.requires for a in schema.addons if a.requires},
        modules=[
            ModuleDefinition(
                code=m.code,
                name=m.name or m.code,
                scope=m.scope,
                default_enabled=m.default_enabled,
            )
            for m in schema.modules
        ],
        features=[
            FeatureDefinition(
                code=f.code,
                name=f.name or f.code,
                scope=f.scope,
                default_enabled=f.default_enabled,
                module_code=f.module,
            )
            for f in schema.features
        ],
        business_types=[
            BusinessTypeDefinition(
                code=b.code,
                name=b.name or b.code,
                requires_versioning=b.requires_versioning,
            )
            for b in schema.business_types
        ],
        legacy_mappings={
            b.code: VersionSnapshot(
                modules=tuple(SnapshotEntry(**m.model_dump()) for m in b.modules),
                features=tuple(SnapshotEntry(**f.model_dump()) for f in b.features),
            )
            for b in schema.business_types
            if b.modules or b.features
        },
    )


class CatalogLoader:
    """
    Thread-safe singleton loader for config/catalog.yml.

    The path comes from the constructor, then ENTITLEMENT_CATALOG_PATH,
    then the repository's config/ directory.
    """

    _instance: Optional["CatalogLoader"] = None
    _lock = Lock()

    def __new__(cls, config_path: Optional[str] = None):
        if cls._instance is None:
            with cls._lock:
                if cls._instance is None:
                    cls._instance = super().__new__(cls)
                    cls._instance._initialized = False
        return cls._instance

    def __init__(self, config_path: Optional[str] = None):
        if self._initialized:
            return

        self._config_path = config_path or os.getenv("ENTITLEMENT_CATALOG_PATH")
        self._schema: Optional[CatalogSchema] = None
        self._catalog: Optional[InMemoryCatalogSource] = None
        self._load_lock = Lock()

        self._load()
        self._initialized = True

    def _resolve_path(self) -> Path:
        if self._config_path:
            return Path(self._config_path)

        candidates = [
            Path(__file__).parent.parent.parent.parent / "config" / CATALOG_FILENAME,
            Path(os.getcwd()) / "config" / CATALOG_FILENAME,
            Path(os.getcwd()) / ".." / "config" / CATALOG_FILENAME,
        ]

        for p in candidates:
            resolved = p.resolve()
            if resolved.exists():
                return resolved

        raise FileNotFoundError(
            f"{CATALOG_FILENAME} not found in: {[str(p) for p in candidates]}"
        )

    def _load(self) -> None:
        with self._load_lock:
            path = self._resolve_path()
            logger.info("Loading entitlement catalog from %s", path)

            with open(path, "r") as f:
                raw = yaml.safe_load(f) or {}

            schema = parse_catalog(raw)
            catalog = build_catalog(schema)
            self._schema, self._catalog = schema, catalog

            logger.info(
                "Loaded entitlement catalog: permissions=%d roles=%d plans=%d addons=%d "
                "modules=%d features=%d business_types=%d",
                len(schema.permissions),
                len(schema.roles),
                len(schema.plans),
                len(schema.addons),
                len(schema.modules),
                len(schema.features),
                len(schema.business_types),
            )

    def reload(self) -> None:
        """Re-read the YAML from disk. A broken file leaves the previous catalog in place."""
        self._load()

    @property
    def catalog(self) -> InMemoryCatalogSource:
        return self._catalog

    @property
    def schema(self) -> CatalogSchema:
        return self._schema


def get_catalog_loader(config_path: Optional[str] = None) -> CatalogLoader:
    """Return the singleton CatalogLoader."""
    return CatalogLoader(config_path)


def reset_catalog_loader() -> None:
    """Reset singleton (for tests only)."""
    CatalogLoader._instance = None


def seed_catalog(db: Session, schema: CatalogSchema) -> None:
    """
    Insert the catalog into the database tables.

    Meant for fresh databases and tests; existing rows with the same keys
    cause an IntegrityError on flush. The caller commits.
    """
    build_catalog(schema)

    for p in schema.permissions:
        db.add(PermissionRecord(code=p.code, description=p.description, is_deprecated=p.deprecated))

    for bt in schema.business_types:
        db.add(BusinessTypeRecord(
            code=bt.code,
            name=bt.name or bt.code,
            requires_versioning=bt.requires_versioning,
        ))

    for r in schema.roles:
        role = Role(
            id=r.id,
            tenant_id=r.tenant_id,
            slug=r.id,
            name=r.name or r.id,
            is_system=r.tenant_id is None,
        )
        role.permissions = [RolePermission(permission_code=code) for code in r.permissions]
        db.add(role)

    for p in schema.plans:
        plan = Plan(code=p.code, name=p.name or p.code)
        plan.permissions = [PlanPermission(permission_code=code) for code in p.permissions]
        db.add(plan)

    for a in schema.addons:
        addon = Addon(code=a.code, name=a.name or a.code)
        addon.permissions = [AddonPermission(permission_code=code) for code in a.permissions]
        addon.dependencies = [AddonDependency(requires_addon_code=code) for code in a.requires]
        db.add(addon)

    for m in schema.modules:
        db.add(ModuleRegistryEntry(
            code=m.code,
            name=m.name or m.code,
            scope=m.scope.value,
            default_enabled=m.default_enabled,
        ))

    for f in schema.features:
        db.add(FeatureRegistryEntry(
            code=f.code,
            name=f.name or f.code,
            scope=f.scope.value,
            default_enabled=f.default_enabled,
            module_code=f.module,
        ))

    db.flush()

    for bt in schema.business_types:
        for m in bt.modules:
            db.add(BusinessModuleMapping(
                business_type_code=bt.code,
                module_code=m.code,
                is_required=m.is_required,
                default_enabled=m.default_enabled,
                display_order=m.display_order,
            ))
        for f in bt.features:
            db.add(BusinessFeatureMapping(
                business_type_code=bt.code,
                feature_code=f.code,
                is_required=f.is_required,
                default_enabled=f.default_enabled,
                display_order=f.display_order,
            ))
    db.flush()

    logger.info(
        "catalog.seeded",
        extra={"permissions": len(schema.permissions), "business_types": len(schema.business_types)},
    )
