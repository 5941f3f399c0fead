"""
Root test configuration and fixtures.

Provides:
- db_engine / db_session: SQLite in-memory schema with per-test rollback
- catalog_schema / catalog: the shipped config/catalog.yml
- seeded_db / make_tenant: catalog tables plus tenant, role, plan, add-on rows
- offline_redis / view_cache / audit_logger: isolated cache and audit sinks
- static_overrides / static_versions / static_tenants: in-memory collaborators
- temp_config_dir / make_yaml_config: temporary YAML config files
"""

import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Generator, Iterable, List, Optional
from unittest.mock import MagicMock

import pytest
import yaml
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from bizcore.entitlements.audit import EntitlementAuditLogger, reset_audit_logger
from bizcore.entitlements.cache import (
    EntitlementViewCache,
    InMemoryCache,
    RedisClient,
    reset_entitlement_view_cache,
)
from bizcore.entitlements.loader import build_catalog, parse_catalog, reset_catalog_loader, seed_catalog
from bizcore.entitlements.models import (
    OverrideRecord,
    Scope,
    TargetKind,
    TenantEntitlementRecord,
    VersionRecord,
)
from bizcore.entitlements.sources import OverrideSource, TenantRecordSource, VersionSource

# Set test environment
os.environ.setdefault("ENV", "test")

CATALOG_PATH = Path(__file__).resolve().parents[3] / "config" / "catalog.yml"


# =============================================================================
# Database
# =============================================================================

@pytest.fixture(scope="session")
def db_engine():
    """SQLite in-memory engine with every bizcore table created."""
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from bizcore.db_base import Base
    import bizcore.models  # noqa: F401 - registers all tables

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def db_session(db_engine) -> Generator[Session, None, None]:
    """
    Create database session with transaction rollback for test isolation.

    Each test gets a fresh session that rolls back after the test completes.
    """
    connection = db_engine.connect()
    transaction = connection.begin()

    SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=connection)
    session = SessionLocal()

    yield session

    session.close()
    if transaction.is_active:
        transaction.rollback()
    connection.close()


# =============================================================================
# Markers
# =============================================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line("markers", "db: test touches the SQLite schema")
    config.addinivalue_line("markers", "slow: mark test as slow-running")


# =============================================================================
# Singletons
# =============================================================================

@pytest.fixture(autouse=True)
def _reset_singletons(monkeypatch):
    """Every test starts without Redis and with fresh module singletons."""
    monkeypatch.delenv("REDIS_URL", raising=False)
    RedisClient.reset()
    reset_entitlement_view_cache()
    reset_audit_logger()
    reset_catalog_loader()
    yield
    RedisClient.reset()
    reset_entitlement_view_cache()
    reset_audit_logger()
    reset_catalog_loader()


# =============================================================================
# Catalog
# =============================================================================

@pytest.fixture(scope="session")
def catalog_schema():
    with open(CATALOG_PATH, "r") as f:
        return parse_catalog(yaml.safe_load(f))


@pytest.fixture
def catalog(catalog_schema):
    return build_catalog(catalog_schema)


@pytest.fixture
def seeded_db(db_session, catalog_schema):
    """db_session with the shipped catalog copied into the catalog tables."""
    seed_catalog(db_session, catalog_schema)
    return db_session


@pytest.fixture
def make_tenant(seeded_db):
    """
    Factory that inserts a tenant plus its role assignment, plan and add-ons.

    Usage:
        tenant = make_tenant("t1", business_type="gym", user_id="u1",
                             role_id="staff", plan_code="pro", addons=["analytics"])
    """
    from bizcore.models import Tenant, TenantAddon, TenantPlanAssignment, UserRoleAssignment

    def _make(
        tenant_id: str,
        business_type: Optional[str] = None,
        user_id: str = "u1",
        role_id: Optional[str] = "staff",
        plan_code: Optional[str] = "pro",
        addons: Iterable[str] = (),
        addon_expires_at: Optional[datetime] = None,
    ):
        tenant = Tenant(id=tenant_id, name=f"Tenant {tenant_id}", business_type_code=business_type)
        seeded_db.add(tenant)
        if role_id is not None:
            seeded_db.add(UserRoleAssignment(tenant_id=tenant_id, user_id=user_id, role_id=role_id))
        if plan_code is not None:
            seeded_db.add(TenantPlanAssignment(tenant_id=tenant_id, plan_code=plan_code))
        for code in addons:
            seeded_db.add(TenantAddon(tenant_id=tenant_id, addon_code=code, expires_at=addon_expires_at))
        seeded_db.flush()
        return tenant

    return _make


# =============================================================================
# Cache / audit
# =============================================================================

@pytest.fixture
def offline_redis():
    """RedisClient double reporting Redis as unreachable."""
    client = MagicMock(spec=RedisClient)
    client.available = False
    client.get.return_value = None
    client.set_members.return_value = set()
    client.delete.return_value = 0
    client.delete_pattern.return_value = 0
    return client


@pytest.fixture
def view_cache(offline_redis):
    return EntitlementViewCache(
        redis_client=offline_redis,
        memory_cache=InMemoryCache(),
        ttl_seconds=120,
    )


@pytest.fixture
def audit_logger():
    return EntitlementAuditLogger()


# =============================================================================
# In-memory collaborators
# =============================================================================

class StaticOverrideSource(OverrideSource):
    """Returns a fixed list, filtered the way the database source filters."""

    def __init__(self, records: Iterable[OverrideRecord] = ()):
        self.records: List[OverrideRecord] = list(records)
        self.calls = 0

    def list_overrides(self, tenant_id, business_type):
        self.calls += 1
        out = []
        for r in self.records:
            if not r.is_active:
                continue
            if r.scope == Scope.GLOBAL:
                out.append(r)
            elif r.scope == Scope.BUSINESS and r.scope_key == business_type:
                out.append(r)
            elif r.scope == Scope.TENANT and r.scope_key == tenant_id:
                out.append(r)
        return out


class StaticVersionSource(VersionSource):
    def __init__(self, versions: Iterable[VersionRecord] = ()):
        self.versions: Dict[str, VersionRecord] = {v.id: v for v in versions}

    def get_version(self, version_id):
        return self.versions.get(version_id)

    def get_published_version(self, business_type, version_number=None):
        matches = [v for v in self.versions.values() if v.business_type == business_type]
        if version_number is not None:
            for v in matches:
                if v.version_number == version_number and not v.is_draft:
                    return v
            return None
        published = [v for v in matches if v.is_published]
        return max(published, key=lambda v: v.version_number) if published else None


class StaticTenantRecordSource(TenantRecordSource):
    def __init__(self, records: Iterable[TenantEntitlementRecord] = ()):
        self.records: Dict[str, TenantEntitlementRecord] = {r.tenant_id: r for r in records}

    def get_tenant_record(self, tenant_id, user_id):
        record = self.records.get(tenant_id)
        if record is None:
            return None
        return TenantEntitlementRecord(
            tenant_id=record.tenant_id,
            user_id=user_id,
            business_type=record.business_type,
            role_id=record.role_id,
            plan_code=record.plan_code,
            addon_codes=record.addon_codes,
            pinned_version_id=record.pinned_version_id,
        )


@pytest.fixture
def static_overrides():
    return StaticOverrideSource


@pytest.fixture
def static_versions():
    return StaticVersionSource


@pytest.fixture
def static_tenants():
    return StaticTenantRecordSource


@pytest.fixture
def make_override():
    """
    Factory for OverrideRecord.

    Usage:
        o = make_override("telemedicine", Scope.TENANT, "t1", enabled=False)
    """
    counter = {"n": 0}

    def _make(
        code: str,
        scope: Scope,
        scope_key: Optional[str] = None,
        enabled: bool = True,
        kind: TargetKind = TargetKind.FEATURE,
        created_at: Optional[datetime] = None,
        expires_at: Optional[datetime] = None,
        is_active: bool = True,
        override_id: Optional[str] = None,
    ) -> OverrideRecord:
        counter["n"] += 1
        return OverrideRecord(
            id=override_id or f"ovr-{counter['n']:04d}",
            target_kind=kind,
            target_code=code,
            scope=scope,
            scope_key=scope_key,
            enabled=enabled,
            reason="test",
            created_by="tests",
            created_at=created_at or datetime(2024, 1, 1, tzinfo=timezone.utc),
            is_active=is_active,
            expires_at=expires_at,
        )

    return _make


# =============================================================================
# Config files
# =============================================================================

@pytest.fixture
def temp_config_dir():
    """Create a temporary directory for YAML config files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def make_yaml_config(temp_config_dir):
    """
    Factory fixture that writes a YAML config file and returns its path.

    Usage:
        config_path = make_yaml_config("catalog.yml", {"permissions": [...]})
    """
    def _make(filename: str, config: dict) -> Path:
        config_path = temp_config_dir / filename
        with open(config_path, "w") as f:
            yaml.dump(config, f)
        return config_path
    return _make
