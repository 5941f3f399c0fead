"""
Entitlement domain types — canonical value objects shared by the composer,
the override resolver, the version manager and the session builder.

Provides:
- Scope / PRECEDENCE: override scopes and the explicit resolution order
- OverrideRecord + pick_active_override(): active-override selection
- SnapshotEntry / VersionSnapshot: frozen business-type configuration
- VersionedConfig / LegacyConfig: the ConfigSource sum type
- FeatureDefinition, ModuleDefinition, RoleDefinition, ...: catalog records
- AddonSubscription: billing window of one purchased add-on
- EntitlementView: the immutable, cacheable per-(tenant, user) result

Resolution order (most specific wins):
    1. Tenant override            (active, not expired)
    2. Business-type override     (active, not expired)
    3. Global override            (active, not expired)
    4. Version snapshot entry for the tenant's business type
    5. Registry default_enabled

Inactive overrides are absent. They never count as "disabled".
"""

import hashlib
import json
from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple, Union


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Scope(str, Enum):
    """Scope an override is declared at."""
    GLOBAL = "global"
    BUSINESS = "business"
    TENANT = "tenant"


class TargetKind(str, Enum):
    """What an override or resolution targets."""
    FEATURE = "feature"
    MODULE = "module"


class ResolutionOrigin(str, Enum):
    """Which layer of the chain produced a resolved value."""
    OVERRIDE = "override"
    SNAPSHOT = "snapshot"
    REQUIRED = "required"
    DEFAULT = "default"


class ConfigSourceKind(str, Enum):
    VERSIONED = "versioned"
    LEGACY = "legacy"
    NONE = "none"


class AddonStatus(str, Enum):
    """Billing status stored on a purchased add-on."""
    ACTIVE = "active"
    TRIALING = "trialing"
    GRACE = "grace"
    CANCELLED = "cancelled"


class AddonState(str, Enum):
    """Evaluated state of a purchased add-on at one instant."""
    ACTIVE = "active"
    TRIAL = "trial"
    GRACE = "grace"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


# Resolution order, most specific first. Never reorder implicitly.
PRECEDENCE: Tuple[Scope, ...] = (Scope.TENANT, Scope.BUSINESS, Scope.GLOBAL)

# Breadth rank: a feature tagged with scope T may be overridden at any
# scope whose rank is <= rank(T).
_SCOPE_BREADTH = {Scope.GLOBAL: 0, Scope.BUSINESS: 1, Scope.TENANT: 2}


def override_allowed(scope_tag: Scope, scope: Scope) -> bool:
    """
    True if an override at `scope` is permitted for a target tagged `scope_tag`.

    global   -> global only
    business -> global, business
    tenant   -> global, business, tenant
    """
    return _SCOPE_BREADTH[Scope(scope)] <= _SCOPE_BREADTH[Scope(scope_tag)]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


# ---------------------------------------------------------------------------
# Overrides
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class OverrideRecord:
    """
    In-memory representation of an override row.

    scope_key is None for global scope, the business-type code for
    business scope, and the tenant id for tenant scope.
    """
    id: str
    target_kind: TargetKind
    target_code: str
    scope: Scope
    scope_key: Optional[str]
    enabled: bool
    reason: str
    created_by: str
    created_at: datetime
    is_active: bool = True
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        now = now or _utcnow()
        return now >= _as_utc(self.expires_at)

    def is_effective(self, now: Optional[datetime] = None) -> bool:
        """Active and not expired. Anything else is treated as absent."""
        return self.is_active and not self.is_expired(now)

    def matches(self, kind: TargetKind, code: str, scope: Scope, scope_key: Optional[str]) -> bool:
        return (
            self.target_kind == kind
            and self.target_code == code
            and self.scope == scope
            and (scope == Scope.GLOBAL or self.scope_key == scope_key)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "target_kind": TargetKind(self.target_kind).value,
            "target_code": self.target_code,
            "scope": Scope(self.scope).value,
            "scope_key": self.scope_key,
            "enabled": self.enabled,
            "reason": self.reason,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat(),
            "is_active": self.is_active,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }


def pick_active_override(
    candidates: Iterable[OverrideRecord],
    now: Optional[datetime] = None,
) -> Optional[OverrideRecord]:
    """
    Select the override that applies among candidates sharing one scope.

    Inactive and expired candidates are ignored. When several remain the
    most recently created wins; equal timestamps fall back to the highest
    id so the outcome never depends on input order.
    """
    now = now or _utcnow()
    effective = [c for c in candidates if c.is_effective(now)]
    if not effective:
        return None
    return max(effective, key=lambda c: (_as_utc(c.created_at), c.id))


# ---------------------------------------------------------------------------
# Version snapshots
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SnapshotEntry:
    """One module or feature in a business-type snapshot."""
    code: str
    default_enabled: bool = True
    is_required: bool = False
    display_order: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SnapshotEntry":
        return cls(
            code=data["code"],
            default_enabled=bool(data.get("default_enabled", True)),
            is_required=bool(data.get("is_required", False)),
            display_order=int(data.get("display_order", 0)),
        )


@dataclass(frozen=True)
class VersionSnapshot:
    """
    Frozen module + feature lists of a business-type version.

    Frozen: a published version hands out this object and nothing can
    change it. Entries keep their declared order.
    """
    modules: Tuple[SnapshotEntry, ...] = ()
    features: Tuple[SnapshotEntry, ...] = ()

    def __post_init__(self):
        object.__setattr__(self, "modules", tuple(self.modules))
        object.__setattr__(self, "features", tuple(self.features))

    @classmethod
    def from_payload(
        cls,
        modules: Optional[Iterable[Mapping[str, Any]]],
        features: Optional[Iterable[Mapping[str, Any]]],
    ) -> "VersionSnapshot":
        return cls(
            modules=tuple(SnapshotEntry.from_dict(m) for m in (modules or [])),
            features=tuple(SnapshotEntry.from_dict(f) for f in (features or [])),
        )

    def module_payload(self) -> List[Dict[str, Any]]:
        return [m.to_dict() for m in self.modules]

    def feature_payload(self) -> List[Dict[str, Any]]:
        return [f.to_dict() for f in self.features]

    def to_payload(self) -> Dict[str, Any]:
        return {"modules": self.module_payload(), "features": self.feature_payload()}

    def canonical_json(self) -> str:
        return json.dumps(self.to_payload(), sort_keys=True, separators=(",", ":"))

    def fingerprint(self) -> str:
        """SHA-256 of the canonical JSON. Stable across processes."""
        return hashlib.sha256(self.canonical_json().encode("utf-8")).hexdigest()

    def entries(self, kind: TargetKind) -> Tuple[SnapshotEntry, ...]:
        return self.modules if TargetKind(kind) == TargetKind.MODULE else self.features

    def entry(self, kind: TargetKind, code: str) -> Optional[SnapshotEntry]:
        for candidate in self.entries(kind):
            if candidate.code == code:
                return candidate
        return None

    def validation_problems(self) -> List[str]:
        """Structural checks that do not need the catalog."""
        problems = []
        if not self.modules:
            problems.append("module snapshot is empty")
        for label, entries in (("module", self.modules), ("feature", self.features)):
            seen = set()
            for e in entries:
                if e.code in seen:
                    problems.append(f"duplicate {label} code '{e.code}'")
                seen.add(e.code)
        return problems


@dataclass(frozen=True)
class VersionRecord:
    """Read model of a BusinessTypeVersion row."""
    id: str
    business_type: str
    version_number: int
    status: str
    snapshot: VersionSnapshot
    snapshot_hash: Optional[str] = None
    effective_at: Optional[datetime] = None
    published_at: Optional[datetime] = None
    retired_at: Optional[datetime] = None

    @property
    def is_published(self) -> bool:
        return self.status == "published"

    @property
    def is_retired(self) -> bool:
        return self.status == "retired"

    @property
    def is_draft(self) -> bool:
        return self.status == "draft"


@dataclass(frozen=True)
class VersionedConfig:
    """Configuration resolved from a published (or pinned) version."""
    business_type: str
    version_id: str
    version_number: int
    snapshot: VersionSnapshot
    is_pinned: bool = False

    @property
    def kind(self) -> ConfigSourceKind:
        return ConfigSourceKind.VERSIONED


@dataclass(frozen=True)
class LegacyConfig:
    """Configuration resolved from the flat, unversioned business-type mapping."""
    business_type: str
    snapshot: VersionSnapshot

    @property
    def kind(self) -> ConfigSourceKind:
        return ConfigSourceKind.LEGACY


ConfigSource = Union[VersionedConfig, LegacyConfig]


@dataclass(frozen=True)
class EffectiveVersion:
    """Which version a tenant currently observes, and whether it is pinned."""
    tenant_id: str
    business_type: str
    version_id: str
    version_number: int
    status: str
    is_pinned: bool

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Catalog records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class FeatureDefinition:
    code: str
    name: str
    scope: Scope = Scope.TENANT
    default_enabled: bool = False
    module_code: Optional[str] = None


@dataclass(frozen=True)
class ModuleDefinition:
    code: str
    name: str
    scope: Scope = Scope.TENANT
    default_enabled: bool = False


@dataclass(frozen=True)
class RoleDefinition:
    """A role and its permission codes. tenant_id None => global system role."""
    id: str
    slug: str
    permissions: FrozenSet[str]
    tenant_id: Optional[str] = None
    is_system: bool = False


@dataclass(frozen=True)
class BusinessTypeDefinition:
    code: str
    name: str
    requires_versioning: bool = False


@dataclass(frozen=True)
class TenantEntitlementRecord:
    """Everything the session builder reads about one (tenant, user)."""
    tenant_id: str
    user_id: str
    business_type: Optional[str]
    role_id: Optional[str]
    plan_code: Optional[str]
    addon_codes: Tuple[str, ...] = ()  # billing-entitled add-ons only
    pinned_version_id: Optional[str] = None


@dataclass(frozen=True)
class AddonSubscription:
    """
    Billing window of one purchased add-on.

    State at `now`:
        cancelled                              -> CANCELLED
        trialing, trial_ends_at > now          -> TRIAL
        active, paid_until unset or > now      -> ACTIVE
        otherwise grace_until > now            -> GRACE
        otherwise                              -> EXPIRED

    TRIAL, ACTIVE and GRACE grant the add-on's permissions.
    """
    addon_code: str
    status: AddonStatus = AddonStatus.ACTIVE
    paid_until: Optional[datetime] = None
    trial_ends_at: Optional[datetime] = None
    grace_until: Optional[datetime] = None

    def state(self, now: Optional[datetime] = None) -> AddonState:
        now = now or _utcnow()
        status = AddonStatus(self.status)
        if status == AddonStatus.CANCELLED:
            return AddonState.CANCELLED
        if status == AddonStatus.TRIALING:
            if self.trial_ends_at is not None and _as_utc(self.trial_ends_at) > now:
                return AddonState.TRIAL
        elif status == AddonStatus.ACTIVE:
            if self.paid_until is None or _as_utc(self.paid_until) > now:
                return AddonState.ACTIVE
        if self.grace_until is not None and _as_utc(self.grace_until) > now:
            return AddonState.GRACE
        return AddonState.EXPIRED

    def is_entitled(self, now: Optional[datetime] = None) -> bool:
        return self.state(now) in (AddonState.ACTIVE, AddonState.TRIAL, AddonState.GRACE)


# ---------------------------------------------------------------------------
# Resolution results
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Resolution:
    """
    Resolved state of one feature or module with provenance.

    source_scope answers "which layer decided"; override_id points at the
    override row when origin is OVERRIDE.
    """
    code: str
    kind: TargetKind
    enabled: bool
    source_scope: Scope
    origin: ResolutionOrigin
    override_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "kind": TargetKind(self.kind).value,
            "enabled": self.enabled,
            "source_scope": Scope(self.source_scope).value,
            "origin": ResolutionOrigin(self.origin).value,
            "override_id": self.override_id,
        }


@dataclass
class ResolvedConfiguration:
    """Batch result of OverrideResolver.resolve_all()."""
    features: Dict[str, Resolution] = field(default_factory=dict)
    modules: Dict[str, Resolution] = field(default_factory=dict)

    def feature_flags(self) -> Dict[str, bool]:
        return {code: r.enabled for code, r in self.features.items()}

    def module_flags(self) -> Dict[str, bool]:
        return {code: r.enabled for code, r in self.modules.items()}

    def feature_sources(self) -> Dict[str, str]:
        return {code: Scope(r.source_scope).value for code, r in self.features.items()}

    def module_sources(self) -> Dict[str, str]:
        return {code: Scope(r.source_scope).value for code, r in self.modules.items()}


@dataclass(frozen=True)
class EntitlementView:
    """
    Fully computed entitlements for one (tenant, user).

    Frozen, so it can be cached, serialised and shared across threads. A
    restricted view (fail-closed) grants nothing.
    """
    tenant_id: str
    user_id: str
    business_type: Optional[str]
    permissions: FrozenSet[str]
    features: Mapping[str, bool]
    modules: Mapping[str, bool]
    version_id: Optional[str]
    version_number: Optional[int]
    config_source: str
    computed_at: datetime
    feature_sources: Mapping[str, str] = field(default_factory=dict)
    module_sources: Mapping[str, str] = field(default_factory=dict)
    restricted: bool = False
    restriction_reason: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "permissions", frozenset(self.permissions))
        for name in ("features", "modules", "feature_sources", "module_sources"):
            object.__setattr__(self, name, MappingProxyType(dict(getattr(self, name))))

    @classmethod
    def restricted_view(
        cls,
        tenant_id: str,
        user_id: str,
        reason: str,
        business_type: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "EntitlementView":
        """Zero-permission, zero-feature view used when failing closed."""
        return cls(
            tenant_id=tenant_id,
            user_id=user_id,
            business_type=business_type,
            permissions=frozenset(),
            features={},
            modules={},
            version_id=None,
            version_number=None,
            config_source=ConfigSourceKind.NONE.value,
            computed_at=now or _utcnow(),
            restricted=True,
            restriction_reason=reason,
        )

    def has_permission(self, code: str) -> bool:
        return not self.restricted and code in self.permissions

    def has_feature(self, code: str) -> bool:
        return not self.restricted and self.features.get(code, False)

    def has_module(self, code: str) -> bool:
        return not self.restricted and self.modules.get(code, False)

    @property
    def enabled_features(self) -> List[str]:
        return sorted(code for code, on in self.features.items() if on)

    @property
    def enabled_modules(self) -> List[str]:
        return sorted(code for code, on in self.modules.items() if on)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tenant_id": self.tenant_id,
            "user_id": self.user_id,
            "business_type": self.business_type,
            "permissions": sorted(self.permissions),
            "features": dict(self.features),
            "modules": dict(self.modules),
            "feature_sources": dict(self.feature_sources),
            "module_sources": dict(self.module_sources),
            "version_id": self.version_id,
            "version_number": self.version_number,
            "config_source": self.config_source,
            "computed_at": self.computed_at.isoformat(),
            "restricted": self.restricted,
            "restriction_reason": self.restriction_reason,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EntitlementView":
        return cls(
            tenant_id=data["tenant_id"],
            user_id=data["user_id"],
            business_type=data.get("business_type"),
            permissions=frozenset(data.get("permissions", [])),
            features=data.get("features", {}),
            modules=data.get("modules", {}),
            version_id=data.get("version_id"),
            version_number=data.get("version_number"),
            config_source=data.get("config_source", ConfigSourceKind.NONE.value),
            computed_at=datetime.fromisoformat(data["computed_at"]),
            feature_sources=data.get("feature_sources", {}),
            module_sources=data.get("module_sources", {}),
            restricted=data.get("restricted", False),
            restriction_reason=data.get("restriction_reason"),
        )

    @classmethod
    def from_json(cls, raw: str) -> "EntitlementView":
        return cls.from_dict(json.loads(raw))
