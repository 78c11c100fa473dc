"""
ASO Bible - Type Definitions.

============================================================
PURPOSE
============================================================
Data contracts for the scoped override engine.

This module defines all enums and dataclasses shared by the
registry store, the override store, the scope resolver and
the effective value calculator.

============================================================
DESIGN PRINCIPLES
============================================================
- All types are immutable (frozen dataclasses)
- Scope tiers are an explicit enum with a fixed qualifier
  shape per tier, validated at the boundary
- Evaluation context is passed explicitly, never read from
  ambient state

============================================================
SCOPE TIERS
============================================================
Ordered by specificity (most specific first):

    app > client > market > vertical

| tier     | qualifiers            |
|----------|-----------------------|
| vertical | vertical              |
| market   | vertical + market     |
| client   | organization_id       |
| app      | app_id                |

============================================================
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from core.exceptions import InvalidScopeError


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _clean(value: Optional[str]) -> Optional[str]:
    """Trim a qualifier value; empty strings count as absent."""
    if value is None:
        return None
    value = str(value).strip()
    return value or None


# ============================================================
# ENUMS
# ============================================================


class EntityType(str, Enum):
    """Kinds of scoring entities held in the registry."""

    KPI = "kpi"
    INTENT_PATTERN = "intent_pattern"
    RULE = "rule"
    FORMULA_COMPONENT = "formula_component"


class ScopeTier(str, Enum):
    """
    Specificity level at which an override applies.

    Evaluation order is app -> client -> market -> vertical.
    """

    VERTICAL = "vertical"
    MARKET = "market"
    CLIENT = "client"
    APP = "app"

    @classmethod
    def by_specificity(cls) -> List["ScopeTier"]:
        """Return tiers most specific first (resolution order)."""
        return [cls.APP, cls.CLIENT, cls.MARKET, cls.VERTICAL]

    @property
    def specificity(self) -> int:
        """Higher is more specific."""
        return {"vertical": 1, "market": 2, "client": 3, "app": 4}[self.value]

    @property
    def required_qualifiers(self) -> FrozenSet[str]:
        """The exact qualifier fields a record of this tier carries."""
        return TIER_QUALIFIERS[self]


class RuleSeverity(str, Enum):
    """Severity levels carried by rule evaluators."""

    CRITICAL = "critical"
    STRONG = "strong"
    MODERATE = "moderate"
    OPTIONAL = "optional"
    INFO = "info"


class WriteEventKind(str, Enum):
    """Store writes published to listeners (cache invalidation)."""

    ENTRY_REGISTERED = "entry_registered"
    BASE_UPDATED = "base_updated"
    ENTRY_DEPRECATED = "entry_deprecated"
    OVERRIDE_UPSERTED = "override_upserted"
    OVERRIDE_REMOVED = "override_removed"


class OverrideOperation(str, Enum):
    """Kinds of change recorded in the override change log."""

    CREATE = "create"
    UPDATE = "update"
    REMOVE = "remove"


QUALIFIER_FIELDS: Tuple[str, ...] = ("vertical", "market", "organization_id", "app_id")

TIER_QUALIFIERS: Dict[ScopeTier, FrozenSet[str]] = {
    ScopeTier.VERTICAL: frozenset({"vertical"}),
    ScopeTier.MARKET: frozenset({"vertical", "market"}),
    ScopeTier.CLIENT: frozenset({"organization_id"}),
    ScopeTier.APP: frozenset({"app_id"}),
}


def parse_scope_tier(value: Any) -> ScopeTier:
    """
    Coerce a tier name to ScopeTier.

    Raises:
        InvalidScopeError: Unknown tier name
    """
    try:
        return ScopeTier(value)
    except ValueError:
        raise InvalidScopeError(str(value), reason="unknown scope tier") from None


# ============================================================
# SCOPE QUALIFIERS
# ============================================================


@dataclass(frozen=True)
class ScopeQualifiers:
    """
    Concrete values narrowing an override to a specific scope.

    Values are trimmed on construction; empty strings are
    treated as absent.
    """

    vertical: Optional[str] = None
    market: Optional[str] = None
    organization_id: Optional[str] = None
    app_id: Optional[str] = None

    def __post_init__(self) -> None:
        for name in QUALIFIER_FIELDS:
            object.__setattr__(self, name, _clean(getattr(self, name)))

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ScopeQualifiers":
        data = data or {}
        return cls(
            vertical=data.get("vertical"),
            market=data.get("market"),
            organization_id=data.get("organization_id", data.get("organizationId")),
            app_id=data.get("app_id", data.get("appId")),
        )

    @property
    def present_fields(self) -> FrozenSet[str]:
        """Names of qualifier fields that carry a value."""
        return frozenset(name for name in QUALIFIER_FIELDS if getattr(self, name) is not None)

    def key(self) -> Tuple[Optional[str], ...]:
        """Full qualifier tuple used in the uniqueness key."""
        return tuple(getattr(self, name) for name in QUALIFIER_FIELDS)

    def validate_for(self, tier: ScopeTier) -> None:
        """
        Check the qualifier set is exactly the tier's shape.

        Raises:
            InvalidScopeError: On missing or unexpected qualifiers
        """
        required = tier.required_qualifiers
        present = self.present_fields
        missing = required - present
        unexpected = present - required
        if missing or unexpected:
            raise InvalidScopeError(tier.value, missing=missing, unexpected=unexpected)

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {name: getattr(self, name) for name in QUALIFIER_FIELDS}


@dataclass(frozen=True)
class EvaluationContext:
    """
    Caller-supplied context for an effective value read.

    Any subset of fields may be present. Consistency between
    app_id and organization_id is not enforced.
    """

    vertical: Optional[str] = None
    market: Optional[str] = None
    organization_id: Optional[str] = None
    app_id: Optional[str] = None

    def __post_init__(self) -> None:
        for name in QUALIFIER_FIELDS:
            object.__setattr__(self, name, _clean(getattr(self, name)))

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "EvaluationContext":
        q = ScopeQualifiers.from_dict(data)
        return cls(q.vertical, q.market, q.organization_id, q.app_id)

    @property
    def is_empty(self) -> bool:
        return all(getattr(self, name) is None for name in QUALIFIER_FIELDS)

    def cache_key(self) -> Tuple[Optional[str], ...]:
        return tuple(getattr(self, name) for name in QUALIFIER_FIELDS)

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {name: getattr(self, name) for name in QUALIFIER_FIELDS}


# ============================================================
# REGISTRY ENTRY
# ============================================================


@dataclass(frozen=True)
class RegistryEntry:
    """
    Base definition of a scoring entity.

    Base values never mutate in place; an admin edit produces
    a new entry with an incremented version.
    """

    id: str
    entity_type: EntityType
    base_weight: float

    family: Optional[str] = None
    base_severity: Optional[RuleSeverity] = None
    base_threshold_low: Optional[float] = None
    base_threshold_high: Optional[float] = None

    # Narrows the entity type's weight bounds for this entry
    weight_bounds: Optional[Tuple[float, float]] = None

    description: str = ""
    notes: Optional[str] = None
    tags: Tuple[str, ...] = ()

    version: int = 1
    is_deprecated: bool = False
    deprecated_reason: Optional[str] = None
    updated_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_type": self.entity_type.value,
            "base_weight": self.base_weight,
            "family": self.family,
            "base_severity": self.base_severity.value if self.base_severity else None,
            "base_threshold_low": self.base_threshold_low,
            "base_threshold_high": self.base_threshold_high,
            "weight_bounds": list(self.weight_bounds) if self.weight_bounds else None,
            "description": self.description,
            "notes": self.notes,
            "tags": list(self.tags),
            "version": self.version,
            "is_deprecated": self.is_deprecated,
            "deprecated_reason": self.deprecated_reason,
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass(frozen=True)
class RegistryFilter:
    """Optional filter for listing registry entries."""

    entity_type: Optional[EntityType] = None
    family: Optional[str] = None
    tag: Optional[str] = None
    include_deprecated: bool = False

    def matches(self, entry: RegistryEntry) -> bool:
        if entry.is_deprecated and not self.include_deprecated:
            return False
        if self.entity_type is not None and entry.entity_type != self.entity_type:
            return False
        if self.family is not None and entry.family != self.family:
            return False
        if self.tag is not None and self.tag not in entry.tags:
            return False
        return True


# ============================================================
# OVERRIDE RECORD
# ============================================================


OverrideKey = Tuple[str, ScopeTier, Tuple[Optional[str], ...]]


@dataclass(frozen=True)
class OverrideRecord:
    """
    A scoped override of one registry entity.

    The weight multiplier combines multiplicatively with the
    base weight. Severity and threshold overrides, when set,
    replace the base values.
    """

    id: str
    entity_id: str
    scope_tier: ScopeTier
    qualifiers: ScopeQualifiers
    multiplier: float

    version: int = 1
    is_active: bool = True

    severity_override: Optional[RuleSeverity] = None
    threshold_low_override: Optional[float] = None
    threshold_high_override: Optional[float] = None
    notes: Optional[str] = None

    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @property
    def key(self) -> OverrideKey:
        """Uniqueness key: (entity id, tier, full qualifier tuple)."""
        return (self.entity_id, self.scope_tier, self.qualifiers.key())

    @property
    def scope_key(self) -> str:
        return format_override_key(self.key)

    def audit_values(self) -> Dict[str, Any]:
        """Editable values captured in the change log."""
        return {
            "multiplier": self.multiplier,
            "version": self.version,
            "severity_override": self.severity_override.value if self.severity_override else None,
            "threshold_low_override": self.threshold_low_override,
            "threshold_high_override": self.threshold_high_override,
            "notes": self.notes,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "entity_id": self.entity_id,
            "scope_tier": self.scope_tier.value,
            "qualifiers": self.qualifiers.to_dict(),
            "multiplier": self.multiplier,
            "version": self.version,
            "is_active": self.is_active,
            "severity_override": self.severity_override.value if self.severity_override else None,
            "threshold_low_override": self.threshold_low_override,
            "threshold_high_override": self.threshold_high_override,
            "notes": self.notes,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


def override_key(entity_id: str, tier: ScopeTier, qualifiers: ScopeQualifiers) -> OverrideKey:
    return (entity_id, tier, qualifiers.key())


def format_override_key(key: OverrideKey) -> str:
    entity_id, tier, values = key
    parts = [f"{name}={value}" for name, value in zip(QUALIFIER_FIELDS, values) if value]
    return f"{entity_id}@{tier.value}[{','.join(parts)}]"


@dataclass(frozen=True)
class OverrideChange:
    """
    One entry of the override change log.

    old_value is None for a create, new_value is None for a remove.
    Entries are append-only and outlive the override they describe.
    """

    id: int
    override_id: str
    entity_id: str
    scope_tier: ScopeTier
    scope_key: str
    operation: OverrideOperation
    version: int
    old_value: Optional[Dict[str, Any]] = None
    new_value: Optional[Dict[str, Any]] = None
    actor: Optional[str] = None
    changed_at: datetime = field(default_factory=_utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "override_id": self.override_id,
            "entity_id": self.entity_id,
            "scope_tier": self.scope_tier.value,
            "scope_key": self.scope_key,
            "operation": self.operation.value,
            "version": self.version,
            "old_value": self.old_value,
            "new_value": self.new_value,
            "actor": self.actor,
            "changed_at": self.changed_at.isoformat(),
        }


# ============================================================
# RESOLUTION / OUTPUT TYPES
# ============================================================


@dataclass(frozen=True)
class Resolution:
    """Outcome of scope resolution for one entity."""

    winner: Optional[OverrideRecord] = None
    # Matching records in lower-priority tiers, ignored by precedence
    shadowed: Tuple[OverrideRecord, ...] = ()
    ambiguous: bool = False

    @property
    def has_override(self) -> bool:
        return self.winner is not None


@dataclass(frozen=True)
class ProvenanceStep:
    """One step of the chain producing an effective value."""

    scope: str  # "base" or a ScopeTier value
    multiplier: float
    source_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"scope": self.scope, "multiplier": self.multiplier, "source_id": self.source_id}


@dataclass(frozen=True)
class ClampDiagnostic:
    """Reported when the combined value fell outside the valid range."""

    bound: str  # "min" or "max"
    limit: float
    unclamped_value: float

    @property
    def message(self) -> str:
        return (
            f"Effective value {self.unclamped_value:g} clamped to "
            f"{self.bound} {self.limit:g}"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bound": self.bound,
            "limit": self.limit,
            "unclamped_value": self.unclamped_value,
            "message": self.message,
        }


@dataclass(frozen=True)
class EffectiveValue:
    """
    Derived value actually used for scoring.

    Computed on demand per read; never persisted.
    """

    entity_id: str
    base_value: float
    effective_value: float
    applied_override: Optional[OverrideRecord] = None
    clamp: Optional[ClampDiagnostic] = None

    effective_severity: Optional[RuleSeverity] = None
    effective_threshold_low: Optional[float] = None
    effective_threshold_high: Optional[float] = None

    provenance: Tuple[ProvenanceStep, ...] = ()
    shadowed: Tuple[OverrideRecord, ...] = ()
    # Several records matched in the winning tier
    ambiguous: bool = False
    context: EvaluationContext = field(default_factory=EvaluationContext)

    @property
    def has_override(self) -> bool:
        return self.applied_override is not None

    @property
    def multiplier(self) -> float:
        return self.applied_override.multiplier if self.applied_override else 1.0

    @property
    def was_clamped(self) -> bool:
        return self.clamp is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_id": self.entity_id,
            "base_value": self.base_value,
            "effective_value": self.effective_value,
            "has_override": self.has_override,
            "multiplier": self.multiplier,
            "applied_override": self.applied_override.to_dict() if self.applied_override else None,
            "clamp": self.clamp.to_dict() if self.clamp else None,
            "effective_severity": self.effective_severity.value if self.effective_severity else None,
            "effective_threshold_low": self.effective_threshold_low,
            "effective_threshold_high": self.effective_threshold_high,
            "provenance": [step.to_dict() for step in self.provenance],
            "shadowed_override_ids": [record.id for record in self.shadowed],
            "ambiguous": self.ambiguous,
            "context": self.context.to_dict(),
        }


@dataclass(frozen=True)
class WriteEvent:
    """Published by stores after every successful write."""

    kind: WriteEventKind
    entity_id: str
    version: Optional[int] = None
    occurred_at: datetime = field(default_factory=_utcnow)


@dataclass(frozen=True)
class FamilySummary:
    """Per-family aggregate for registry pages."""

    family: str
    entry_count: int
    total_base_weight: float
    total_effective_weight: float
    overridden_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "family": self.family,
            "entry_count": self.entry_count,
            "total_base_weight": self.total_base_weight,
            "total_effective_weight": self.total_effective_weight,
            "overridden_count": self.overridden_count,
        }
