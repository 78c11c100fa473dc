"""
ASO Bible - Scoped Override Engine.

============================================================
PURPOSE
============================================================
Resolves the effective weights, severities and thresholds of
ASO scoring entities (KPIs, intent patterns, rule evaluators,
formula components) for a given evaluation context.

============================================================
SCOPE TIERS
============================================================
Overrides may be attached at four tiers, most specific first:

    app > client > market > vertical

The most specific matching override wins outright; lower
tiers are shadowed, not stacked.

============================================================
COMBINATION
============================================================
- weight:     base * multiplier, clamped to the entity type's
              effective range (clamping is reported)
- severity:   replaced by the winning override when set
- thresholds: replaced by the winning override when set

============================================================
USAGE
============================================================
    from aso_bible import (
        EvaluationContext,
        OverrideResolutionEngine,
        ScopeTier,
        create_engine_with_defaults,
    )

    engine = create_engine_with_defaults()
    engine.upsert_override(
        "kpi.cvr", ScopeTier.VERTICAL, {"vertical": "fitness"}, 1.8,
    )

    value = engine.compute_effective(
        "kpi.cvr", EvaluationContext(vertical="fitness"),
    )
    print(value.effective_value)   # 1.8

============================================================
"""

from .types import (
    ClampDiagnostic,
    EffectiveValue,
    EntityType,
    EvaluationContext,
    FamilySummary,
    OverrideChange,
    OverrideOperation,
    OverrideRecord,
    ProvenanceStep,
    RegistryEntry,
    RegistryFilter,
    Resolution,
    RuleSeverity,
    ScopeQualifiers,
    ScopeTier,
    WriteEvent,
    WriteEventKind,
    parse_scope_tier,
)
from .config import (
    AsoBibleConfig,
    CacheConfig,
    EntityTypeBounds,
    ResolverConfig,
    get_config,
    set_config,
)
from .base import BaseOverrideStore, BaseRegistryStore
from .registry import RegistryStore
from .overrides import OverrideStore
from .resolver import ScopeResolver, record_matches, resolve_override
from .cache import EffectiveValueCache
from .weights import normalize_family_weights, summarize_families
from .engine import (
    EffectiveValueCalculator,
    OverrideResolutionEngine,
    compute_effective_value,
    create_engine_with_defaults,
)
from .repository import SqlOverrideStore, SqlRegistryStore
from .defaults import default_registry_entries


__version__ = "1.0.0"

__all__ = [
    # Types
    "ClampDiagnostic",
    "EffectiveValue",
    "EntityType",
    "EvaluationContext",
    "FamilySummary",
    "OverrideChange",
    "OverrideOperation",
    "OverrideRecord",
    "ProvenanceStep",
    "RegistryEntry",
    "RegistryFilter",
    "Resolution",
    "RuleSeverity",
    "ScopeQualifiers",
    "ScopeTier",
    "WriteEvent",
    "WriteEventKind",
    "parse_scope_tier",
    # Config
    "AsoBibleConfig",
    "CacheConfig",
    "EntityTypeBounds",
    "ResolverConfig",
    "get_config",
    "set_config",
    # Stores
    "BaseOverrideStore",
    "BaseRegistryStore",
    "RegistryStore",
    "OverrideStore",
    "SqlOverrideStore",
    "SqlRegistryStore",
    # Resolution
    "ScopeResolver",
    "record_matches",
    "resolve_override",
    "EffectiveValueCache",
    "EffectiveValueCalculator",
    "OverrideResolutionEngine",
    "compute_effective_value",
    "create_engine_with_defaults",
    "normalize_family_weights",
    "summarize_families",
    "default_registry_entries",
]
