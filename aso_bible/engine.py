"""
ASO Bible - Effective Value Engine.

============================================================
PURPOSE
============================================================
Combines a registry entry's base value with the most specific
matching override into the value actually used for scoring.

It orchestrates:
1. Registry lookup (unknown ids raise NotFoundError)
2. Scope resolution over the entity's override records
3. Combination and clamping
4. Cache lookup / invalidation

============================================================
COMBINATION RULES
============================================================
- weight:     effective = base * multiplier, then clamped to
              the entity type's effective range. Clamping is
              reported through a ClampDiagnostic, not an error.
- severity:   replaced by the winning override's
              severity_override when set
- thresholds: replaced by the winning override's threshold
              overrides when set

============================================================
USAGE
============================================================
    engine = OverrideResolutionEngine()
    engine.registry.register(RegistryEntry(
        id="kpi.cvr", entity_type=EntityType.KPI, base_weight=1.0,
    ))
    engine.upsert_override(
        "kpi.cvr", ScopeTier.VERTICAL, {"vertical": "fitness"}, 1.8,
    )

    value = engine.compute_effective(
        "kpi.cvr", EvaluationContext(vertical="fitness"),
    )
    value.effective_value   # 1.8

============================================================
"""

from collections import defaultdict
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union
import logging

from core.exceptions import NotFoundError

from .base import BaseOverrideStore, BaseRegistryStore
from .cache import EffectiveValueCache
from .config import AsoBibleConfig, get_config
from .overrides import OverrideStore
from .registry import RegistryStore
from .resolver import ScopeResolver
from .types import (
    ClampDiagnostic,
    EffectiveValue,
    EvaluationContext,
    FamilySummary,
    OverrideChange,
    OverrideRecord,
    ProvenanceStep,
    RegistryEntry,
    RegistryFilter,
    Resolution,
    RuleSeverity,
    ScopeQualifiers,
    ScopeTier,
    parse_scope_tier,
)
from .validation import validate_multiplier_bounds
from .weights import summarize_families


logger = logging.getLogger(__name__)


QualifiersInput = Union[ScopeQualifiers, Mapping[str, Any], None]
ContextInput = Union[EvaluationContext, Mapping[str, Any], None]


def _as_context(context: ContextInput) -> EvaluationContext:
    if context is None:
        return EvaluationContext()
    if isinstance(context, EvaluationContext):
        return context
    return EvaluationContext.from_dict(dict(context))


def _as_qualifiers(qualifiers: QualifiersInput) -> ScopeQualifiers:
    if isinstance(qualifiers, ScopeQualifiers):
        return qualifiers
    return ScopeQualifiers.from_dict(dict(qualifiers or {}))


# ============================================================
# CALCULATOR
# ============================================================


class EffectiveValueCalculator:
    """
    Pure combination of (entry, resolution) into an EffectiveValue.

    Multiply-then-clamp is applied uniformly to every entity type.
    """

    def __init__(self, config: Optional[AsoBibleConfig] = None) -> None:
        self.config = config or get_config()

    def combine(
        self,
        entry: RegistryEntry,
        resolution: Resolution,
        context: Optional[EvaluationContext] = None,
    ) -> EffectiveValue:
        context = context or EvaluationContext()
        override = resolution.winner
        multiplier = override.multiplier if override else 1.0

        unclamped = entry.base_weight * multiplier
        effective, clamp = self._clamp(entry, unclamped)

        severity = entry.base_severity
        low = entry.base_threshold_low
        high = entry.base_threshold_high
        if override is not None:
            severity = override.severity_override or severity
            if override.threshold_low_override is not None:
                low = override.threshold_low_override
            if override.threshold_high_override is not None:
                high = override.threshold_high_override

        provenance = [ProvenanceStep(scope="base", multiplier=1.0, source_id=entry.id)]
        if override is not None:
            provenance.append(
                ProvenanceStep(
                    scope=override.scope_tier.value,
                    multiplier=override.multiplier,
                    source_id=override.id,
                )
            )

        return EffectiveValue(
            entity_id=entry.id,
            base_value=entry.base_weight,
            effective_value=effective,
            applied_override=override,
            clamp=clamp,
            effective_severity=severity,
            effective_threshold_low=low,
            effective_threshold_high=high,
            provenance=tuple(provenance),
            shadowed=resolution.shadowed,
            ambiguous=resolution.ambiguous,
            context=context,
        )

    def _clamp(self, entry: RegistryEntry, value: float):
        low, high = self.config.bounds_for(entry.entity_type).effective_range
        if value > high:
            logger.debug(f"Clamped {entry.id} effective value {value} to max {high}")
            return high, ClampDiagnostic(bound="max", limit=high, unclamped_value=value)
        if value < low:
            logger.debug(f"Clamped {entry.id} effective value {value} to min {low}")
            return low, ClampDiagnostic(bound="min", limit=low, unclamped_value=value)
        return value, None


def compute_effective_value(
    entry: RegistryEntry,
    overrides: Iterable[OverrideRecord],
    context: ContextInput = None,
    config: Optional[AsoBibleConfig] = None,
    strict: Optional[bool] = None,
) -> EffectiveValue:
    """
    Pure function of (entry, override snapshot, context).

    No store or cache is involved; useful for scoring jobs that
    already hold materialized snapshots.
    """
    config = config or get_config()
    context = _as_context(context)
    resolution = ScopeResolver(config.resolver).resolve(entry.id, context, overrides, strict=strict)
    return EffectiveValueCalculator(config).combine(entry, resolution, context)


# ============================================================
# ENGINE
# ============================================================


class OverrideResolutionEngine:
    """
    Entry point used by editors and dashboards.

    ============================================================
    EXPOSED OPERATIONS
    ============================================================
    - compute_effective(entity_id, context)
    - compute_all(context, filter)
    - upsert_override(...)
    - remove_override(override_id)
    - get_override_history(entity_id), get_override_changes(override_id)
    - update_base(...), deprecate(...)
    - family_summaries(context), get_statistics()

    ============================================================
    CACHING
    ============================================================
    The engine subscribes its cache to both stores' write
    events, so writes made directly on a store also drop the
    cached values for the affected entity. A value computed
    across an invalidation is returned but not cached.

    ============================================================
    """

    def __init__(
        self,
        registry: Optional[BaseRegistryStore] = None,
        overrides: Optional[BaseOverrideStore] = None,
        config: Optional[AsoBibleConfig] = None,
        cache: Optional[EffectiveValueCache] = None,
    ) -> None:
        self.config = config or get_config()
        self.registry = registry if registry is not None else RegistryStore(self.config)
        self.overrides = overrides if overrides is not None else OverrideStore()
        self.cache = cache if cache is not None else EffectiveValueCache(self.config.cache)

        self.resolver = ScopeResolver(self.config.resolver)
        self.calculator = EffectiveValueCalculator(self.config)

        self.registry.add_write_listener(self.cache.on_write)
        self.overrides.add_write_listener(self.cache.on_write)

    # --------------------------------------------------------
    # READS
    # --------------------------------------------------------

    def compute_effective(
        self,
        entity_id: str,
        context: ContextInput = None,
        strict: Optional[bool] = None,
    ) -> EffectiveValue:
        """
        Compute the effective value of one entity for a context.

        Raises:
            NotFoundError: Unknown entity id
            AmbiguousOverrideError: Corrupted overrides, strict mode only
        """
        context = _as_context(context)
        generation = self.cache.generation(entity_id)
        entry = self.registry.get_entry(entity_id)

        cached = self.cache.get(entity_id, context)
        # Ambiguous values are re-resolved for strict callers
        if cached is not None and not (cached.ambiguous and self._is_strict(strict)):
            return cached

        records = self.overrides.list_for_entity(entity_id)
        resolution = self.resolver.resolve(entity_id, context, records, strict=strict)
        value = self.calculator.combine(entry, resolution, context)

        self.cache.put(value, generation)
        return value

    def _is_strict(self, strict: Optional[bool]) -> bool:
        return self.config.resolver.strict_mode if strict is None else strict

    def compute_all(
        self,
        context: ContextInput = None,
        filter: Optional[RegistryFilter] = None,
        strict: Optional[bool] = None,
    ) -> List[EffectiveValue]:
        """Effective values for every listed entry, ordered by entity id."""
        context = _as_context(context)
        entries = self.registry.list_entries(filter)

        by_entity: Dict[str, List[OverrideRecord]] = defaultdict(list)
        for record in self.overrides.list_all():
            by_entity[record.entity_id].append(record)

        values = []
        for entry in entries:
            resolution = self.resolver.resolve(
                entry.id, context, by_entity.get(entry.id, []), strict=strict
            )
            values.append(self.calculator.combine(entry, resolution, context))
        return values

    def list_overrides(self, entity_id: str) -> List[OverrideRecord]:
        """Overrides for a known entity, most specific first."""
        self.registry.get_entry(entity_id)
        return self.overrides.list_for_entity(entity_id)

    def family_summaries(
        self,
        context: ContextInput = None,
        filter: Optional[RegistryFilter] = None,
    ) -> List[FamilySummary]:
        values = self.compute_all(context, filter)
        return summarize_families(self.registry.list_entries(filter), values)

    def get_statistics(self) -> Dict[str, Any]:
        """Registry/override counts for admin pages."""
        entries = self.registry.list_entries(RegistryFilter(include_deprecated=True))
        records = self.overrides.list_all()

        by_tier = {tier.value: 0 for tier in ScopeTier.by_specificity()}
        for record in records:
            by_tier[record.scope_tier.value] += 1

        active_entries = [e for e in entries if not e.is_deprecated]
        average = (
            sum(e.base_weight for e in active_entries) / len(active_entries)
            if active_entries
            else 0.0
        )

        return {
            "total_entries": len(entries),
            "deprecated_entries": len(entries) - len(active_entries),
            "total_overrides": len(records),
            "overrides_by_tier": by_tier,
            "overridden_entities": len({r.entity_id for r in records}),
            "average_base_weight": average,
            "cache": self.cache.get_statistics(),
        }

    # --------------------------------------------------------
    # WRITES
    # --------------------------------------------------------

    def upsert_override(
        self,
        entity_id: str,
        scope_tier: Union[ScopeTier, str],
        qualifiers: QualifiersInput,
        multiplier: float,
        expected_version: Optional[int] = None,
        severity_override: Optional[RuleSeverity] = None,
        threshold_low_override: Optional[float] = None,
        threshold_high_override: Optional[float] = None,
        notes: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> OverrideRecord:
        """
        Create or update an override for a registered entity.

        Raises:
            NotFoundError: Unknown entity id
            InvalidScopeError: Qualifiers do not match the tier
            ValidationError: Multiplier outside the entity type's bounds
            ConflictError: expected_version mismatch
        """
        entry = self.registry.get_entry(entity_id)
        tier = parse_scope_tier(scope_tier)
        scope_qualifiers = _as_qualifiers(qualifiers)

        # Shape first so a malformed scope is reported as such
        scope_qualifiers.validate_for(tier)
        validate_multiplier_bounds(multiplier, self.config.bounds_for(entry.entity_type))

        return self.overrides.upsert(
            entity_id,
            tier,
            scope_qualifiers,
            multiplier,
            expected_version=expected_version,
            severity_override=severity_override,
            threshold_low_override=threshold_low_override,
            threshold_high_override=threshold_high_override,
            notes=notes,
            actor=actor,
        )

    def remove_override(self, override_id: str, actor: Optional[str] = None) -> bool:
        return self.overrides.remove(override_id, actor=actor)

    def get_override_history(self, entity_id: str) -> List[OverrideChange]:
        """Change log of every override of an entity, oldest first."""
        self.registry.get_entry(entity_id)
        return self.overrides.list_changes(entity_id=entity_id)

    def get_override_changes(self, override_id: str) -> List[OverrideChange]:
        """
        Change log of one override, oldest first.

        Raises:
            NotFoundError: No change was ever recorded for the id
        """
        changes = self.overrides.list_changes(override_id=override_id)
        if not changes:
            raise NotFoundError("Override", override_id)
        return changes

    def update_base(
        self,
        entity_id: str,
        base_weight: Optional[float] = None,
        base_severity: Optional[RuleSeverity] = None,
        base_threshold_low: Optional[float] = None,
        base_threshold_high: Optional[float] = None,
        expected_version: Optional[int] = None,
    ) -> RegistryEntry:
        return self.registry.update_base(
            entity_id,
            base_weight=base_weight,
            base_severity=base_severity,
            base_threshold_low=base_threshold_low,
            base_threshold_high=base_threshold_high,
            expected_version=expected_version,
        )

    def deprecate(self, entity_id: str, reason: str) -> RegistryEntry:
        return self.registry.deprecate(entity_id, reason)


# ============================================================
# CONVENIENCE FUNCTIONS
# ============================================================


def create_engine_with_defaults(config: Optional[AsoBibleConfig] = None) -> OverrideResolutionEngine:
    """In-memory engine preloaded with the default registry."""
    from .defaults import default_registry_entries

    engine = OverrideResolutionEngine(config=config)
    engine.registry.register_many(default_registry_entries())
    return engine
