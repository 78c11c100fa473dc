"""
ASO Bible - Default Registry.

Built-in base definitions loaded by scripts/seed_registry.py
and by create_engine_with_defaults(). Weights follow the
metadata scoring registry; rule thresholds are percentages.
"""

from typing import List

from .types import EntityType, RegistryEntry, RuleSeverity


def _kpi(entity_id: str, weight: float, family: str, description: str, *tags: str) -> RegistryEntry:
    return RegistryEntry(
        id=entity_id,
        entity_type=EntityType.KPI,
        base_weight=weight,
        family=family,
        weight_bounds=(0.5, 2.0),
        description=description,
        tags=tags,
    )


def _rule(
    entity_id: str,
    weight: float,
    severity: RuleSeverity,
    low: float,
    high: float,
    description: str,
    *tags: str,
) -> RegistryEntry:
    return RegistryEntry(
        id=entity_id,
        entity_type=EntityType.RULE,
        base_weight=weight,
        family="ranking",
        base_severity=severity,
        base_threshold_low=low,
        base_threshold_high=high,
        description=description,
        tags=tags,
    )


def default_registry_entries() -> List[RegistryEntry]:
    """Return a fresh list of the default registry entries."""
    return [
        # KPIs
        _kpi("kpi.cvr", 1.0, "conversion", "Install conversion rate", "conversion"),
        _kpi("kpi.title_keyword_coverage", 1.0, "coverage", "Share of target keywords in the title", "title"),
        _kpi("kpi.subtitle_keyword_coverage", 0.8, "coverage", "Share of target keywords in the subtitle", "subtitle"),
        _kpi("kpi.combo_coverage", 1.2, "coverage", "Keyword combinations reachable from title + subtitle", "title", "subtitle"),
        _kpi("kpi.brand_balance", 0.7, "brand", "Balance of brand vs generic terms", "brand"),

        # Intent patterns
        RegistryEntry(
            id="intent.informational",
            entity_type=EntityType.INTENT_PATTERN,
            base_weight=1.0,
            family="intent",
            description="Learn / how-to queries",
            tags=("intent",),
        ),
        RegistryEntry(
            id="intent.transactional",
            entity_type=EntityType.INTENT_PATTERN,
            base_weight=1.2,
            family="intent",
            description="Download / try / free queries",
            tags=("intent",),
        ),
        RegistryEntry(
            id="intent.navigational",
            entity_type=EntityType.INTENT_PATTERN,
            base_weight=0.6,
            family="intent",
            description="Brand and app name queries",
            tags=("intent", "brand"),
        ),

        # Rule evaluators
        _rule(
            "title_character_usage", 0.25, RuleSeverity.MODERATE, 70.0, 100.0,
            "How well the title uses its 30 characters", "title",
        ),
        _rule(
            "title_unique_keywords", 0.30, RuleSeverity.STRONG, 3.0, 6.0,
            "Meaningful keyword coverage in the title", "title",
        ),
        _rule(
            "title_filler_penalty", 0.15, RuleSeverity.MODERATE, 0.0, 20.0,
            "Penalty for filler words in the title", "title",
        ),
        _rule(
            "subtitle_incremental_value", 0.40, RuleSeverity.CRITICAL, 50.0, 100.0,
            "New keywords the subtitle adds beyond the title", "subtitle",
        ),

        # Formula components
        RegistryEntry(
            id="formula.title_score",
            entity_type=EntityType.FORMULA_COMPONENT,
            base_weight=0.65,
            family="metadata_score",
            description="Title share of the metadata score",
        ),
        RegistryEntry(
            id="formula.subtitle_score",
            entity_type=EntityType.FORMULA_COMPONENT,
            base_weight=0.35,
            family="metadata_score",
            description="Subtitle share of the metadata score",
        ),
    ]
