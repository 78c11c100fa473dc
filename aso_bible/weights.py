"""
ASO Bible - Family Weight Helpers.

Aggregation helpers used by the registry pages:
- per-family summaries of base vs effective weight
- normalization of a family's weights to a unit sum
"""

from typing import Dict, Iterable, List, Mapping

from .types import EffectiveValue, FamilySummary, RegistryEntry


UNASSIGNED_FAMILY = "unassigned"


def normalize_family_weights(weights: Mapping[str, float]) -> Dict[str, float]:
    """
    Scale weights so they sum to 1.0.

    A zero (or negative) total yields equal weights; an empty
    mapping yields an empty mapping.
    """
    if not weights:
        return {}

    total = sum(weights.values())
    if total <= 0:
        share = 1.0 / len(weights)
        return {key: share for key in weights}

    return {key: value / total for key, value in weights.items()}


def summarize_families(
    entries: Iterable[RegistryEntry],
    values: Iterable[EffectiveValue],
) -> List[FamilySummary]:
    """Group effective values by the family of their entry, ordered by family."""
    family_of = {entry.id: entry.family or UNASSIGNED_FAMILY for entry in entries}

    totals: Dict[str, Dict[str, float]] = {}
    for value in values:
        family = family_of.get(value.entity_id, UNASSIGNED_FAMILY)
        bucket = totals.setdefault(family, {"count": 0, "base": 0.0, "effective": 0.0, "overridden": 0})
        bucket["count"] += 1
        bucket["base"] += value.base_value
        bucket["effective"] += value.effective_value
        if value.has_override:
            bucket["overridden"] += 1

    return [
        FamilySummary(
            family=family,
            entry_count=int(bucket["count"]),
            total_base_weight=bucket["base"],
            total_effective_weight=bucket["effective"],
            overridden_count=int(bucket["overridden"]),
        )
        for family, bucket in sorted(totals.items())
    ]
