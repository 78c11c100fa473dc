"""
ASO Bible - Write Validation.

Checks shared by every store implementation. All functions
raise before any state is touched, so a rejected write never
leaves a partial record behind.
"""

import math
from typing import Optional, Tuple

from core.exceptions import ConflictError, ValidationError

from .config import EntityTypeBounds
from .types import RegistryEntry, ScopeQualifiers, ScopeTier


def _require_number(value: float, field: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{field} must be a number", field=field, value=value)
    if math.isnan(value) or math.isinf(value):
        raise ValidationError(f"{field} must be finite", field=field, value=value)
    return float(value)


def validate_thresholds(low: Optional[float], high: Optional[float], prefix: str = "threshold") -> None:
    if low is not None:
        _require_number(low, f"{prefix}_low")
    if high is not None:
        _require_number(high, f"{prefix}_high")
    if low is not None and high is not None and low > high:
        raise ValidationError(
            f"{prefix}_low {low} exceeds {prefix}_high {high}",
            field=f"{prefix}_low",
            value=low,
            bounds=(low, high),
        )


def validate_override_payload(
    scope_tier: ScopeTier,
    qualifiers: ScopeQualifiers,
    multiplier: float,
    threshold_low: Optional[float] = None,
    threshold_high: Optional[float] = None,
) -> float:
    """
    Validate an override write independent of the entity type.

    Returns:
        The multiplier as float
    """
    qualifiers.validate_for(scope_tier)

    multiplier = _require_number(multiplier, "multiplier")
    if multiplier <= 0:
        raise ValidationError("multiplier must be positive", field="multiplier", value=multiplier)

    validate_thresholds(threshold_low, threshold_high, prefix="threshold")
    return multiplier


def validate_multiplier_bounds(multiplier: float, bounds: EntityTypeBounds) -> None:
    low, high = bounds.multiplier_range
    if not low <= multiplier <= high:
        raise ValidationError(
            f"multiplier {multiplier} outside allowed range {low}-{high}",
            field="multiplier",
            value=multiplier,
            bounds=(low, high),
        )


def weight_bounds_for(entry: RegistryEntry, bounds: EntityTypeBounds) -> Tuple[float, float]:
    """Entity type bounds narrowed by the entry's own bounds, if any."""
    low, high = bounds.weight_range
    if entry.weight_bounds:
        low = max(low, entry.weight_bounds[0])
        high = min(high, entry.weight_bounds[1])
    return low, high


def validate_base_weight(weight: float, entry: RegistryEntry, bounds: EntityTypeBounds) -> float:
    weight = _require_number(weight, "base_weight")
    if weight <= 0:
        raise ValidationError("base_weight must be positive", field="base_weight", value=weight)

    low, high = weight_bounds_for(entry, bounds)
    if not low <= weight <= high:
        raise ValidationError(
            f"base_weight {weight} outside allowed range {low}-{high} for {entry.id}",
            field="base_weight",
            value=weight,
            bounds=(low, high),
        )
    return weight


def check_expected_version(key: str, expected_version: Optional[int], actual_version: int) -> None:
    """Optimistic-concurrency check; absent records have version 0."""
    if expected_version is not None and expected_version != actual_version:
        raise ConflictError(key, expected_version, actual_version)
