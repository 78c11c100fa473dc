"""
Pydantic Schemas for the ASO Bible Admin API.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from .types import EntityType, OverrideOperation, RuleSeverity, ScopeTier


# =============================================================
# SCOPE SCHEMAS
# =============================================================

class QualifiersSchema(BaseModel):
    """Scope qualifiers; the required set depends on the tier."""
    vertical: Optional[str] = None
    market: Optional[str] = None
    organization_id: Optional[str] = None
    app_id: Optional[str] = None

    class Config:
        from_attributes = True


# =============================================================
# REGISTRY SCHEMAS
# =============================================================

class RegistryEntryResponse(BaseModel):
    """Base definition of a scoring entity."""
    id: str
    entity_type: EntityType
    base_weight: float
    family: Optional[str] = None
    base_severity: Optional[RuleSeverity] = None
    base_threshold_low: Optional[float] = None
    base_threshold_high: Optional[float] = None
    weight_bounds: Optional[List[float]] = None
    description: str = ""
    notes: Optional[str] = None
    tags: List[str] = []
    version: int
    is_deprecated: bool = False
    deprecated_reason: Optional[str] = None
    updated_at: datetime

    class Config:
        from_attributes = True


class BaseUpdateRequest(BaseModel):
    """Admin edit of an entry's base values. Unset fields are kept."""
    base_weight: Optional[float] = Field(None, gt=0)
    base_severity: Optional[RuleSeverity] = None
    base_threshold_low: Optional[float] = None
    base_threshold_high: Optional[float] = None
    expected_version: Optional[int] = Field(None, ge=0)


class DeprecateRequest(BaseModel):
    """Deprecation of a registry entry."""
    reason: str = Field(..., min_length=1)


# =============================================================
# OVERRIDE SCHEMAS
# =============================================================

class OverrideUpsertRequest(BaseModel):
    """Create or update the override for a scope key."""
    entity_id: str
    scope_tier: ScopeTier
    qualifiers: QualifiersSchema
    multiplier: float = Field(..., gt=0)
    expected_version: Optional[int] = Field(None, ge=0)
    severity_override: Optional[RuleSeverity] = None
    threshold_low_override: Optional[float] = None
    threshold_high_override: Optional[float] = None
    notes: Optional[str] = None
    actor: Optional[str] = Field(None, max_length=200)


class OverrideResponse(BaseModel):
    """Stored override record."""
    id: str
    entity_id: str
    scope_tier: ScopeTier
    qualifiers: QualifiersSchema
    multiplier: float
    version: int
    is_active: bool
    severity_override: Optional[RuleSeverity] = None
    threshold_low_override: Optional[float] = None
    threshold_high_override: Optional[float] = None
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class OverrideRemoveResponse(BaseModel):
    """Result of an idempotent removal."""
    override_id: str
    removed: bool


class OverrideChangeResponse(BaseModel):
    """One entry of the override change log."""
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
    changed_at: datetime

    class Config:
        from_attributes = True


# =============================================================
# EFFECTIVE VALUE SCHEMAS
# =============================================================

class ProvenanceStepSchema(BaseModel):
    scope: str
    multiplier: float
    source_id: Optional[str] = None


class ClampSchema(BaseModel):
    bound: str  # min, max
    limit: float
    unclamped_value: float
    message: str


class EffectiveValueResponse(BaseModel):
    """Computed effective value with provenance."""
    entity_id: str
    base_value: float
    effective_value: float
    has_override: bool
    multiplier: float
    applied_override: Optional[OverrideResponse] = None
    clamp: Optional[ClampSchema] = None
    effective_severity: Optional[RuleSeverity] = None
    effective_threshold_low: Optional[float] = None
    effective_threshold_high: Optional[float] = None
    provenance: List[ProvenanceStepSchema] = []
    shadowed_override_ids: List[str] = []
    ambiguous: bool = False
    context: QualifiersSchema


class FamilySummaryResponse(BaseModel):
    family: str
    entry_count: int
    total_base_weight: float
    total_effective_weight: float
    overridden_count: int

    class Config:
        from_attributes = True


# =============================================================
# STATISTICS
# =============================================================

class StatsResponse(BaseModel):
    """Registry and override statistics for admin pages."""
    total_entries: int
    deprecated_entries: int
    total_overrides: int
    overrides_by_tier: Dict[str, int]
    overridden_entities: int
    average_base_weight: float
    cache: Dict[str, Any]
