"""
FastAPI Router for ASO Bible Admin Endpoints.

Provides REST API for the registry and override editors:
- Browse registry entries and their history
- Edit base values, deprecate entries
- Create, update and remove scoped overrides
- Read the override change log
- Compute effective values for an evaluation context
"""

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from core.exceptions import (
    AmbiguousOverrideError,
    AsoBibleError,
    ConflictError,
    InvalidScopeError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from database.engine import get_session, transaction_scope

from .cache import EffectiveValueCache
from .config import get_config
from .engine import OverrideResolutionEngine
from .repository import SqlOverrideStore, SqlRegistryStore
from .schemas import (
    BaseUpdateRequest,
    DeprecateRequest,
    EffectiveValueResponse,
    FamilySummaryResponse,
    OverrideChangeResponse,
    OverrideRemoveResponse,
    OverrideResponse,
    OverrideUpsertRequest,
    RegistryEntryResponse,
    StatsResponse,
)
from .types import EntityType, EvaluationContext, RegistryFilter

router = APIRouter(prefix="/aso-bible", tags=["ASO Bible"])


# =============================================================
# HELPER: Database dependency
# =============================================================

def get_db():
    db = get_session()
    try:
        yield db
    finally:
        db.close()


# =============================================================
# HELPER: Engine instance
# =============================================================

_shared_cache: Optional[EffectiveValueCache] = None


def get_shared_cache() -> EffectiveValueCache:
    """Process-wide cache; per-request stores invalidate it on write."""
    global _shared_cache
    if _shared_cache is None:
        _shared_cache = EffectiveValueCache(get_config().cache)
    return _shared_cache


def get_override_engine(db: Session = Depends(get_db)) -> OverrideResolutionEngine:
    config = get_config()
    return OverrideResolutionEngine(
        registry=SqlRegistryStore(db, config),
        overrides=SqlOverrideStore(db),
        config=config,
        cache=get_shared_cache(),
    )


def get_context(
    vertical: Optional[str] = Query(None, description="Vertical, e.g. fitness"),
    market: Optional[str] = Query(None, description="Market code, e.g. us"),
    organization_id: Optional[str] = Query(None, description="Client organization id"),
    app_id: Optional[str] = Query(None, description="App id"),
) -> EvaluationContext:
    return EvaluationContext(
        vertical=vertical,
        market=market,
        organization_id=organization_id,
        app_id=app_id,
    )


# =============================================================
# HELPER: Error mapping
# =============================================================

def to_http_exception(error: AsoBibleError) -> HTTPException:
    """Map engine errors onto HTTP status codes."""
    if isinstance(error, NotFoundError):
        code = 404
    elif isinstance(error, InvalidScopeError):
        code = 400
    elif isinstance(error, ValidationError):
        code = 422
    elif isinstance(error, (ConflictError, AmbiguousOverrideError)):
        code = 409
    elif isinstance(error, PersistenceError):
        code = 500
    else:
        code = 400
    return HTTPException(status_code=code, detail=error.to_dict())


# =============================================================
# REGISTRY ENDPOINTS
# =============================================================

@router.get("/entries", response_model=List[RegistryEntryResponse])
def list_entries(
    entity_type: Optional[EntityType] = Query(None, description="Filter by entity type"),
    family: Optional[str] = Query(None, description="Filter by family"),
    tag: Optional[str] = Query(None, description="Filter by tag"),
    include_deprecated: bool = Query(False),
    engine: OverrideResolutionEngine = Depends(get_override_engine),
):
    """List registry entries ordered by id."""
    entries = engine.registry.list_entries(
        RegistryFilter(
            entity_type=entity_type,
            family=family,
            tag=tag,
            include_deprecated=include_deprecated,
        )
    )
    return [RegistryEntryResponse.model_validate(e) for e in entries]


@router.get("/entries/{entity_id}", response_model=RegistryEntryResponse)
def get_entry(
    entity_id: str,
    engine: OverrideResolutionEngine = Depends(get_override_engine),
):
    """Get the current base definition of an entity."""
    try:
        return RegistryEntryResponse.model_validate(engine.registry.get_entry(entity_id))
    except AsoBibleError as e:
        raise to_http_exception(e) from e


@router.get("/entries/{entity_id}/history", response_model=List[RegistryEntryResponse])
def get_entry_history(
    entity_id: str,
    engine: OverrideResolutionEngine = Depends(get_override_engine),
):
    """All versions of an entry, oldest first."""
    try:
        history = engine.registry.get_history(entity_id)
    except AsoBibleError as e:
        raise to_http_exception(e) from e
    return [RegistryEntryResponse.model_validate(e) for e in history]


@router.put("/entries/{entity_id}/base", response_model=RegistryEntryResponse)
def update_base(
    entity_id: str,
    update: BaseUpdateRequest,
    db: Session = Depends(get_db),
    engine: OverrideResolutionEngine = Depends(get_override_engine),
):
    """
    Edit an entry's base values.

    Produces a new entry version; the prior version is archived.
    """
    try:
        with transaction_scope(db):
            entry = engine.update_base(
                entity_id,
                base_weight=update.base_weight,
                base_severity=update.base_severity,
                base_threshold_low=update.base_threshold_low,
                base_threshold_high=update.base_threshold_high,
                expected_version=update.expected_version,
            )
    except AsoBibleError as e:
        raise to_http_exception(e) from e
    return RegistryEntryResponse.model_validate(entry)


@router.post("/entries/{entity_id}/deprecate", response_model=RegistryEntryResponse)
def deprecate_entry(
    entity_id: str,
    request: DeprecateRequest,
    db: Session = Depends(get_db),
    engine: OverrideResolutionEngine = Depends(get_override_engine),
):
    """Mark an entry as deprecated. Entries are never deleted."""
    try:
        with transaction_scope(db):
            entry = engine.deprecate(entity_id, request.reason)
    except AsoBibleError as e:
        raise to_http_exception(e) from e
    return RegistryEntryResponse.model_validate(entry)


# =============================================================
# EFFECTIVE VALUE ENDPOINTS
# =============================================================

@router.get("/entries/{entity_id}/effective", response_model=EffectiveValueResponse)
def get_effective_value(
    entity_id: str,
    context: EvaluationContext = Depends(get_context),
    engine: OverrideResolutionEngine = Depends(get_override_engine),
):
    """
    Compute the effective value of one entity.

    Returns the value with the applied override, any clamp
    diagnostic, provenance and shadowed overrides.
    """
    try:
        value = engine.compute_effective(entity_id, context)
    except AsoBibleError as e:
        raise to_http_exception(e) from e
    return EffectiveValueResponse.model_validate(value.to_dict())


@router.get("/effective", response_model=List[EffectiveValueResponse])
def get_all_effective_values(
    entity_type: Optional[EntityType] = Query(None),
    family: Optional[str] = Query(None),
    context: EvaluationContext = Depends(get_context),
    engine: OverrideResolutionEngine = Depends(get_override_engine),
):
    """Effective values for every active entry."""
    try:
        values = engine.compute_all(context, RegistryFilter(entity_type=entity_type, family=family))
    except AsoBibleError as e:
        raise to_http_exception(e) from e
    return [EffectiveValueResponse.model_validate(v.to_dict()) for v in values]


@router.get("/families", response_model=List[FamilySummaryResponse])
def get_family_summaries(
    entity_type: Optional[EntityType] = Query(None),
    context: EvaluationContext = Depends(get_context),
    engine: OverrideResolutionEngine = Depends(get_override_engine),
):
    """Per-family base vs effective weight totals."""
    try:
        summaries = engine.family_summaries(context, RegistryFilter(entity_type=entity_type))
    except AsoBibleError as e:
        raise to_http_exception(e) from e
    return [FamilySummaryResponse.model_validate(s) for s in summaries]


# =============================================================
# OVERRIDE ENDPOINTS
# =============================================================

@router.get("/entries/{entity_id}/overrides", response_model=List[OverrideResponse])
def list_overrides(
    entity_id: str,
    engine: OverrideResolutionEngine = Depends(get_override_engine),
):
    """Overrides of an entity, most specific tier first."""
    try:
        records = engine.list_overrides(entity_id)
    except AsoBibleError as e:
        raise to_http_exception(e) from e
    return [OverrideResponse.model_validate(r) for r in records]


@router.get("/entries/{entity_id}/overrides/history", response_model=List[OverrideChangeResponse])
def get_override_history(
    entity_id: str,
    engine: OverrideResolutionEngine = Depends(get_override_engine),
):
    """Change log of every override of an entity, oldest first."""
    try:
        changes = engine.get_override_history(entity_id)
    except AsoBibleError as e:
        raise to_http_exception(e) from e
    return [OverrideChangeResponse.model_validate(c) for c in changes]


@router.put("/overrides", response_model=OverrideResponse)
def upsert_override(
    request: OverrideUpsertRequest,
    db: Session = Depends(get_db),
    engine: OverrideResolutionEngine = Depends(get_override_engine),
):
    """
    Create or update the override for a scope key.

    Validates:
    - Entity exists
    - Qualifiers match the tier exactly
    - Multiplier is within the entity type's bounds
    - expected_version, when given, matches the stored version
    """
    try:
        with transaction_scope(db):
            record = engine.upsert_override(
                request.entity_id,
                request.scope_tier,
                request.qualifiers.model_dump(),
                request.multiplier,
                expected_version=request.expected_version,
                severity_override=request.severity_override,
                threshold_low_override=request.threshold_low_override,
                threshold_high_override=request.threshold_high_override,
                notes=request.notes,
                actor=request.actor,
            )
    except AsoBibleError as e:
        raise to_http_exception(e) from e
    return OverrideResponse.model_validate(record)


@router.delete("/overrides/{override_id}", response_model=OverrideRemoveResponse)
def remove_override(
    override_id: str,
    actor: Optional[str] = Query(None, description="Who removed the override"),
    db: Session = Depends(get_db),
    engine: OverrideResolutionEngine = Depends(get_override_engine),
):
    """Remove an override. Removing an unknown id is not an error."""
    try:
        with transaction_scope(db):
            removed = engine.remove_override(override_id, actor=actor)
    except AsoBibleError as e:
        raise to_http_exception(e) from e
    return OverrideRemoveResponse(override_id=override_id, removed=removed)


@router.get("/overrides/{override_id}/history", response_model=List[OverrideChangeResponse])
def get_override_changes(
    override_id: str,
    engine: OverrideResolutionEngine = Depends(get_override_engine),
):
    """Change log of one override, oldest first. Kept after removal."""
    try:
        changes = engine.get_override_changes(override_id)
    except AsoBibleError as e:
        raise to_http_exception(e) from e
    return [OverrideChangeResponse.model_validate(c) for c in changes]


# =============================================================
# STATISTICS ENDPOINTS
# =============================================================

@router.get("/stats", response_model=StatsResponse)
def get_statistics(
    engine: OverrideResolutionEngine = Depends(get_override_engine),
):
    """Registry and override counts."""
    return StatsResponse(**engine.get_statistics())
