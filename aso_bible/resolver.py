"""
ASO Bible - Scope Resolver.

============================================================
PURPOSE
============================================================
Selects the single most specific override that applies to
an entity for a given evaluation context.

============================================================
ALGORITHM
============================================================
Tiers are evaluated in strict priority order:

1. app      - record.app_id == context.app_id
2. client   - record.organization_id == context.organization_id
3. market   - record.vertical == context.vertical
              and record.market == context.market
4. vertical - record.vertical == context.vertical

The first tier with a matching active record wins; matches
in lower tiers are reported as shadowed. Precedence is about
tier availability, not about which context fields are set:
a context with app_id but no app-tier record falls through.

An empty context never matches anything.

============================================================
AMBIGUITY
============================================================
The override store guarantees at most one active record per
key. If a snapshot still carries several matches in the
winning tier, the highest version wins (non-strict) or
AmbiguousOverrideError is raised (strict).

============================================================
"""

from typing import Dict, Iterable, List, Optional
import logging

from core.exceptions import AmbiguousOverrideError

from .config import ResolverConfig
from .types import EvaluationContext, OverrideRecord, Resolution, ScopeTier


logger = logging.getLogger(__name__)


def record_matches(record: OverrideRecord, context: EvaluationContext) -> bool:
    """Check whether an override applies to the context at its own tier."""
    if not record.is_active:
        return False

    q = record.qualifiers
    tier = record.scope_tier

    if tier == ScopeTier.APP:
        return context.app_id is not None and q.app_id == context.app_id
    if tier == ScopeTier.CLIENT:
        return context.organization_id is not None and q.organization_id == context.organization_id
    if tier == ScopeTier.MARKET:
        return (
            context.vertical is not None
            and context.market is not None
            and q.vertical == context.vertical
            and q.market == context.market
        )
    if tier == ScopeTier.VERTICAL:
        return context.vertical is not None and q.vertical == context.vertical
    return False


def _pick_newest(records: List[OverrideRecord]) -> OverrideRecord:
    return max(records, key=lambda r: (r.version, r.updated_at, r.id))


class ScopeResolver:
    """
    Pure resolver over an explicit snapshot of override records.

    Holds no state besides its configuration; callers pass the
    records to consider on every call.
    """

    def __init__(self, config: Optional[ResolverConfig] = None) -> None:
        self.config = config or ResolverConfig()

    def resolve(
        self,
        entity_id: str,
        context: EvaluationContext,
        overrides: Iterable[OverrideRecord],
        strict: Optional[bool] = None,
    ) -> Resolution:
        """
        Resolve the applicable override for one entity.

        Args:
            entity_id: Registry entity id
            context: Evaluation context
            overrides: Snapshot of records (other entities are ignored)
            strict: Overrides config.strict_mode for this call

        Returns:
            Resolution with the winning record (or none) and shadowed matches

        Raises:
            AmbiguousOverrideError: Several matches in the winning tier (strict only)
        """
        if context.is_empty:
            return Resolution()

        strict = self.config.strict_mode if strict is None else strict

        matches: Dict[ScopeTier, List[OverrideRecord]] = {}
        for record in overrides:
            if record.entity_id != entity_id:
                continue
            if record_matches(record, context):
                matches.setdefault(record.scope_tier, []).append(record)

        if not matches:
            return Resolution()

        winner: Optional[OverrideRecord] = None
        ambiguous = False
        shadowed: List[OverrideRecord] = []

        for tier in ScopeTier.by_specificity():
            tier_matches = matches.get(tier, [])
            if not tier_matches:
                continue

            if winner is not None:
                shadowed.extend(sorted(tier_matches, key=lambda r: -r.version))
                continue

            if len(tier_matches) > 1:
                ambiguous = True
                ids = [r.id for r in tier_matches]
                if strict:
                    raise AmbiguousOverrideError(entity_id, tier.value, ids)
                logger.warning(
                    f"Ambiguous {tier.value} overrides for {entity_id}: {ids}; "
                    f"using highest version"
                )

            winner = _pick_newest(tier_matches)
            shadowed.extend(
                sorted((r for r in tier_matches if r is not winner), key=lambda r: -r.version)
            )

        return Resolution(winner=winner, shadowed=tuple(shadowed), ambiguous=ambiguous)


def resolve_override(
    entity_id: str,
    context: EvaluationContext,
    overrides: Iterable[OverrideRecord],
    strict: bool = False,
) -> Resolution:
    """Functional shortcut around ScopeResolver.resolve."""
    return ScopeResolver(ResolverConfig(strict_mode=strict)).resolve(entity_id, context, overrides)
