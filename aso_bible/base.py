"""
ASO Bible - Store Interfaces.

============================================================
ABSTRACT STORES
============================================================

Defines the contracts shared by the in-memory stores and
the SQL-backed stores:
- BaseRegistryStore: base definitions of scoring entities
- BaseOverrideStore: scoped override records

Both publish a WriteEvent to registered listeners after
every successful write so that cached effective values
for the affected entity are invalidated. SQL stores hold
the events until the session commits and drop them on
rollback.

============================================================
"""

from abc import ABC, abstractmethod
from typing import Callable, Iterable, List, Optional, Sequence
import logging

from core.exceptions import NotFoundError

from .types import (
    OverrideChange,
    OverrideRecord,
    RegistryEntry,
    RegistryFilter,
    RuleSeverity,
    ScopeQualifiers,
    ScopeTier,
    WriteEvent,
)


logger = logging.getLogger(__name__)


WriteListener = Callable[[WriteEvent], None]


class WriteNotifier:
    """Listener bookkeeping shared by all stores."""

    def __init__(self) -> None:
        self._write_listeners: List[WriteListener] = []

    def add_write_listener(self, listener: WriteListener) -> None:
        """Register a callback invoked after every successful write."""
        if listener not in self._write_listeners:
            self._write_listeners.append(listener)

    def _publish(self, event: WriteEvent) -> None:
        """Announce a successful write. SQL stores defer this to commit."""
        self._deliver(event)

    def _deliver(self, event: WriteEvent) -> None:
        for listener in list(self._write_listeners):
            try:
                listener(event)
            except Exception as e:
                logger.error(f"Write listener failed for {event.kind.value} {event.entity_id}: {e}")


# =============================================================
# REGISTRY STORE
# =============================================================


class BaseRegistryStore(WriteNotifier, ABC):
    """
    Contract for the registry of base definitions.

    Reads never fail except for an unknown id (NotFoundError).
    Writes are admin-only. Implementations validate base weights
    against the entry and entity type bounds before storing.
    """

    @abstractmethod
    def get_entry(self, entity_id: str) -> RegistryEntry:
        """Return the current entry or raise NotFoundError."""

    @abstractmethod
    def list_entries(self, filter: Optional[RegistryFilter] = None) -> List[RegistryEntry]:
        """List entries ordered by id."""

    @abstractmethod
    def register(self, entry: RegistryEntry) -> RegistryEntry:
        """Add a new entry. Raises ValidationError if the id exists."""

    @abstractmethod
    def update_base(
        self,
        entity_id: str,
        base_weight: Optional[float] = None,
        base_severity: Optional[RuleSeverity] = None,
        base_threshold_low: Optional[float] = None,
        base_threshold_high: Optional[float] = None,
        expected_version: Optional[int] = None,
    ) -> RegistryEntry:
        """Create a new version of an entry's base values."""

    @abstractmethod
    def deprecate(self, entity_id: str, reason: str) -> RegistryEntry:
        """Mark an entry as deprecated (never deleted)."""

    @abstractmethod
    def get_history(self, entity_id: str) -> List[RegistryEntry]:
        """All versions of an entry, oldest first, current last."""

    def has_entry(self, entity_id: str) -> bool:
        try:
            self.get_entry(entity_id)
        except NotFoundError:
            return False
        return True

    def register_many(self, entries: Iterable[RegistryEntry]) -> List[RegistryEntry]:
        return [self.register(entry) for entry in entries]


# =============================================================
# OVERRIDE STORE
# =============================================================


class BaseOverrideStore(WriteNotifier, ABC):
    """
    Contract for scoped override records.

    At most one active record exists per
    (entity id, scope tier, full qualifier tuple).
    """

    @abstractmethod
    def upsert(
        self,
        entity_id: str,
        scope_tier: ScopeTier,
        qualifiers: ScopeQualifiers,
        multiplier: float,
        expected_version: Optional[int] = None,
        severity_override: Optional[RuleSeverity] = None,
        threshold_low_override: Optional[float] = None,
        threshold_high_override: Optional[float] = None,
        notes: Optional[str] = None,
        actor: Optional[str] = None,
    ) -> OverrideRecord:
        """
        Create or update the override for a scope key.

        Creates version 1 when absent, otherwise increments the
        version by exactly 1. Every call appends to the change log.

        Raises:
            InvalidScopeError: Qualifiers do not match the tier
            ValidationError: Non-positive multiplier, inverted thresholds
            ConflictError: expected_version does not match, or the
                key was created concurrently
        """

    @abstractmethod
    def remove(self, override_id: str, actor: Optional[str] = None) -> bool:
        """Delete a record. Idempotent; False if it did not exist."""

    @abstractmethod
    def get(self, override_id: str) -> Optional[OverrideRecord]:
        """Return a record by id or None."""

    @abstractmethod
    def list_for_entity(self, entity_id: str) -> List[OverrideRecord]:
        """Records for an entity, most specific tier first."""

    @abstractmethod
    def list_all(self) -> List[OverrideRecord]:
        """Every record, most specific tier first."""

    @abstractmethod
    def list_changes(
        self,
        entity_id: Optional[str] = None,
        override_id: Optional[str] = None,
    ) -> List[OverrideChange]:
        """Change log entries, oldest first, optionally filtered."""


def sort_by_specificity(records: Sequence[OverrideRecord]) -> List[OverrideRecord]:
    """Order app, client, market, vertical; then newest version first."""
    return sorted(
        records,
        key=lambda r: (-r.scope_tier.specificity, r.entity_id, -r.version, r.id),
    )
