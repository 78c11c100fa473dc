"""
ASO Bible - Registry Store.

============================================================
IN-MEMORY REGISTRY OF BASE DEFINITIONS
============================================================

Holds the base definition of every scoring entity (KPIs,
intent patterns, rule evaluators, formula components):
- Registration of new entries
- Versioned base edits with full history
- Deprecation (entries are never deleted)
- Filtered listing

Read-only at evaluation time.

============================================================
THREAD SAFETY
============================================================

All operations are thread-safe for concurrent access.

============================================================
"""

import threading
from dataclasses import replace
from datetime import datetime, timezone
from typing import Dict, List, Optional
import logging

from core.exceptions import NotFoundError, ValidationError

from .base import BaseRegistryStore
from .config import AsoBibleConfig, get_config
from .types import (
    RegistryEntry,
    RegistryFilter,
    RuleSeverity,
    WriteEvent,
    WriteEventKind,
)
from .validation import (
    check_expected_version,
    validate_base_weight,
    validate_thresholds,
)


logger = logging.getLogger(__name__)


class RegistryStore(BaseRegistryStore):
    """
    In-memory registry store.

    ============================================================
    USAGE
    ============================================================

    ```python
    registry = RegistryStore()
    registry.register(RegistryEntry(
        id="kpi.cvr",
        entity_type=EntityType.KPI,
        base_weight=1.0,
        family="conversion",
    ))

    entry = registry.get_entry("kpi.cvr")
    registry.update_base("kpi.cvr", base_weight=1.2)
    ```

    ============================================================
    """

    def __init__(self, config: Optional[AsoBibleConfig] = None) -> None:
        super().__init__()
        self._config = config or get_config()
        self._entries: Dict[str, RegistryEntry] = {}
        self._history: Dict[str, List[RegistryEntry]] = {}
        self._lock = threading.RLock()

    # =========================================================
    # READS
    # =========================================================

    def get_entry(self, entity_id: str) -> RegistryEntry:
        with self._lock:
            entry = self._entries.get(entity_id)
        if entry is None:
            raise NotFoundError("RegistryEntry", entity_id)
        return entry

    def list_entries(self, filter: Optional[RegistryFilter] = None) -> List[RegistryEntry]:
        filter = filter or RegistryFilter()
        with self._lock:
            entries = list(self._entries.values())
        return sorted((e for e in entries if filter.matches(e)), key=lambda e: e.id)

    def get_history(self, entity_id: str) -> List[RegistryEntry]:
        with self._lock:
            current = self.get_entry(entity_id)
            return list(self._history.get(entity_id, [])) + [current]

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    # =========================================================
    # WRITES
    # =========================================================

    def register(self, entry: RegistryEntry) -> RegistryEntry:
        """
        Add a new entry.

        Raises:
            ValidationError: Duplicate id or base weight out of bounds
        """
        bounds = self._config.bounds_for(entry.entity_type)
        validate_base_weight(entry.base_weight, entry, bounds)
        validate_thresholds(entry.base_threshold_low, entry.base_threshold_high, prefix="base_threshold")

        with self._lock:
            if entry.id in self._entries:
                raise ValidationError(
                    f"Registry entry already exists: {entry.id}",
                    field="id",
                    value=entry.id,
                )
            self._entries[entry.id] = entry

        logger.info(f"Registered {entry.entity_type.value} {entry.id} (weight={entry.base_weight})")
        self._publish(WriteEvent(WriteEventKind.ENTRY_REGISTERED, entry.id, entry.version))
        return entry

    def update_base(
        self,
        entity_id: str,
        base_weight: Optional[float] = None,
        base_severity: Optional[RuleSeverity] = None,
        base_threshold_low: Optional[float] = None,
        base_threshold_high: Optional[float] = None,
        expected_version: Optional[int] = None,
    ) -> RegistryEntry:
        """
        Create a new version of an entry's base values.

        Fields left as None keep their current value. The prior
        version is archived in the entry's history.
        """
        with self._lock:
            current = self.get_entry(entity_id)
            check_expected_version(entity_id, expected_version, current.version)

            bounds = self._config.bounds_for(current.entity_type)
            weight = current.base_weight
            if base_weight is not None:
                weight = validate_base_weight(base_weight, current, bounds)

            low = current.base_threshold_low if base_threshold_low is None else base_threshold_low
            high = current.base_threshold_high if base_threshold_high is None else base_threshold_high
            validate_thresholds(low, high, prefix="base_threshold")

            updated = replace(
                current,
                base_weight=weight,
                base_severity=base_severity or current.base_severity,
                base_threshold_low=low,
                base_threshold_high=high,
                version=current.version + 1,
                updated_at=datetime.now(timezone.utc),
            )
            self._history.setdefault(entity_id, []).append(current)
            self._entries[entity_id] = updated

        logger.info(
            f"Updated base of {entity_id}: weight {current.base_weight} -> {updated.base_weight} "
            f"(v{updated.version})"
        )
        self._publish(WriteEvent(WriteEventKind.BASE_UPDATED, entity_id, updated.version))
        return updated

    def deprecate(self, entity_id: str, reason: str) -> RegistryEntry:
        if not reason or not reason.strip():
            raise ValidationError("A deprecation reason is required", field="reason")

        with self._lock:
            current = self.get_entry(entity_id)
            updated = replace(
                current,
                is_deprecated=True,
                deprecated_reason=reason.strip(),
                version=current.version + 1,
                updated_at=datetime.now(timezone.utc),
            )
            self._history.setdefault(entity_id, []).append(current)
            self._entries[entity_id] = updated

        logger.info(f"Deprecated {entity_id}: {reason}")
        self._publish(WriteEvent(WriteEventKind.ENTRY_DEPRECATED, entity_id, updated.version))
        return updated
