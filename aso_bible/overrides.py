"""
ASO Bible - Override Store.

============================================================
IN-MEMORY SCOPED OVERRIDE STORE
============================================================

Holds override rows keyed by
(entity id, scope tier, full qualifier tuple).

- upsert validates the tier's qualifier shape and advances
  the version by exactly 1 on every call
- remove is idempotent
- creates, updates and removals are appended to a change
  log that outlives the record
- every successful write is published so cached effective
  values for the entity are dropped

Concurrent writers are last-writer-wins unless the caller
passes expected_version.

============================================================
"""

import threading
import uuid
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
import logging

from .base import BaseOverrideStore, sort_by_specificity
from .types import (
    OverrideChange,
    OverrideKey,
    OverrideOperation,
    OverrideRecord,
    RuleSeverity,
    ScopeQualifiers,
    ScopeTier,
    WriteEvent,
    WriteEventKind,
    format_override_key,
    override_key,
    parse_scope_tier,
)
from .validation import check_expected_version, validate_override_payload


logger = logging.getLogger(__name__)


class OverrideStore(BaseOverrideStore):
    """In-memory override store."""

    def __init__(self) -> None:
        super().__init__()
        self._by_id: Dict[str, OverrideRecord] = {}
        self._by_key: Dict[OverrideKey, str] = {}
        self._changes: List[OverrideChange] = []
        self._lock = threading.RLock()

    # =========================================================
    # WRITES
    # =========================================================

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
        scope_tier = parse_scope_tier(scope_tier)
        multiplier = validate_override_payload(
            scope_tier,
            qualifiers,
            multiplier,
            threshold_low_override,
            threshold_high_override,
        )
        key = override_key(entity_id, scope_tier, qualifiers)
        now = datetime.now(timezone.utc)

        with self._lock:
            existing_id = self._by_key.get(key)
            existing = self._by_id.get(existing_id) if existing_id else None
            check_expected_version(
                format_override_key(key),
                expected_version,
                existing.version if existing else 0,
            )

            if existing is None:
                record = OverrideRecord(
                    id=str(uuid.uuid4()),
                    entity_id=entity_id,
                    scope_tier=scope_tier,
                    qualifiers=qualifiers,
                    multiplier=multiplier,
                    version=1,
                    severity_override=severity_override,
                    threshold_low_override=threshold_low_override,
                    threshold_high_override=threshold_high_override,
                    notes=notes,
                    created_at=now,
                    updated_at=now,
                )
            else:
                record = replace(
                    existing,
                    multiplier=multiplier,
                    version=existing.version + 1,
                    is_active=True,
                    severity_override=severity_override,
                    threshold_low_override=threshold_low_override,
                    threshold_high_override=threshold_high_override,
                    notes=notes,
                    updated_at=now,
                )

            self._by_id[record.id] = record
            self._by_key[key] = record.id
            self._record_change(
                record,
                OverrideOperation.CREATE if existing is None else OverrideOperation.UPDATE,
                existing.audit_values() if existing else None,
                record.audit_values(),
                actor,
                now,
            )

        logger.info(
            f"Upserted override {format_override_key(key)} "
            f"multiplier={multiplier} v{record.version}"
        )
        self._publish(WriteEvent(WriteEventKind.OVERRIDE_UPSERTED, entity_id, record.version))
        return record

    def remove(self, override_id: str, actor: Optional[str] = None) -> bool:
        with self._lock:
            record = self._by_id.pop(override_id, None)
            if record is None:
                return False
            self._by_key.pop(record.key, None)
            self._record_change(
                record,
                OverrideOperation.REMOVE,
                record.audit_values(),
                None,
                actor,
                datetime.now(timezone.utc),
            )

        logger.info(f"Removed override {override_id} ({format_override_key(record.key)})")
        self._publish(WriteEvent(WriteEventKind.OVERRIDE_REMOVED, record.entity_id, record.version))
        return True

    def _record_change(
        self,
        record: OverrideRecord,
        operation: OverrideOperation,
        old_value: Optional[Dict[str, Any]],
        new_value: Optional[Dict[str, Any]],
        actor: Optional[str],
        changed_at: datetime,
    ) -> None:
        self._changes.append(
            OverrideChange(
                id=len(self._changes) + 1,
                override_id=record.id,
                entity_id=record.entity_id,
                scope_tier=record.scope_tier,
                scope_key=record.scope_key,
                operation=operation,
                version=record.version,
                old_value=old_value,
                new_value=new_value,
                actor=actor,
                changed_at=changed_at,
            )
        )

    # =========================================================
    # READS
    # =========================================================

    def get(self, override_id: str) -> Optional[OverrideRecord]:
        with self._lock:
            return self._by_id.get(override_id)

    def list_for_entity(self, entity_id: str) -> List[OverrideRecord]:
        with self._lock:
            records = [r for r in self._by_id.values() if r.entity_id == entity_id]
        return sort_by_specificity(records)

    def list_all(self) -> List[OverrideRecord]:
        with self._lock:
            records = list(self._by_id.values())
        return sort_by_specificity(records)

    def list_changes(
        self,
        entity_id: Optional[str] = None,
        override_id: Optional[str] = None,
    ) -> List[OverrideChange]:
        with self._lock:
            return [
                change
                for change in self._changes
                if (entity_id is None or change.entity_id == entity_id)
                and (override_id is None or change.override_id == override_id)
            ]

    def __len__(self) -> int:
        with self._lock:
            return len(self._by_id)
