"""
ASO Bible - SQL Stores.

============================================================
PURPOSE
============================================================
SQLAlchemy-backed implementations of the registry and
override store contracts.

- Stores work inside the caller's session and only flush;
  commit / rollback belongs to transaction_scope()
- Write events reach listeners after the session commits
- Override changes are appended to aso_scope_override_changes
- Rows are converted to the immutable dataclasses in
  types.py before leaving the store
- SQLAlchemy failures surface as PersistenceError

============================================================
USAGE
============================================================
    with transaction_scope() as session:
        overrides = SqlOverrideStore(session)
        overrides.upsert(
            "kpi.cvr",
            ScopeTier.VERTICAL,
            ScopeQualifiers(vertical="fitness"),
            1.8,
        )

============================================================
"""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from uuid import uuid4
import logging

from sqlalchemy import event, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from core.exceptions import ConflictError, NotFoundError, PersistenceError, ValidationError

from .base import BaseOverrideStore, BaseRegistryStore, WriteNotifier, sort_by_specificity
from .config import AsoBibleConfig, get_config
from .models import OverrideChangeRow, OverrideRow, RegistryEntryRow, RegistryEntryVersionRow
from .types import (
    EntityType,
    OverrideChange,
    OverrideOperation,
    OverrideRecord,
    RegistryEntry,
    RegistryFilter,
    RuleSeverity,
    ScopeQualifiers,
    ScopeTier,
    WriteEvent,
    WriteEventKind,
    format_override_key,
    override_key,
    parse_scope_tier,
)
from .validation import (
    check_expected_version,
    validate_base_weight,
    validate_override_payload,
    validate_thresholds,
)


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite returns naive datetimes; stored values are always UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _severity(value: Optional[str]) -> Optional[RuleSeverity]:
    return RuleSeverity(value) if value else None


def _flush(session: Session, action: str, conflict_key: Optional[str] = None) -> None:
    try:
        session.flush()
    except IntegrityError as e:
        if conflict_key is None:
            logger.error(f"Failed to {action}: {e}")
            raise PersistenceError(f"Failed to {action}: {e}", cause=e) from e
        logger.warning(f"Concurrent write on {conflict_key}: {e}")
        raise ConflictError(
            conflict_key,
            expected_version=None,
            actual_version=None,
            message=f"{conflict_key} was created by a concurrent writer",
            cause=e,
        ) from e
    except SQLAlchemyError as e:
        logger.error(f"Failed to {action}: {e}")
        raise PersistenceError(f"Failed to {action}: {e}", cause=e) from e


# ============================================================
# COMMIT-TIME PUBLISHING
# ============================================================

_PENDING_EVENTS = "aso_bible.pending_write_events"


def _deliver_pending(session: Session) -> None:
    for store, write_event in session.info.pop(_PENDING_EVENTS, []):
        store._deliver(write_event)


def _discard_pending(session: Session) -> None:
    pending = session.info.pop(_PENDING_EVENTS, [])
    if pending:
        logger.debug(f"Dropped {len(pending)} write events on rollback")


class CommitPublisher(WriteNotifier):
    """
    Holds write events until the store's session commits.

    Events queued in a transaction that rolls back are dropped.
    """

    _session: Session

    def _publish(self, write_event: WriteEvent) -> None:
        session = self._session
        if not event.contains(session, "after_commit", _deliver_pending):
            event.listen(session, "after_commit", _deliver_pending)
            event.listen(session, "after_rollback", _discard_pending)
        session.info.setdefault(_PENDING_EVENTS, []).append((self, write_event))


# ============================================================
# ROW CONVERSION
# ============================================================


def entry_from_row(row: RegistryEntryRow) -> RegistryEntry:
    bounds = None
    if row.weight_min is not None and row.weight_max is not None:
        bounds = (row.weight_min, row.weight_max)

    return RegistryEntry(
        id=row.id,
        entity_type=EntityType(row.entity_type),
        base_weight=row.base_weight,
        family=row.family,
        base_severity=_severity(row.base_severity),
        base_threshold_low=row.base_threshold_low,
        base_threshold_high=row.base_threshold_high,
        weight_bounds=bounds,
        description=row.description or "",
        notes=row.notes,
        tags=tuple(row.tags or ()),
        version=row.version,
        is_deprecated=row.is_deprecated,
        deprecated_reason=row.deprecated_reason,
        updated_at=_aware(row.updated_at),
    )


def override_from_row(row: OverrideRow) -> OverrideRecord:
    return OverrideRecord(
        id=row.id,
        entity_id=row.entity_id,
        scope_tier=ScopeTier(row.scope_tier),
        qualifiers=ScopeQualifiers(
            vertical=row.vertical,
            market=row.market,
            organization_id=row.organization_id,
            app_id=row.app_id,
        ),
        multiplier=row.multiplier,
        version=row.version,
        is_active=row.is_active,
        severity_override=_severity(row.severity_override),
        threshold_low_override=row.threshold_low_override,
        threshold_high_override=row.threshold_high_override,
        notes=row.notes,
        created_at=_aware(row.created_at),
        updated_at=_aware(row.updated_at),
    )


# ============================================================
# REGISTRY STORE
# ============================================================


class SqlRegistryStore(CommitPublisher, BaseRegistryStore):
    """
    Registry store over a SQLAlchemy session.

    ============================================================
    METHODS
    ============================================================
    - get_entry / list_entries / get_history: reads
    - register: insert a new entry
    - update_base: archive current row, write new version
    - deprecate: archive current row, mark deprecated

    ============================================================
    """

    def __init__(self, session: Session, config: Optional[AsoBibleConfig] = None) -> None:
        super().__init__()
        self._session = session
        self._config = config or get_config()

    # --------------------------------------------------------
    # READ OPERATIONS
    # --------------------------------------------------------

    def _get_row(self, entity_id: str) -> RegistryEntryRow:
        row = self._session.get(RegistryEntryRow, entity_id)
        if row is None:
            raise NotFoundError("RegistryEntry", entity_id)
        return row

    def get_entry(self, entity_id: str) -> RegistryEntry:
        return entry_from_row(self._get_row(entity_id))

    def list_entries(self, filter: Optional[RegistryFilter] = None) -> List[RegistryEntry]:
        filter = filter or RegistryFilter()

        stmt = select(RegistryEntryRow).order_by(RegistryEntryRow.id)
        if filter.entity_type is not None:
            stmt = stmt.where(RegistryEntryRow.entity_type == filter.entity_type.value)
        if filter.family is not None:
            stmt = stmt.where(RegistryEntryRow.family == filter.family)
        if not filter.include_deprecated:
            stmt = stmt.where(RegistryEntryRow.is_deprecated.is_(False))

        entries = [entry_from_row(row) for row in self._session.scalars(stmt)]
        # Tags live in a JSON column; filter them here
        return [entry for entry in entries if filter.matches(entry)]

    def get_history(self, entity_id: str) -> List[RegistryEntry]:
        row = self._get_row(entity_id)
        current = entry_from_row(row)

        history = [
            RegistryEntry(
                id=current.id,
                entity_type=current.entity_type,
                base_weight=version.base_weight,
                family=current.family,
                base_severity=_severity(version.base_severity),
                base_threshold_low=version.base_threshold_low,
                base_threshold_high=version.base_threshold_high,
                weight_bounds=current.weight_bounds,
                description=current.description,
                notes=current.notes,
                tags=current.tags,
                version=version.version,
                is_deprecated=version.is_deprecated,
                deprecated_reason=version.deprecated_reason,
                updated_at=_aware(version.updated_at),
            )
            for version in row.versions
        ]
        return history + [current]

    # --------------------------------------------------------
    # WRITE OPERATIONS
    # --------------------------------------------------------

    def register(self, entry: RegistryEntry) -> RegistryEntry:
        bounds = self._config.bounds_for(entry.entity_type)
        validate_base_weight(entry.base_weight, entry, bounds)
        validate_thresholds(entry.base_threshold_low, entry.base_threshold_high, prefix="base_threshold")

        if self._session.get(RegistryEntryRow, entry.id) is not None:
            raise ValidationError(
                f"Registry entry already exists: {entry.id}",
                field="id",
                value=entry.id,
            )

        row = RegistryEntryRow(
            id=entry.id,
            entity_type=entry.entity_type.value,
            family=entry.family,
            base_weight=entry.base_weight,
            base_severity=entry.base_severity.value if entry.base_severity else None,
            base_threshold_low=entry.base_threshold_low,
            base_threshold_high=entry.base_threshold_high,
            weight_min=entry.weight_bounds[0] if entry.weight_bounds else None,
            weight_max=entry.weight_bounds[1] if entry.weight_bounds else None,
            description=entry.description,
            notes=entry.notes,
            tags=list(entry.tags),
            version=entry.version,
            is_deprecated=entry.is_deprecated,
            deprecated_reason=entry.deprecated_reason,
            updated_at=entry.updated_at,
        )
        self._session.add(row)
        _flush(self._session, f"register {entry.id}")

        logger.info(f"Registered {entry.entity_type.value} {entry.id} (weight={entry.base_weight})")
        self._publish(WriteEvent(WriteEventKind.ENTRY_REGISTERED, entry.id, row.version))
        return entry_from_row(row)

    def _archive(self, row: RegistryEntryRow, now: datetime) -> None:
        row.versions.append(
            RegistryEntryVersionRow(
                version=row.version,
                base_weight=row.base_weight,
                base_severity=row.base_severity,
                base_threshold_low=row.base_threshold_low,
                base_threshold_high=row.base_threshold_high,
                is_deprecated=row.is_deprecated,
                deprecated_reason=row.deprecated_reason,
                valid_until=now,
                updated_at=row.updated_at,
            )
        )

    def update_base(
        self,
        entity_id: str,
        base_weight: Optional[float] = None,
        base_severity: Optional[RuleSeverity] = None,
        base_threshold_low: Optional[float] = None,
        base_threshold_high: Optional[float] = None,
        expected_version: Optional[int] = None,
    ) -> RegistryEntry:
        row = self._get_row(entity_id)
        current = entry_from_row(row)
        check_expected_version(entity_id, expected_version, current.version)

        bounds = self._config.bounds_for(current.entity_type)
        weight = current.base_weight
        if base_weight is not None:
            weight = validate_base_weight(base_weight, current, bounds)

        low = current.base_threshold_low if base_threshold_low is None else base_threshold_low
        high = current.base_threshold_high if base_threshold_high is None else base_threshold_high
        validate_thresholds(low, high, prefix="base_threshold")

        now = _utcnow()
        self._archive(row, now)

        row.base_weight = weight
        if base_severity is not None:
            row.base_severity = RuleSeverity(base_severity).value
        row.base_threshold_low = low
        row.base_threshold_high = high
        row.version = current.version + 1
        row.updated_at = now
        _flush(self._session, f"update base of {entity_id}")

        logger.info(
            f"Updated base of {entity_id}: weight {current.base_weight} -> {weight} "
            f"(v{row.version})"
        )
        self._publish(WriteEvent(WriteEventKind.BASE_UPDATED, entity_id, row.version))
        return entry_from_row(row)

    def deprecate(self, entity_id: str, reason: str) -> RegistryEntry:
        if not reason or not reason.strip():
            raise ValidationError("A deprecation reason is required", field="reason")

        row = self._get_row(entity_id)
        now = _utcnow()
        self._archive(row, now)

        row.is_deprecated = True
        row.deprecated_reason = reason.strip()
        row.version += 1
        row.updated_at = now
        _flush(self._session, f"deprecate {entity_id}")

        logger.info(f"Deprecated {entity_id}: {reason}")
        self._publish(WriteEvent(WriteEventKind.ENTRY_DEPRECATED, entity_id, row.version))
        return entry_from_row(row)


# ============================================================
# OVERRIDE STORE
# ============================================================


def change_from_row(row: OverrideChangeRow) -> OverrideChange:
    return OverrideChange(
        id=row.id,
        override_id=row.override_id,
        entity_id=row.entity_id,
        scope_tier=ScopeTier(row.scope_tier),
        scope_key=row.scope_key,
        operation=OverrideOperation(row.operation),
        version=row.version,
        old_value=row.old_value,
        new_value=row.new_value,
        actor=row.actor,
        changed_at=_aware(row.changed_at),
    )


class SqlOverrideStore(CommitPublisher, BaseOverrideStore):
    """
    Override store over a SQLAlchemy session.

    The (entity id, tier, qualifier tuple) key is stored as
    scope_key under a unique constraint. A concurrent create of
    the same key fails at flush and surfaces as ConflictError.
    """

    def __init__(self, session: Session) -> None:
        super().__init__()
        self._session = session

    def _find_by_key(self, scope_key: str) -> Optional[OverrideRow]:
        stmt = select(OverrideRow).where(OverrideRow.scope_key == scope_key)
        return self._session.scalars(stmt.with_for_update()).first()

    def _log_change(
        self,
        row: OverrideRow,
        operation: OverrideOperation,
        old_value: Optional[Dict[str, Any]],
        new_value: Optional[Dict[str, Any]],
        actor: Optional[str],
        changed_at: datetime,
    ) -> None:
        self._session.add(
            OverrideChangeRow(
                override_id=row.id,
                entity_id=row.entity_id,
                scope_tier=row.scope_tier,
                scope_key=row.scope_key,
                operation=operation.value,
                version=row.version,
                old_value=old_value,
                new_value=new_value,
                actor=actor,
                changed_at=changed_at,
            )
        )

    # --------------------------------------------------------
    # WRITE OPERATIONS
    # --------------------------------------------------------

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
        key = format_override_key(override_key(entity_id, scope_tier, qualifiers))

        row = self._find_by_key(key)
        check_expected_version(key, expected_version, row.version if row else 0)

        now = _utcnow()
        if row is None:
            old_value = None
            row = OverrideRow(
                id=str(uuid4()),
                entity_id=entity_id,
                scope_key=key,
                scope_tier=scope_tier.value,
                vertical=qualifiers.vertical,
                market=qualifiers.market,
                organization_id=qualifiers.organization_id,
                app_id=qualifiers.app_id,
                version=1,
                is_active=True,
                created_at=now,
            )
            self._session.add(row)
        else:
            old_value = override_from_row(row).audit_values()
            row.version += 1
            row.is_active = True

        row.multiplier = multiplier
        row.severity_override = RuleSeverity(severity_override).value if severity_override else None
        row.threshold_low_override = threshold_low_override
        row.threshold_high_override = threshold_high_override
        row.notes = notes
        row.updated_at = now

        record = override_from_row(row)
        self._log_change(
            row,
            OverrideOperation.CREATE if old_value is None else OverrideOperation.UPDATE,
            old_value,
            record.audit_values(),
            actor,
            now,
        )
        _flush(self._session, f"upsert override {key}", conflict_key=key)

        logger.info(f"Upserted override {key} multiplier={multiplier} v{row.version}")
        self._publish(WriteEvent(WriteEventKind.OVERRIDE_UPSERTED, entity_id, row.version))
        return override_from_row(row)

    def remove(self, override_id: str, actor: Optional[str] = None) -> bool:
        row = self._session.get(OverrideRow, override_id)
        if row is None:
            return False

        entity_id, version, key = row.entity_id, row.version, row.scope_key
        self._log_change(
            row,
            OverrideOperation.REMOVE,
            override_from_row(row).audit_values(),
            None,
            actor,
            _utcnow(),
        )
        self._session.delete(row)
        _flush(self._session, f"remove override {override_id}")

        logger.info(f"Removed override {override_id} ({key})")
        self._publish(WriteEvent(WriteEventKind.OVERRIDE_REMOVED, entity_id, version))
        return True

    # --------------------------------------------------------
    # READ OPERATIONS
    # --------------------------------------------------------

    def get(self, override_id: str) -> Optional[OverrideRecord]:
        row = self._session.get(OverrideRow, override_id)
        return override_from_row(row) if row else None

    def list_for_entity(self, entity_id: str) -> List[OverrideRecord]:
        stmt = select(OverrideRow).where(OverrideRow.entity_id == entity_id)
        return sort_by_specificity([override_from_row(row) for row in self._session.scalars(stmt)])

    def list_all(self) -> List[OverrideRecord]:
        rows = self._session.scalars(select(OverrideRow))
        return sort_by_specificity([override_from_row(row) for row in rows])

    def list_changes(
        self,
        entity_id: Optional[str] = None,
        override_id: Optional[str] = None,
    ) -> List[OverrideChange]:
        stmt = select(OverrideChangeRow).order_by(OverrideChangeRow.id)
        if entity_id is not None:
            stmt = stmt.where(OverrideChangeRow.entity_id == entity_id)
        if override_id is not None:
            stmt = stmt.where(OverrideChangeRow.override_id == override_id)
        return [change_from_row(row) for row in self._session.scalars(stmt)]
