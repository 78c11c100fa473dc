"""
ASO Bible - Persistence Models.

============================================================
PURPOSE
============================================================
ORM models backing the SQL registry and override stores.

============================================================
MODELS
============================================================
1. RegistryEntryRow: Current base definition of an entity
2. RegistryEntryVersionRow: Archived prior versions (history)
3. OverrideRow: Scoped override, unique per
   (entity id, tier, full qualifier tuple) through scope_key
4. OverrideChangeRow: Append-only override change log

Column types stay portable so the same models run on
PostgreSQL and on SQLite (tests, local runs).

============================================================
"""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import uuid4

from sqlalchemy import (
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    JSON,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database.engine import Base


def _uuid_str() -> str:
    return str(uuid4())


# ============================================================
# REGISTRY ENTRY MODEL
# ============================================================


class RegistryEntryRow(Base):
    """
    Current base definition of a scoring entity.

    ============================================================
    WHAT IT STORES
    ============================================================
    - Entity type, family, base weight
    - Base severity and thresholds (rule evaluators)
    - Optional per-entry weight bounds
    - Version and deprecation state

    ============================================================
    """

    __tablename__ = "aso_registry_entries"

    id: Mapped[str] = mapped_column(String(200), primary_key=True)

    entity_type: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    family: Mapped[Optional[str]] = mapped_column(String(100), nullable=True, index=True)

    base_weight: Mapped[float] = mapped_column(Float, nullable=False)
    base_severity: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    base_threshold_low: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    base_threshold_high: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    weight_min: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    weight_max: Mapped[Optional[float]] = mapped_column(Float, nullable=True)

    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    tags: Mapped[List[str]] = mapped_column(JSON, nullable=False, default=list)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_deprecated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deprecated_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    versions: Mapped[List["RegistryEntryVersionRow"]] = relationship(
        back_populates="entry",
        cascade="all, delete-orphan",
        order_by="RegistryEntryVersionRow.version",
    )

    def __repr__(self) -> str:
        return f"<RegistryEntryRow {self.id} v{self.version} weight={self.base_weight}>"


class RegistryEntryVersionRow(Base):
    """
    Archived prior version of a registry entry.

    Written once per base edit or deprecation; never updated.
    """

    __tablename__ = "aso_registry_entry_versions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid_str)
    entry_id: Mapped[str] = mapped_column(
        String(200),
        ForeignKey("aso_registry_entries.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    base_weight: Mapped[float] = mapped_column(Float, nullable=False)
    base_severity: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    base_threshold_low: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    base_threshold_high: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    is_deprecated: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deprecated_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    valid_until: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    entry: Mapped[RegistryEntryRow] = relationship(back_populates="versions")

    __table_args__ = (
        UniqueConstraint("entry_id", "version", name="uq_aso_registry_entry_version"),
    )


# ============================================================
# OVERRIDE MODEL
# ============================================================


class OverrideRow(Base):
    """
    Scoped override of one registry entity.

    Qualifier columns not used by the row's tier are NULL.
    scope_key is the formatted (entity id, tier, qualifiers)
    key; its unique constraint rejects a second row for a key.
    """

    __tablename__ = "aso_scope_overrides"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid_str)
    entity_id: Mapped[str] = mapped_column(
        String(200),
        ForeignKey("aso_registry_entries.id"),
        nullable=False,
        index=True,
    )

    scope_key: Mapped[str] = mapped_column(String(512), nullable=False)
    scope_tier: Mapped[str] = mapped_column(String(16), nullable=False)
    vertical: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    market: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    organization_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    app_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    multiplier: Mapped[float] = mapped_column(Float, nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    severity_override: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    threshold_low_override: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    threshold_high_override: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("scope_key", name="uq_aso_scope_overrides_scope_key"),
    )

    def __repr__(self) -> str:
        return f"<OverrideRow {self.entity_id}@{self.scope_tier} x{self.multiplier} v{self.version}>"


class OverrideChangeRow(Base):
    """
    One create, update or removal of a scoped override.

    Written in the same transaction as the override change and
    never updated. override_id is not a foreign key: log rows
    outlive removed overrides.
    """

    __tablename__ = "aso_scope_override_changes"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    override_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    entity_id: Mapped[str] = mapped_column(String(200), nullable=False, index=True)
    scope_tier: Mapped[str] = mapped_column(String(16), nullable=False)
    scope_key: Mapped[str] = mapped_column(String(512), nullable=False)

    operation: Mapped[str] = mapped_column(String(16), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    old_value: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    new_value: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)
    actor: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)

    changed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    def __repr__(self) -> str:
        return f"<OverrideChangeRow {self.operation} {self.scope_key} v{self.version}>"
