"""
Tests for the In-Memory Registry and Override Stores.

Tests cover:
- Registration, base edits, history and deprecation
- Override upsert version semantics
- Scope shape validation at the store boundary
- Optimistic concurrency via expected_version
- Idempotent removal and specificity ordering
- Write events published to listeners
- The override change log
"""

import pytest

from core.exceptions import ConflictError, InvalidScopeError, NotFoundError, ValidationError
from aso_bible.overrides import OverrideStore
from aso_bible.registry import RegistryStore
from aso_bible.types import (
    EntityType,
    OverrideOperation,
    RegistryEntry,
    RegistryFilter,
    RuleSeverity,
    ScopeQualifiers,
    ScopeTier,
    WriteEventKind,
)


@pytest.fixture
def registry():
    store = RegistryStore()
    store.register(
        RegistryEntry(
            id="kpi.cvr",
            entity_type=EntityType.KPI,
            base_weight=1.0,
            family="conversion",
            weight_bounds=(0.5, 2.0),
        )
    )
    store.register(
        RegistryEntry(
            id="title_character_usage",
            entity_type=EntityType.RULE,
            base_weight=0.25,
            family="ranking",
            base_severity=RuleSeverity.MODERATE,
            base_threshold_low=70.0,
            base_threshold_high=100.0,
            tags=("title",),
        )
    )
    return store


@pytest.fixture
def overrides():
    return OverrideStore()


FITNESS = ScopeQualifiers(vertical="fitness")
FITNESS_US = ScopeQualifiers(vertical="fitness", market="us")
ORG = ScopeQualifiers(organization_id="org-1")
APP = ScopeQualifiers(app_id="com.example.app")


# =============================================================
# TEST: Registry Store
# =============================================================

class TestRegistryStore:
    """Test the registry of base definitions."""

    def test_get_unknown_entry_raises_not_found(self, registry):
        """Unknown ids are the only read failure."""
        with pytest.raises(NotFoundError) as exc_info:
            registry.get_entry("kpi.unknown")
        assert exc_info.value.identifier == "kpi.unknown"

    def test_list_entries_ordered_by_id(self, registry):
        """Listing is ordered and filterable."""
        ids = [e.id for e in registry.list_entries()]
        assert ids == ["kpi.cvr", "title_character_usage"]

        rules = registry.list_entries(RegistryFilter(entity_type=EntityType.RULE))
        assert [e.id for e in rules] == ["title_character_usage"]

    def test_duplicate_registration_rejected(self, registry):
        """Ids are unique within the registry."""
        with pytest.raises(ValidationError):
            registry.register(RegistryEntry(id="kpi.cvr", entity_type=EntityType.KPI, base_weight=1.0))

    def test_registration_outside_type_bounds_rejected(self, registry):
        """Base weights must sit inside the entity type's bounds."""
        with pytest.raises(ValidationError):
            registry.register(RegistryEntry(id="kpi.huge", entity_type=EntityType.KPI, base_weight=5.0))

    def test_update_base_creates_new_version(self, registry):
        """Base edits bump the version and archive the prior entry."""
        updated = registry.update_base("kpi.cvr", base_weight=1.5)

        assert updated.base_weight == 1.5
        assert updated.version == 2

        history = registry.get_history("kpi.cvr")
        assert [e.version for e in history] == [1, 2]
        assert history[0].base_weight == 1.0

    def test_update_base_respects_entry_bounds(self, registry):
        """Per-entry bounds narrow the type's weight bounds."""
        with pytest.raises(ValidationError) as exc_info:
            registry.update_base("kpi.cvr", base_weight=2.5)

        assert exc_info.value.field == "base_weight"
        assert registry.get_entry("kpi.cvr").base_weight == 1.0
        assert registry.get_entry("kpi.cvr").version == 1

    def test_update_base_rejects_out_of_type_bounds(self, registry):
        """Weights below the type minimum are rejected."""
        with pytest.raises(ValidationError):
            registry.update_base("title_character_usage", base_weight=0.05)

    def test_update_base_expected_version_conflict(self, registry):
        """A stale expected_version leaves the entry untouched."""
        with pytest.raises(ConflictError):
            registry.update_base("kpi.cvr", base_weight=1.2, expected_version=3)
        assert registry.get_entry("kpi.cvr").base_weight == 1.0

    def test_update_thresholds_must_stay_ordered(self, registry):
        """Low threshold may not exceed high threshold."""
        with pytest.raises(ValidationError):
            registry.update_base("title_character_usage", base_threshold_low=120.0)

    def test_deprecate_hides_entry_from_default_listing(self, registry):
        """Deprecated entries are kept but not listed by default."""
        deprecated = registry.deprecate("kpi.cvr", "replaced by kpi.install_rate")

        assert deprecated.is_deprecated
        assert deprecated.deprecated_reason == "replaced by kpi.install_rate"
        assert "kpi.cvr" not in [e.id for e in registry.list_entries()]
        assert "kpi.cvr" in [e.id for e in registry.list_entries(RegistryFilter(include_deprecated=True))]
        assert registry.get_entry("kpi.cvr").is_deprecated

    def test_deprecate_requires_reason(self, registry):
        with pytest.raises(ValidationError):
            registry.deprecate("kpi.cvr", "  ")

    def test_writes_publish_events(self, registry):
        """Listeners see every successful write."""
        events = []
        registry.add_write_listener(events.append)

        registry.update_base("kpi.cvr", base_weight=1.1)
        registry.deprecate("kpi.cvr", "obsolete")

        assert [e.kind for e in events] == [WriteEventKind.BASE_UPDATED, WriteEventKind.ENTRY_DEPRECATED]
        assert all(e.entity_id == "kpi.cvr" for e in events)

    def test_failing_listener_does_not_break_write(self, registry):
        """A broken listener is logged; the write still succeeds."""
        def broken(event):
            raise RuntimeError("listener down")

        registry.add_write_listener(broken)
        assert registry.update_base("kpi.cvr", base_weight=1.1).version == 2


# =============================================================
# TEST: Override Store
# =============================================================

class TestOverrideStore:
    """Test scoped override records."""

    def test_first_upsert_creates_version_one(self, overrides):
        record = overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.8)

        assert record.version == 1
        assert record.multiplier == 1.8
        assert record.is_active
        assert overrides.get(record.id) == record

    def test_identical_upserts_advance_version_by_one(self, overrides):
        """Upsert is not a no-op: the version always advances."""
        first = overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.8)
        second = overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.8)
        third = overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.8)

        assert (first.version, second.version, third.version) == (1, 2, 3)
        assert first.id == second.id == third.id
        assert len(overrides) == 1

    def test_distinct_qualifiers_are_distinct_records(self, overrides):
        """Uniqueness is per full qualifier tuple."""
        overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.8)
        overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, ScopeQualifiers(vertical="finance"), 0.8)
        overrides.upsert("kpi.cvr", ScopeTier.MARKET, FITNESS_US, 1.2)

        assert len(overrides) == 3

    def test_market_tier_with_only_vertical_raises_invalid_scope(self, overrides):
        """tier=market with {vertical} only is rejected."""
        with pytest.raises(InvalidScopeError):
            overrides.upsert("kpi.cvr", ScopeTier.MARKET, FITNESS, 1.5)
        assert len(overrides) == 0

    def test_client_tier_with_app_qualifier_raises_invalid_scope(self, overrides):
        with pytest.raises(InvalidScopeError):
            overrides.upsert(
                "kpi.cvr",
                ScopeTier.CLIENT,
                ScopeQualifiers(organization_id="org-1", app_id="com.example.app"),
                1.5,
            )

    @pytest.mark.parametrize("multiplier", [0, -1.0, float("nan"), float("inf")])
    def test_invalid_multiplier_rejected(self, overrides, multiplier):
        """Multipliers must be positive finite numbers."""
        with pytest.raises(ValidationError):
            overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, multiplier)

    def test_inverted_threshold_overrides_rejected(self, overrides):
        with pytest.raises(ValidationError):
            overrides.upsert(
                "title_character_usage",
                ScopeTier.VERTICAL,
                FITNESS,
                1.0,
                threshold_low_override=90.0,
                threshold_high_override=80.0,
            )

    def test_expected_version_match(self, overrides):
        """A matching expected_version is accepted."""
        overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.8, expected_version=0)
        record = overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.9, expected_version=1)
        assert record.version == 2

    def test_expected_version_mismatch_raises_conflict(self, overrides):
        """A stale expected_version fails and leaves state untouched."""
        overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.8)
        overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.9)

        with pytest.raises(ConflictError) as exc_info:
            overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 2.0, expected_version=1)

        assert exc_info.value.actual_version == 2
        [record] = overrides.list_for_entity("kpi.cvr")
        assert record.multiplier == 1.9
        assert record.version == 2

    def test_expected_version_for_absent_record(self, overrides):
        """Absent records count as version 0."""
        with pytest.raises(ConflictError):
            overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.8, expected_version=1)

    def test_remove_is_idempotent(self, overrides):
        record = overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.8)

        assert overrides.remove(record.id) is True
        assert overrides.remove(record.id) is False
        assert overrides.remove("does-not-exist") is False
        assert overrides.list_for_entity("kpi.cvr") == []

    def test_upsert_after_remove_restarts_at_version_one(self, overrides):
        record = overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.8)
        overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.9)
        overrides.remove(record.id)

        assert overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.5).version == 1

    def test_list_for_entity_ordered_by_specificity(self, overrides):
        """app, client, market, vertical."""
        overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.1)
        overrides.upsert("kpi.cvr", ScopeTier.APP, APP, 1.4)
        overrides.upsert("kpi.cvr", ScopeTier.MARKET, FITNESS_US, 1.2)
        overrides.upsert("kpi.cvr", ScopeTier.CLIENT, ORG, 1.3)
        overrides.upsert("kpi.other", ScopeTier.APP, APP, 1.0)

        tiers = [r.scope_tier for r in overrides.list_for_entity("kpi.cvr")]
        assert tiers == [ScopeTier.APP, ScopeTier.CLIENT, ScopeTier.MARKET, ScopeTier.VERTICAL]

    def test_writes_publish_events(self, overrides):
        events = []
        overrides.add_write_listener(events.append)

        record = overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.8)
        overrides.remove(record.id)
        overrides.remove(record.id)

        assert [e.kind for e in events] == [WriteEventKind.OVERRIDE_UPSERTED, WriteEventKind.OVERRIDE_REMOVED]

    def test_rejected_write_publishes_nothing(self, overrides):
        events = []
        overrides.add_write_listener(events.append)

        with pytest.raises(InvalidScopeError):
            overrides.upsert("kpi.cvr", ScopeTier.APP, FITNESS, 1.8)

        assert events == []

    def test_unknown_tier_name_raises_invalid_scope(self, overrides):
        with pytest.raises(InvalidScopeError):
            overrides.upsert("kpi.cvr", "galaxy", FITNESS, 1.8)
        assert overrides.list_changes() == []


# =============================================================
# TEST: Override Change Log
# =============================================================

class TestOverrideChangeLog:
    """Append-only log of override writes."""

    def test_changes_record_old_and_new_values(self, overrides):
        record = overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.8, actor="alice")
        overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.5, notes="softer", actor="bob")
        overrides.remove(record.id, actor="alice")

        create, update, remove = overrides.list_changes(override_id=record.id)

        assert create.operation == OverrideOperation.CREATE
        assert create.new_value["multiplier"] == 1.8
        assert update.old_value["multiplier"] == 1.8
        assert update.new_value == {
            "multiplier": 1.5,
            "version": 2,
            "severity_override": None,
            "threshold_low_override": None,
            "threshold_high_override": None,
            "notes": "softer",
        }
        assert remove.operation == OverrideOperation.REMOVE
        assert remove.old_value["version"] == 2
        assert [c.id for c in (create, update, remove)] == [1, 2, 3]

    def test_idempotent_remove_is_not_logged(self, overrides):
        record = overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.8)
        overrides.remove(record.id)
        overrides.remove(record.id)

        assert len(overrides.list_changes(entity_id="kpi.cvr")) == 2

    def test_recreated_key_gets_new_override_id(self, overrides):
        first = overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.8)
        overrides.remove(first.id)
        second = overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.5)

        assert second.id != first.id
        assert [c.operation for c in overrides.list_changes(entity_id="kpi.cvr")] == [
            OverrideOperation.CREATE,
            OverrideOperation.REMOVE,
            OverrideOperation.CREATE,
        ]
        assert len(overrides.list_changes(override_id=second.id)) == 1
