"""
Tests for the SQL Registry and Override Stores.

Runs against in-memory SQLite, and a file-backed database
where two sessions are needed.

Tests cover:
- Registry persistence, history and deprecation
- Override upsert versioning and key uniqueness
- Rollback leaving prior state untouched
- SQLAlchemy failures surfacing as PersistenceError
- The engine running on SQL stores
- Write events held until commit
- Database-level key uniqueness
- The persisted override change log
"""

from datetime import datetime, timezone

import pytest
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import sessionmaker

from core.exceptions import (
    ConflictError,
    InvalidScopeError,
    NotFoundError,
    PersistenceError,
    ValidationError,
)
from database.engine import create_all_tables, create_database_engine, transaction_scope
from aso_bible.cache import EffectiveValueCache
from aso_bible.config import AsoBibleConfig, CacheConfig
from aso_bible.engine import OverrideResolutionEngine
from aso_bible.models import OverrideRow
from aso_bible.repository import SqlOverrideStore, SqlRegistryStore
from aso_bible.types import (
    EntityType,
    EvaluationContext,
    OverrideOperation,
    RegistryEntry,
    RegistryFilter,
    RuleSeverity,
    ScopeQualifiers,
    ScopeTier,
    WriteEventKind,
)


FITNESS = ScopeQualifiers(vertical="fitness")


@pytest.fixture
def session():
    engine = create_database_engine("sqlite://")
    create_all_tables(engine)
    session = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)()
    yield session
    session.close()
    engine.dispose()


@pytest.fixture
def registry(session):
    store = SqlRegistryStore(session, AsoBibleConfig())
    store.register(
        RegistryEntry(
            id="kpi.cvr",
            entity_type=EntityType.KPI,
            base_weight=1.0,
            family="conversion",
            weight_bounds=(0.5, 2.0),
            tags=("conversion", "core"),
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
        )
    )
    session.commit()
    return store


@pytest.fixture
def overrides(session):
    return SqlOverrideStore(session)


# =============================================================
# TEST: SQL Registry Store
# =============================================================

class TestSqlRegistryStore:

    def test_round_trip_entry(self, registry):
        entry = registry.get_entry("kpi.cvr")

        assert entry.entity_type == EntityType.KPI
        assert entry.weight_bounds == (0.5, 2.0)
        assert entry.tags == ("conversion", "core")
        assert entry.version == 1
        assert entry.updated_at.tzinfo is not None

    def test_unknown_entry(self, registry):
        with pytest.raises(NotFoundError):
            registry.get_entry("kpi.unknown")

    def test_duplicate_rejected(self, registry):
        with pytest.raises(ValidationError):
            registry.register(RegistryEntry(id="kpi.cvr", entity_type=EntityType.KPI, base_weight=1.0))

    def test_list_filters(self, registry):
        assert [e.id for e in registry.list_entries()] == ["kpi.cvr", "title_character_usage"]
        assert [e.id for e in registry.list_entries(RegistryFilter(tag="core"))] == ["kpi.cvr"]
        assert [e.id for e in registry.list_entries(RegistryFilter(family="ranking"))] == ["title_character_usage"]

    def test_update_base_archives_history(self, registry, session):
        updated = registry.update_base("kpi.cvr", base_weight=1.4)
        session.commit()

        assert updated.version == 2
        history = registry.get_history("kpi.cvr")
        assert [(e.version, e.base_weight) for e in history] == [(1, 1.0), (2, 1.4)]

    def test_update_base_validation(self, registry):
        with pytest.raises(ValidationError):
            registry.update_base("kpi.cvr", base_weight=2.5)
        with pytest.raises(ConflictError):
            registry.update_base("kpi.cvr", base_weight=1.2, expected_version=7)

        assert registry.get_entry("kpi.cvr").version == 1

    def test_update_severity(self, registry):
        updated = registry.update_base("title_character_usage", base_severity=RuleSeverity.STRONG)
        assert updated.base_severity == RuleSeverity.STRONG
        assert updated.base_weight == 0.25

    def test_deprecate(self, registry):
        registry.deprecate("kpi.cvr", "obsolete")

        assert [e.id for e in registry.list_entries()] == ["title_character_usage"]
        entry = registry.get_entry("kpi.cvr")
        assert entry.is_deprecated
        assert entry.version == 2


# =============================================================
# TEST: SQL Override Store
# =============================================================

class TestSqlOverrideStore:

    def test_upsert_versions(self, registry, overrides):
        first = overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.8)
        second = overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.8)

        assert first.id == second.id
        assert (first.version, second.version) == (1, 2)
        assert len(overrides.list_all()) == 1

    def test_key_includes_null_qualifiers(self, registry, overrides):
        """Vertical and market records for the same vertical are distinct."""
        overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.8)
        overrides.upsert("kpi.cvr", ScopeTier.MARKET, ScopeQualifiers(vertical="fitness", market="us"), 1.2)
        overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.6)

        records = overrides.list_for_entity("kpi.cvr")
        assert [(r.scope_tier, r.version) for r in records] == [
            (ScopeTier.MARKET, 1),
            (ScopeTier.VERTICAL, 2),
        ]

    def test_invalid_scope(self, registry, overrides):
        with pytest.raises(InvalidScopeError):
            overrides.upsert("kpi.cvr", ScopeTier.MARKET, FITNESS, 1.5)
        assert overrides.list_all() == []

    def test_conflict(self, registry, overrides):
        overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.8)
        with pytest.raises(ConflictError):
            overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.9, expected_version=0)

    def test_remove_idempotent(self, registry, overrides):
        record = overrides.upsert("kpi.cvr", ScopeTier.APP, ScopeQualifiers(app_id="com.example.app"), 2.5)

        assert overrides.remove(record.id) is True
        assert overrides.remove(record.id) is False
        assert overrides.get(record.id) is None

    def test_threshold_and_severity_overrides_persist(self, registry, overrides):
        record = overrides.upsert(
            "title_character_usage",
            ScopeTier.CLIENT,
            ScopeQualifiers(organization_id="org-1"),
            1.0,
            severity_override=RuleSeverity.CRITICAL,
            threshold_low_override=80.0,
            notes="stricter for this client",
        )

        stored = overrides.get(record.id)
        assert stored.severity_override == RuleSeverity.CRITICAL
        assert stored.threshold_low_override == 80.0
        assert stored.notes == "stricter for this client"


# =============================================================
# TEST: Transactions
# =============================================================

class TestTransactions:

    def test_rollback_leaves_prior_state(self, registry, overrides, session):
        with transaction_scope(session):
            overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.8)

        with pytest.raises(InvalidScopeError):
            with transaction_scope(session):
                overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.2)
                overrides.upsert("kpi.cvr", ScopeTier.APP, FITNESS, 1.2)

        [record] = overrides.list_for_entity("kpi.cvr")
        assert record.multiplier == 1.8
        assert record.version == 1

    def test_flush_failure_raises_persistence_error(self, registry, overrides, session, monkeypatch):
        def broken_flush(*args, **kwargs):
            raise OperationalError("INSERT", {}, Exception("disk I/O error"))

        monkeypatch.setattr(session, "flush", broken_flush)

        with pytest.raises(PersistenceError) as exc_info:
            overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.8)

        assert exc_info.value.retryable


# =============================================================
# TEST: Engine on SQL Stores
# =============================================================

class TestEngineOnSql:

    @pytest.fixture
    def engine(self, session, registry):
        config = AsoBibleConfig()
        return OverrideResolutionEngine(
            registry=SqlRegistryStore(session, config),
            overrides=SqlOverrideStore(session),
            config=config,
        )

    def test_scenarios(self, engine, session):
        with transaction_scope(session):
            engine.upsert_override("kpi.cvr", ScopeTier.VERTICAL, {"vertical": "fitness"}, 1.8)
            engine.upsert_override("kpi.cvr", ScopeTier.APP, {"app_id": "com.example.app"}, 2.5)

        assert engine.compute_effective("kpi.cvr", EvaluationContext(vertical="fitness")).effective_value == pytest.approx(1.8)
        assert engine.compute_effective("kpi.cvr", EvaluationContext(vertical="finance")).effective_value == 1.0
        assert engine.compute_effective(
            "kpi.cvr", EvaluationContext(vertical="fitness", app_id="com.example.app")
        ).effective_value == pytest.approx(2.5)

    def test_write_invalidates_cache(self, engine, session):
        context = EvaluationContext(vertical="fitness")
        assert engine.compute_effective("kpi.cvr", context).effective_value == 1.0

        with transaction_scope(session):
            engine.upsert_override("kpi.cvr", ScopeTier.VERTICAL, {"vertical": "fitness"}, 1.5)

        assert engine.compute_effective("kpi.cvr", context).effective_value == pytest.approx(1.5)

    def test_unknown_tier_name_is_invalid_scope(self, engine):
        with pytest.raises(InvalidScopeError):
            engine.upsert_override("kpi.cvr", "galaxy", {"vertical": "fitness"}, 1.5)


# =============================================================
# TEST: Commit-Time Write Events
# =============================================================

class TestCommitTimeEvents:
    """Listeners only hear about writes that were committed."""

    def test_events_wait_for_commit(self, registry, overrides, session):
        events = []
        overrides.add_write_listener(events.append)

        overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.8)
        assert events == []

        session.commit()
        assert [e.kind for e in events] == [WriteEventKind.OVERRIDE_UPSERTED]

    def test_rolled_back_write_publishes_nothing(self, registry, overrides, session):
        events = []
        overrides.add_write_listener(events.append)

        with pytest.raises(InvalidScopeError):
            with transaction_scope(session):
                overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.8)
                overrides.upsert("kpi.cvr", ScopeTier.APP, FITNESS, 1.8)

        session.commit()
        assert events == []

    def test_events_delivered_once(self, registry, overrides, session):
        events = []
        overrides.add_write_listener(events.append)

        with transaction_scope(session):
            overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.8)
        with transaction_scope(session):
            overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.6)

        assert [e.version for e in events] == [1, 2]


class TestSharedCacheAcrossSessions:
    """Two sessions on one database share a process-wide cache."""

    @pytest.fixture
    def database_url(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'aso_bible.db'}"
        db = create_database_engine(url)
        create_all_tables(db)
        seed = sessionmaker(bind=db)()
        with transaction_scope(seed):
            SqlRegistryStore(seed, AsoBibleConfig()).register(
                RegistryEntry(id="kpi.cvr", entity_type=EntityType.KPI, base_weight=1.0)
            )
        seed.close()
        db.dispose()
        return url

    def _open(self, url, cache):
        db = create_database_engine(url)
        session = sessionmaker(bind=db, autoflush=False, expire_on_commit=False)()
        config = AsoBibleConfig()
        engine = OverrideResolutionEngine(
            registry=SqlRegistryStore(session, config),
            overrides=SqlOverrideStore(session),
            config=config,
            cache=cache,
        )
        return db, session, engine

    def test_reader_sees_committed_write(self, database_url):
        cache = EffectiveValueCache(CacheConfig())
        writer_db, writer_session, writer = self._open(database_url, cache)
        reader_db, reader_session, reader = self._open(database_url, cache)
        context = EvaluationContext(vertical="fitness")

        try:
            writer.upsert_override("kpi.cvr", ScopeTier.VERTICAL, {"vertical": "fitness"}, 1.8)

            # Uncommitted: the reader still sees base and caches it
            assert reader.compute_effective("kpi.cvr", context).effective_value == 1.0
            reader_session.rollback()

            writer_session.commit()

            assert reader.compute_effective("kpi.cvr", context).effective_value == pytest.approx(1.8)
        finally:
            writer_session.close()
            reader_session.close()
            writer_db.dispose()
            reader_db.dispose()

    def test_rolled_back_write_keeps_cached_value(self, database_url):
        cache = EffectiveValueCache(CacheConfig())
        writer_db, writer_session, writer = self._open(database_url, cache)
        reader_db, reader_session, reader = self._open(database_url, cache)
        context = EvaluationContext(vertical="fitness")

        try:
            assert reader.compute_effective("kpi.cvr", context).effective_value == 1.0
            reader_session.rollback()

            writer.upsert_override("kpi.cvr", ScopeTier.VERTICAL, {"vertical": "fitness"}, 1.8)
            writer_session.rollback()

            assert cache.get("kpi.cvr", context) is not None
            assert reader.compute_effective("kpi.cvr", context).effective_value == 1.0
        finally:
            writer_session.close()
            reader_session.close()
            writer_db.dispose()
            reader_db.dispose()


# =============================================================
# TEST: Scope Key Uniqueness
# =============================================================

class TestScopeKeyUniqueness:
    """The override key is unique in the database, not only in code."""

    def test_duplicate_scope_key_rejected_by_database(self, registry, session):
        key = "kpi.cvr@vertical[vertical=fitness]"
        now = datetime.now(timezone.utc)
        for override_id in ("a", "b"):
            session.add(
                OverrideRow(
                    id=override_id,
                    entity_id="kpi.cvr",
                    scope_key=key,
                    scope_tier="vertical",
                    vertical="fitness",
                    multiplier=1.5,
                    version=1,
                    is_active=True,
                    created_at=now,
                    updated_at=now,
                )
            )

        with pytest.raises(IntegrityError):
            session.commit()
        session.rollback()

    def test_concurrent_create_raises_conflict(self, registry, overrides, session, monkeypatch):
        with transaction_scope(session):
            overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.8)

        # Another writer's row was not visible when this one looked up the key
        monkeypatch.setattr(overrides, "_find_by_key", lambda scope_key: None)

        with pytest.raises(ConflictError) as exc_info:
            overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.2)
        session.rollback()

        assert exc_info.value.context["key"] == "kpi.cvr@vertical[vertical=fitness]"
        [record] = overrides.list_for_entity("kpi.cvr")
        assert (record.multiplier, record.version) == (1.8, 1)


# =============================================================
# TEST: SQL Override Change Log
# =============================================================

class TestSqlOverrideChangeLog:

    def test_change_log_persists(self, registry, overrides, session):
        with transaction_scope(session):
            record = overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.8, actor="alice")
        with transaction_scope(session):
            overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.4, actor="bob")
        with transaction_scope(session):
            overrides.remove(record.id, actor="carol")

        changes = overrides.list_changes(override_id=record.id)

        assert [c.operation for c in changes] == [
            OverrideOperation.CREATE,
            OverrideOperation.UPDATE,
            OverrideOperation.REMOVE,
        ]
        assert [c.actor for c in changes] == ["alice", "bob", "carol"]
        assert changes[1].old_value["multiplier"] == 1.8
        assert changes[1].new_value["multiplier"] == 1.4
        assert changes[2].new_value is None
        assert changes[0].changed_at.tzinfo is not None
        assert overrides.get(record.id) is None

    def test_rolled_back_write_leaves_no_change(self, registry, overrides, session):
        with pytest.raises(InvalidScopeError):
            with transaction_scope(session):
                overrides.upsert("kpi.cvr", ScopeTier.VERTICAL, FITNESS, 1.8)
                overrides.upsert("kpi.cvr", ScopeTier.APP, FITNESS, 1.8)

        assert overrides.list_changes(entity_id="kpi.cvr") == []
