"""
Tests for ASO Bible Configuration.

Tests cover:
- Default bounds per entity type
- Bounds validation
- Loading from environment variables
- Loading from YAML
- Global config accessors
"""

import pytest

from aso_bible.config import (
    AsoBibleConfig,
    EntityTypeBounds,
    get_config,
    set_config,
)
from aso_bible.types import EntityType


class TestDefaults:
    """Default configuration values."""

    def test_kpi_bounds(self):
        bounds = AsoBibleConfig().bounds_for(EntityType.KPI)
        assert bounds.weight_range == (0.1, 3.0)
        assert bounds.multiplier_range == (0.1, 3.0)
        assert bounds.effective_range == (0.0, 3.0)

    def test_formula_component_bounds(self):
        bounds = AsoBibleConfig().bounds_for(EntityType.FORMULA_COMPONENT)
        assert bounds.weight_range == (0.01, 1.0)
        assert bounds.effective_max == 1.0

    def test_resolver_and_cache_defaults(self):
        config = AsoBibleConfig()
        assert config.resolver.strict_mode is False
        assert config.cache.enabled is True
        assert config.cache.ttl_seconds == 300.0

    def test_inverted_bounds_rejected(self):
        with pytest.raises(ValueError):
            EntityTypeBounds(weight_min=2.0, weight_max=1.0)

    def test_non_positive_multiplier_min_rejected(self):
        with pytest.raises(ValueError):
            EntityTypeBounds(multiplier_min=0.0)

    def test_to_dict(self):
        data = AsoBibleConfig().to_dict()
        assert data["bounds"]["kpi"]["multiplier_max"] == 3.0
        assert data["resolver"] == {"strict_mode": False}


class TestFromEnv:
    """Environment variable loading."""

    def test_reads_variables(self, monkeypatch):
        monkeypatch.setenv("ASO_BIBLE_STRICT_MODE", "true")
        monkeypatch.setenv("ASO_BIBLE_CACHE_ENABLED", "0")
        monkeypatch.setenv("ASO_BIBLE_CACHE_TTL_SECONDS", "30")
        monkeypatch.setenv("ASO_BIBLE_CACHE_MAX_ENTRIES", "50")

        config = AsoBibleConfig.from_env()
        assert config.resolver.strict_mode is True
        assert config.cache.enabled is False
        assert config.cache.ttl_seconds == 30.0
        assert config.cache.max_entries == 50

    def test_unset_variables_keep_defaults(self):
        config = AsoBibleConfig.from_env()
        assert config.resolver.strict_mode is False
        assert config.cache.enabled is True


class TestFromYaml:
    """YAML loading."""

    def test_loads_sections(self, tmp_path):
        path = tmp_path / "aso_bible.yaml"
        path.write_text(
            "resolver:\n"
            "  strict_mode: true\n"
            "cache:\n"
            "  ttl_seconds: 60\n"
            "bounds:\n"
            "  kpi:\n"
            "    multiplier_min: 0.5\n"
            "    multiplier_max: 2.0\n"
        )

        config = AsoBibleConfig.from_yaml(path)
        assert config.resolver.strict_mode is True
        assert config.cache.ttl_seconds == 60.0

        kpi = config.bounds_for(EntityType.KPI)
        assert kpi.multiplier_range == (0.5, 2.0)
        assert kpi.effective_max == 3.0
        assert config.bounds_for(EntityType.RULE).multiplier_range == (0.1, 3.0)

    def test_empty_file_gives_defaults(self, tmp_path):
        path = tmp_path / "empty.yaml"
        path.write_text("")

        assert AsoBibleConfig.from_yaml(path).to_dict() == AsoBibleConfig().to_dict()

    def test_unknown_entity_type_rejected(self, tmp_path):
        path = tmp_path / "bad.yaml"
        path.write_text("bounds:\n  widget:\n    weight_max: 2.0\n")

        with pytest.raises(ValueError):
            AsoBibleConfig.from_yaml(path)


def test_global_config_roundtrip(monkeypatch):
    """get_config builds from env once; set_config replaces or resets it."""
    monkeypatch.setenv("ASO_BIBLE_STRICT_MODE", "1")
    assert get_config().resolver.strict_mode is True

    custom = AsoBibleConfig()
    set_config(custom)
    assert get_config() is custom

    set_config(None)
    monkeypatch.delenv("ASO_BIBLE_STRICT_MODE")
    assert get_config().resolver.strict_mode is False
