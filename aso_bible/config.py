"""
ASO Bible - Configuration.

============================================================
CONFIGURABLE BOUNDS AND BEHAVIOUR
============================================================

All engine parameters are configurable:
- Per entity type: base weight bounds, multiplier bounds,
  effective (clamp) range
- Resolver strict mode
- Effective value cache

Configuration can be loaded from:
- Default values
- Environment variables (ASO_BIBLE_*)
- YAML config file

============================================================
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
import logging

from .types import EntityType


logger = logging.getLogger(__name__)


# =============================================================
# ENTITY TYPE BOUNDS
# =============================================================


@dataclass(frozen=True)
class EntityTypeBounds:
    """
    Valid ranges for one entity type.

    - weight: accepted base weights on admin edits
    - multiplier: accepted override multipliers
    - effective: clamp range applied after combination
    """

    weight_min: float = 0.1
    weight_max: float = 3.0

    multiplier_min: float = 0.1
    multiplier_max: float = 3.0

    effective_min: float = 0.0
    effective_max: float = 3.0

    def __post_init__(self) -> None:
        for low, high, name in (
            (self.weight_min, self.weight_max, "weight"),
            (self.multiplier_min, self.multiplier_max, "multiplier"),
            (self.effective_min, self.effective_max, "effective"),
        ):
            if low > high:
                raise ValueError(f"{name} bounds inverted: {low} > {high}")
        if self.multiplier_min <= 0:
            raise ValueError("multiplier_min must be positive")

    @property
    def weight_range(self) -> Tuple[float, float]:
        return (self.weight_min, self.weight_max)

    @property
    def multiplier_range(self) -> Tuple[float, float]:
        return (self.multiplier_min, self.multiplier_max)

    @property
    def effective_range(self) -> Tuple[float, float]:
        return (self.effective_min, self.effective_max)

    def to_dict(self) -> Dict[str, float]:
        return {
            "weight_min": self.weight_min,
            "weight_max": self.weight_max,
            "multiplier_min": self.multiplier_min,
            "multiplier_max": self.multiplier_max,
            "effective_min": self.effective_min,
            "effective_max": self.effective_max,
        }


def _default_bounds() -> Dict[EntityType, EntityTypeBounds]:
    return {
        EntityType.KPI: EntityTypeBounds(),
        EntityType.INTENT_PATTERN: EntityTypeBounds(),
        EntityType.RULE: EntityTypeBounds(),
        # Formula components are fractional shares of a formula
        EntityType.FORMULA_COMPONENT: EntityTypeBounds(
            weight_min=0.01,
            weight_max=1.0,
            effective_max=1.0,
        ),
    }


# =============================================================
# RESOLVER / CACHE SETTINGS
# =============================================================


@dataclass
class ResolverConfig:
    """Scope resolver behaviour."""

    # Raise AmbiguousOverrideError instead of picking the highest version
    strict_mode: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {"strict_mode": self.strict_mode}


@dataclass
class CacheConfig:
    """Effective value cache settings."""

    enabled: bool = True
    ttl_seconds: float = 300.0
    max_entries: int = 10_000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "ttl_seconds": self.ttl_seconds,
            "max_entries": self.max_entries,
        }


# =============================================================
# MAIN CONFIG
# =============================================================


def _env_bool(name: str) -> Optional[bool]:
    raw = os.getenv(name)
    if raw is None:
        return None
    return raw.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class AsoBibleConfig:
    """Master configuration for the override engine."""

    bounds: Dict[EntityType, EntityTypeBounds] = field(default_factory=_default_bounds)
    resolver: ResolverConfig = field(default_factory=ResolverConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)

    def bounds_for(self, entity_type: EntityType) -> EntityTypeBounds:
        """Get bounds for an entity type, falling back to defaults."""
        return self.bounds.get(entity_type) or EntityTypeBounds()

    @classmethod
    def from_env(cls) -> "AsoBibleConfig":
        """
        Load configuration from environment variables.

        Recognised variables:
        - ASO_BIBLE_STRICT_MODE
        - ASO_BIBLE_CACHE_ENABLED
        - ASO_BIBLE_CACHE_TTL_SECONDS
        - ASO_BIBLE_CACHE_MAX_ENTRIES
        """
        config = cls()

        strict = _env_bool("ASO_BIBLE_STRICT_MODE")
        if strict is not None:
            config.resolver.strict_mode = strict

        cache_enabled = _env_bool("ASO_BIBLE_CACHE_ENABLED")
        if cache_enabled is not None:
            config.cache.enabled = cache_enabled
        if os.getenv("ASO_BIBLE_CACHE_TTL_SECONDS"):
            config.cache.ttl_seconds = float(os.getenv("ASO_BIBLE_CACHE_TTL_SECONDS"))
        if os.getenv("ASO_BIBLE_CACHE_MAX_ENTRIES"):
            config.cache.max_entries = int(os.getenv("ASO_BIBLE_CACHE_MAX_ENTRIES"))

        return config

    @classmethod
    def from_yaml(cls, path: Path) -> "AsoBibleConfig":
        """
        Load configuration from a YAML file.

        Example:
            resolver:
              strict_mode: true
            cache:
              ttl_seconds: 60
            bounds:
              kpi:
                multiplier_min: 0.5
                multiplier_max: 2.0
        """
        import yaml

        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}

        config = cls()

        if "resolver" in data:
            config.resolver = ResolverConfig(
                strict_mode=bool(data["resolver"].get("strict_mode", False)),
            )

        if "cache" in data:
            c = data["cache"]
            config.cache = CacheConfig(
                enabled=bool(c.get("enabled", True)),
                ttl_seconds=float(c.get("ttl_seconds", 300.0)),
                max_entries=int(c.get("max_entries", 10_000)),
            )

        for type_name, values in (data.get("bounds") or {}).items():
            entity_type = EntityType(type_name)
            merged = config.bounds_for(entity_type).to_dict()
            merged.update({k: float(v) for k, v in values.items()})
            config.bounds[entity_type] = EntityTypeBounds(**merged)

        logger.info(f"Loaded ASO Bible config from {path}")
        return config

    def to_dict(self) -> Dict[str, Any]:
        return {
            "bounds": {t.value: b.to_dict() for t, b in self.bounds.items()},
            "resolver": self.resolver.to_dict(),
            "cache": self.cache.to_dict(),
        }


# =============================================================
# GLOBAL CONFIG SINGLETON
# =============================================================


_default_config: Optional[AsoBibleConfig] = None


def get_config() -> AsoBibleConfig:
    """Get the global engine configuration."""
    global _default_config
    if _default_config is None:
        _default_config = AsoBibleConfig.from_env()
    return _default_config


def set_config(config: Optional[AsoBibleConfig]) -> None:
    """Set (or with None, reset) the global engine configuration."""
    global _default_config
    _default_config = config
