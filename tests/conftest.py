"""
Shared pytest fixtures.
"""

import pytest

from aso_bible.config import set_config


@pytest.fixture(autouse=True)
def reset_global_config(monkeypatch):
    """Every test starts from default configuration."""
    for name in (
        "ASO_BIBLE_STRICT_MODE",
        "ASO_BIBLE_CACHE_ENABLED",
        "ASO_BIBLE_CACHE_TTL_SECONDS",
        "ASO_BIBLE_CACHE_MAX_ENTRIES",
    ):
        monkeypatch.delenv(name, raising=False)
    set_config(None)
    yield
    set_config(None)
