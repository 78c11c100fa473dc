"""
ASO Bible - Effective Value Cache.

In-process cache of computed effective values keyed by
(entity id, evaluation context). Entries expire after a TTL
and are dropped for an entity on every store write, so a read
after a write never observes the pre-write value.
"""

import threading
import time
from collections import OrderedDict
from typing import Callable, Dict, Optional, Tuple
import logging

from .config import CacheConfig
from .types import EffectiveValue, EvaluationContext, WriteEvent


logger = logging.getLogger(__name__)


CacheKey = Tuple[str, Tuple[Optional[str], ...]]
Generation = Tuple[int, int]


class EffectiveValueCache:
    """TTL + LRU cache with per-entity invalidation."""

    def __init__(
        self,
        config: Optional[CacheConfig] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or CacheConfig()
        self._clock = clock
        self._entries: "OrderedDict[CacheKey, Tuple[float, EffectiveValue]]" = OrderedDict()
        # Bumped on every invalidation; a put computed before one is dropped
        self._generations: Dict[str, int] = {}
        self._epoch = 0
        self._lock = threading.Lock()

        self.hits = 0
        self.misses = 0
        self.invalidations = 0

    @property
    def enabled(self) -> bool:
        return self.config.enabled

    def get(self, entity_id: str, context: EvaluationContext) -> Optional[EffectiveValue]:
        if not self.enabled:
            return None

        key = (entity_id, context.cache_key())
        with self._lock:
            item = self._entries.get(key)
            if item is None:
                self.misses += 1
                return None

            stored_at, value = item
            if self._clock() - stored_at > self.config.ttl_seconds:
                del self._entries[key]
                self.misses += 1
                return None

            self._entries.move_to_end(key)
            self.hits += 1
            return value

    def generation(self, entity_id: str) -> Generation:
        """Token to pass to put() for a value computed after this call."""
        with self._lock:
            return (self._epoch, self._generations.get(entity_id, 0))

    def put(self, value: EffectiveValue, generation: Optional[Generation] = None) -> None:
        if not self.enabled:
            return

        key = (value.entity_id, value.context.cache_key())
        with self._lock:
            current = (self._epoch, self._generations.get(value.entity_id, 0))
            if generation is not None and generation != current:
                logger.debug(f"Skipped caching {value.entity_id}: invalidated while computing")
                return
            self._entries[key] = (self._clock(), value)
            self._entries.move_to_end(key)
            while len(self._entries) > self.config.max_entries:
                self._entries.popitem(last=False)

    def invalidate_entity(self, entity_id: str) -> int:
        """Drop every cached value for an entity. Returns the count dropped."""
        with self._lock:
            stale = [key for key in self._entries if key[0] == entity_id]
            for key in stale:
                del self._entries[key]
            self._generations[entity_id] = self._generations.get(entity_id, 0) + 1
            self.invalidations += 1

        if stale:
            logger.debug(f"Invalidated {len(stale)} cached values for {entity_id}")
        return len(stale)

    def on_write(self, event: WriteEvent) -> None:
        """Store write listener."""
        self.invalidate_entity(event.entity_id)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._epoch += 1

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_statistics(self) -> Dict[str, int]:
        return {
            "size": len(self),
            "hits": self.hits,
            "misses": self.misses,
            "invalidations": self.invalidations,
        }
