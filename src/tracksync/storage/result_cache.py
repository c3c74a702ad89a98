"""TTL-based cache for read results.

Caches list results per entity type so repeated reads avoid the database.
Entries are invalidated by local-store change notifications for their
entity type, and fully cleared on identity changes.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any

from tracksync.core.entities import EntityType

logger = logging.getLogger(__name__)


@dataclass
class CacheEntry:
    key: str
    data: Any
    stored_at: float
    valid: bool = True


@dataclass(frozen=True)
class CacheStatus:
    """Introspection snapshot for the operational surface."""

    size: int
    valid_entries: int
    max_entries: int
    ttl_seconds: float
    hits: int
    misses: int
    hit_rate: float
    invalidations: int
    keys: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "size": self.size,
            "valid_entries": self.valid_entries,
            "max_entries": self.max_entries,
            "ttl_seconds": self.ttl_seconds,
            "hits": self.hits,
            "misses": self.misses,
            "hit_rate": round(self.hit_rate, 4),
            "invalidations": self.invalidations,
            "keys": list(self.keys),
        }


class ResultCache:
    """Simple TTL cache keyed by ``"<entity_type>:<qualifier>"``.

    Safe for single-threaded async use (no awaits inside methods).

    A per-type generation counter lets callers detect that a write
    happened between reading the store and caching the result:
    ``set(..., generation=g)`` is ignored if the type was invalidated
    after ``g`` was taken.
    """

    def __init__(self, ttl_seconds: float = 300.0, max_entries: int = 256) -> None:
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._entries: dict[str, CacheEntry] = {}
        self._generations: dict[str, int] = {}
        self._hits = 0
        self._misses = 0
        self._invalidations = 0

    @staticmethod
    def key_for(entity_type: EntityType | str, qualifier: str = "list") -> str:
        return f"{EntityType(entity_type).value}:{qualifier}"

    def generation(self, entity_type: EntityType | str) -> int:
        return self._generations.get(EntityType(entity_type).value, 0)

    def get(self, key: str) -> Any | None:
        """Return cached data, or None on a miss, expired or invalidated entry."""
        entry = self._entries.get(key)
        if entry is None or not self._is_fresh(entry):
            if entry is not None:
                del self._entries[key]
            self._misses += 1
            return None
        self._hits += 1
        return entry.data

    def has(self, key: str) -> bool:
        entry = self._entries.get(key)
        return entry is not None and self._is_fresh(entry)

    def set(self, key: str, data: Any, *, generation: int | None = None) -> bool:
        """Cache data under key. Returns False if the write was stale."""
        type_name = key.split(":", 1)[0]
        if generation is not None and generation != self._generations.get(type_name, 0):
            logger.debug("Dropping stale cache write for %s", key)
            return False
        if key not in self._entries and len(self._entries) >= self._max_entries:
            self._evict_oldest()
        self._entries[key] = CacheEntry(key=key, data=data, stored_at=time.monotonic())
        return True

    def invalidate(self, key: str) -> bool:
        entry = self._entries.get(key)
        if entry is None or not entry.valid:
            return False
        entry.valid = False
        self._invalidations += 1
        return True

    def invalidate_type(self, entity_type: EntityType | str) -> int:
        """Invalidate every entry for an entity type. Returns count invalidated."""
        type_name = EntityType(entity_type).value
        self._generations[type_name] = self._generations.get(type_name, 0) + 1
        prefix = f"{type_name}:"
        dropped = 0
        for key, entry in self._entries.items():
            if key.startswith(prefix) and entry.valid:
                entry.valid = False
                dropped += 1
        self._invalidations += dropped
        return dropped

    def clear(self) -> None:
        """Drop everything (identity change, forced refresh, restore)."""
        for type_name in {k.split(":", 1)[0] for k in self._entries} | set(self._generations):
            self._generations[type_name] = self._generations.get(type_name, 0) + 1
        self._invalidations += len(self._entries)
        self._entries.clear()

    def status(self) -> CacheStatus:
        total = self._hits + self._misses
        return CacheStatus(
            size=len(self._entries),
            valid_entries=sum(1 for e in self._entries.values() if self._is_fresh(e)),
            max_entries=self._max_entries,
            ttl_seconds=self._ttl,
            hits=self._hits,
            misses=self._misses,
            hit_rate=self._hits / total if total > 0 else 0.0,
            invalidations=self._invalidations,
            keys=tuple(sorted(self._entries)),
        )

    def _is_fresh(self, entry: CacheEntry) -> bool:
        return entry.valid and time.monotonic() - entry.stored_at < self._ttl

    def _evict_oldest(self) -> None:
        """Remove invalidated entries, or else the oldest one, to make room."""
        if not self._entries:
            return
        stale = [k for k, e in self._entries.items() if not e.valid]
        if stale:
            for key in stale:
                del self._entries[key]
            return
        oldest_key = min(self._entries, key=lambda k: self._entries[k].stored_at)
        del self._entries[oldest_key]
