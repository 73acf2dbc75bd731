"""Read-Cache vor dem Store.

Begrenzte Abbildung Query-Key → Ergebnis mit Einfügezeitpunkt.
Einträge verfallen nach ``ttl_seconds`` (geprüft beim Lesen, kein
Timer). Wird die Kapazität überschritten, fliegt genau der am längsten
eingefügte Eintrag raus, unabhängig davon wie oft er gelesen wurde.
Schreibende Store-Operationen leeren den gesamten Cache.
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from cronkeeper.utils.logging import get_logger

log = get_logger(__name__)


@dataclass
class _CacheEntry:
    value: Any
    inserted_at: float


@dataclass
class _CacheStats:
    """Interne Statistiken."""

    hits: int = 0
    misses: int = 0
    expired: int = 0
    evicted: int = 0
    invalidations: int = 0


class QueryCache:
    """TTL-Cache mit Eviction nach Einfügereihenfolge."""

    def __init__(
        self,
        *,
        ttl_seconds: float = 300.0,
        max_entries: int = 1000,
        enabled: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._ttl = ttl_seconds
        self._max_entries = max_entries
        self._enabled = enabled
        self._clock = clock
        # dict hält die Einfügereihenfolge, das erste Element ist das älteste
        self._entries: dict[str, _CacheEntry] = {}
        self._generation = 0
        self._stats = _CacheStats()

    @staticmethod
    def key(operation: str, params: dict[str, Any] | None = None) -> str:
        """Cache-Key aus Operationsname und Parametern."""
        return f"{operation}:{json.dumps(params or {}, sort_keys=True, default=str)}"

    @property
    def enabled(self) -> bool:
        return self._enabled

    def get(self, key: str) -> Any | None:
        """Liefert den Wert oder None bei Miss bzw. abgelaufenem Eintrag."""
        if not self._enabled:
            return None
        entry = self._entries.get(key)
        if entry is None:
            self._stats.misses += 1
            return None
        if self._clock() - entry.inserted_at > self._ttl:
            del self._entries[key]
            self._stats.expired += 1
            self._stats.misses += 1
            return None
        self._stats.hits += 1
        return entry.value

    @property
    def generation(self) -> int:
        """Zähler, der bei jedem clear() steigt."""
        return self._generation

    def set(self, key: str, value: Any, *, generation: int | None = None) -> None:
        """Speichert einen Wert.

        Mit ``generation`` wird der Wert verworfen, wenn seit dem Lesen aus
        dem Backend ein clear() lief. So landet kein Ergebnis im Cache, das
        älter ist als ein bereits abgeschlossener Schreibvorgang.
        """
        if not self._enabled:
            return
        if generation is not None and generation != self._generation:
            return
        # Neu einfügen, damit der Key ans Ende der Reihenfolge wandert
        self._entries.pop(key, None)
        self._entries[key] = _CacheEntry(value=value, inserted_at=self._clock())
        while len(self._entries) > self._max_entries:
            oldest = next(iter(self._entries))
            del self._entries[oldest]
            self._stats.evicted += 1

    def clear(self) -> None:
        """Verwirft alle Einträge."""
        if self._entries:
            log.debug("cache_cleared", entries=len(self._entries))
        self._entries.clear()
        self._generation += 1
        self._stats.invalidations += 1

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    @property
    def stats(self) -> dict[str, int]:
        """Statistiken des Caches."""
        return {
            "entries": len(self._entries),
            "hits": self._stats.hits,
            "misses": self._stats.misses,
            "expired": self._stats.expired,
            "evicted": self._stats.evicted,
            "invalidations": self._stats.invalidations,
        }
