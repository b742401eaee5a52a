"""
Availability Cache
==================

Memoizes node availability per scenario.

An entry is served only while ALL of these hold:
- the scenario is still at the version the entry was computed for
- the tree still hashes to the value the entry was computed for
- the entry is younger than the refresh interval

The cache is a derived artifact: dropping it never loses information.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Optional, Tuple
import logging
import threading

from ..contracts.state import NodeAvailability
from ..temporal.clock import LogicalClock


logger = logging.getLogger(__name__)

CacheKey = Tuple[str, str]  # (tenant_id, scenario_id)


@dataclass(frozen=True)
class CacheEntry:
    version: int
    tree_hash: str
    computed_at: datetime
    availability: Tuple[NodeAvailability, ...]


@dataclass
class NavigationConfig:
    """Configuration for navigation."""
    cache_refresh_seconds: float = 300.0
    enable_cache: bool = True


class AvailabilityCache:

    def __init__(self, refresh_seconds: float = 300.0, clock: Optional[LogicalClock] = None):
        self._refresh = timedelta(seconds=refresh_seconds)
        self._clock = clock or LogicalClock.live()
        self._entries: Dict[CacheKey, CacheEntry] = {}
        self._lock = threading.Lock()
        self._hits = 0
        self._misses = 0

    def get(
        self,
        tenant_id: str,
        scenario_id: str,
        version: int,
        tree_hash: str,
    ) -> Optional[Tuple[NodeAvailability, ...]]:
        key = (tenant_id, scenario_id)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                return None
            if (
                entry.version != version
                or entry.tree_hash != tree_hash
                or self._clock.now() - entry.computed_at >= self._refresh
            ):
                del self._entries[key]
                self._misses += 1
                return None
            self._hits += 1
            return entry.availability

    def put(
        self,
        tenant_id: str,
        scenario_id: str,
        version: int,
        tree_hash: str,
        availability: Tuple[NodeAvailability, ...],
    ) -> None:
        entry = CacheEntry(
            version=version,
            tree_hash=tree_hash,
            computed_at=self._clock.now(),
            availability=tuple(availability),
        )
        with self._lock:
            self._entries[(tenant_id, scenario_id)] = entry

    def invalidate(self, tenant_id: str, scenario_id: str) -> None:
        with self._lock:
            self._entries.pop((tenant_id, scenario_id), None)

    def clear(self) -> None:
        with self._lock:
            dropped = len(self._entries)
            self._entries.clear()
        logger.info("Availability cache cleared (%d entries)", dropped)

    @property
    def stats(self) -> Dict[str, float]:
        with self._lock:
            total = self._hits + self._misses
            return {
                'entries': len(self._entries),
                'hits': self._hits,
                'misses': self._misses,
                'hit_rate': self._hits / total if total else 0.0,
            }
