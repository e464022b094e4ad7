"""
Tiered cache with independent TTLs and stale-but-available reads.
"""
import threading
import logging
import time
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from .core import (
    CacheEntry,
    CacheResult,
    Freshness,
    Tier,
    branches_key,
    pipeline_key,
    statistics_key,
    structure_key,
)
from .store import DurableCacheStore, JsonTierStore
from .ttl_policies import classify, resolve_tier_ttls

logger = logging.getLogger("cache.manager")

Clock = Callable[[], float]


class TierCache:
    """
    One cache tier: an authoritative in-memory map plus its disk snapshot.

    - Reads never touch the disk and never raise
    - Stale entries are returned with ``is_stale=True``; refilling them is
      the caller's decision
    - Writes update the map under the tier lock, then persist a snapshot
      of the whole tier. An older snapshot never overwrites a newer one.
    """

    def __init__(
        self,
        tier: Tier,
        ttl: float,
        store: JsonTierStore,
        clock: Clock = time.time,
    ):
        self.tier = tier
        self.ttl = ttl
        self._store = store
        self._clock = clock

        self._entries: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()

        # Snapshot ordering
        self._persist_lock = threading.Lock()
        self._version = 0
        self._persisted_version = 0

        self._stats = {
            "hits_fresh": 0,
            "hits_stale": 0,
            "misses": 0,
            "writes": 0,
            "persist_failures": 0,
        }

    def load(self) -> int:
        """Replace the in-memory map with the disk snapshot. Returns entry count."""
        entries = self._store.load()
        with self._lock:
            self._entries = entries
            self._persisted_version = self._version
        if entries:
            logger.info(f"Loaded {len(entries)} {self.tier.value} entries from {self._store.path}")
        return len(entries)

    def read(self, key: str) -> CacheResult:
        """
        Look up a key.

        Returns:
            CacheResult with the value and staleness flag, or
            CacheResult.absent() if nothing is cached
        """
        with self._lock:
            entry = self._entries.get(key)
            now = self._clock()

            if entry is None:
                self._stats["misses"] += 1
                logger.debug(f"CACHE MISS [{self.tier.value}]: {key}")
                return CacheResult.absent()

            freshness = classify(now, entry.timestamp, self.ttl)
            if freshness is Freshness.STALE:
                self._stats["hits_stale"] += 1
            else:
                self._stats["hits_fresh"] += 1

        age = max(0.0, entry.age(now))
        logger.debug(
            f"CACHE HIT ({freshness.value}) [{self.tier.value}]: {key} [age={age:.1f}s]"
        )
        return CacheResult(
            data=entry.value,
            is_stale=freshness is Freshness.STALE,
            age=age,
            duration=entry.duration,
        )

    def write(self, key: str, value: Any, duration: Optional[float] = None) -> None:
        """
        Store a value stamped with the current time and persist the tier.

        Args:
            key: Tier-specific cache key
            value: Last successfully fetched payload
            duration: Seconds the upstream fetch took, if measured
        """
        timestamp = self._clock()
        with self._lock:
            previous = self._entries.get(key)
            # Timestamps never go backwards for a key, even if the wall clock does
            if previous is not None and previous.timestamp > timestamp:
                timestamp = previous.timestamp
            self._entries[key] = CacheEntry(
                value=value,
                timestamp=timestamp,
                tier=self.tier,
                duration=duration,
            )
            self._version += 1
            self._stats["writes"] += 1

        self._persist()

    def _persist(self) -> None:
        """Write the newest snapshot if nobody has written it yet."""
        with self._persist_lock:
            with self._lock:
                version = self._version
                if version <= self._persisted_version:
                    return
                snapshot = dict(self._entries)

            if self._store.save(snapshot):
                self._persisted_version = version
            else:
                with self._lock:
                    self._stats["persist_failures"] += 1

    def classify(self, key: str) -> Freshness:
        with self._lock:
            entry = self._entries.get(key)
            timestamp = entry.timestamp if entry is not None else None
        return classify(self._clock(), timestamp, self.ttl)

    def age(self, key: str) -> Optional[int]:
        """Whole seconds since ``key`` was written, or None if absent."""
        with self._lock:
            entry = self._entries.get(key)
        if entry is None:
            return None
        return int(max(0.0, entry.age(self._clock())))

    def keys(self) -> List[str]:
        with self._lock:
            return list(self._entries.keys())

    def clear(self) -> int:
        """
        Drop every entry and remove the tier file.

        Returns:
            Number of entries cleared
        """
        with self._persist_lock:
            with self._lock:
                count = len(self._entries)
                self._entries.clear()
                self._version += 1
                self._persisted_version = self._version
            self._store.remove()
        return count

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_stats(self) -> Dict[str, Any]:
        """Get tier statistics."""
        with self._lock:
            total_hits = self._stats["hits_fresh"] + self._stats["hits_stale"]
            total_requests = total_hits + self._stats["misses"]
            hit_rate = (total_hits / total_requests * 100) if total_requests > 0 else 0

            return {
                "entries": len(self._entries),
                "ttl_seconds": self.ttl,
                **self._stats,
                "hit_rate_percent": round(hit_rate, 1),
            }


class TieredCacheManager:
    """
    The four cache tiers behind one object.

    Tiers are fully isolated: the same key string in two tiers names two
    unrelated entries.

    Usage:
        cache = TieredCacheManager(Path(".cache"))
        cache.warm_load()
        result = cache.get_branches("group/project")
        if result.data is None or result.is_stale:
            ...  # refill from upstream
    """

    def __init__(
        self,
        directory: Union[str, Path],
        ttls: Optional[Mapping[Tier, Optional[float]]] = None,
        clock: Clock = time.time,
    ):
        """
        Initialize the cache manager.

        Args:
            directory: Directory holding the tier snapshot files
            ttls: Per-tier TTL overrides in seconds
            clock: Source of epoch seconds
        """
        self._store = DurableCacheStore(directory)
        self._ttls = resolve_tier_ttls(ttls)
        self._tiers: Dict[Tier, TierCache] = {
            tier: TierCache(tier, self._ttls[tier], self._store.for_tier(tier), clock)
            for tier in Tier
        }

    @property
    def directory(self) -> Path:
        return self._store.directory

    def tier(self, tier: Tier) -> TierCache:
        return self._tiers[tier]

    def ttl(self, tier: Tier) -> float:
        return self._ttls[tier]

    def warm_load(self) -> Dict[str, int]:
        """Load every tier snapshot from disk. Returns entry counts per tier."""
        return {tier.value: cache.load() for tier, cache in self._tiers.items()}

    def read(self, tier: Tier, key: str) -> CacheResult:
        return self._tiers[tier].read(key)

    def write(self, tier: Tier, key: str, value: Any, duration: Optional[float] = None) -> None:
        self._tiers[tier].write(key, value, duration)

    # ===== STRUCTURE (groups & projects) =====

    def get_projects(self, server_name: str) -> CacheResult:
        return self.read(Tier.STRUCTURE, structure_key(server_name))

    def set_projects(self, server_name: str, projects: List[Dict[str, Any]],
                     duration: Optional[float] = None) -> None:
        self.write(Tier.STRUCTURE, structure_key(server_name), projects, duration)

    # ===== BRANCHES =====

    def get_branches(self, project_path: str) -> CacheResult:
        return self.read(Tier.BRANCHES, branches_key(project_path))

    def set_branches(self, project_path: str, branches: List[Dict[str, Any]],
                     duration: Optional[float] = None) -> None:
        self.write(Tier.BRANCHES, branches_key(project_path), branches, duration)

    # ===== PIPELINE STATUS =====

    def get_pipeline(self, project_path: str, branch_name: str, include_jobs: bool) -> CacheResult:
        return self.read(Tier.PIPELINES, pipeline_key(project_path, branch_name, include_jobs))

    def set_pipeline(self, project_path: str, branch_name: str, pipeline: Optional[Dict[str, Any]],
                     include_jobs: bool, duration: Optional[float] = None) -> None:
        self.write(Tier.PIPELINES, pipeline_key(project_path, branch_name, include_jobs), pipeline, duration)

    # ===== STATISTICS =====

    def get_statistics(self, project_id: Union[int, str], branch_name: str) -> CacheResult:
        return self.read(Tier.STATISTICS, statistics_key(project_id, branch_name))

    def set_statistics(self, project_id: Union[int, str], branch_name: str,
                       statistics: Dict[str, Any]) -> None:
        self.write(Tier.STATISTICS, statistics_key(project_id, branch_name), statistics)

    # ===== MAINTENANCE =====

    def clear(self) -> int:
        """
        Clear every tier in memory and on disk.

        Returns:
            Number of entries cleared
        """
        count = sum(cache.clear() for cache in self._tiers.values())
        logger.info(f"Cleared {count} cache entries")
        return count

    def get_stats(self) -> Dict[str, Any]:
        """Get statistics for every tier."""
        return {
            "directory": str(self._store.directory),
            "tiers": {tier.value: cache.get_stats() for tier, cache in self._tiers.items()},
        }


def create_cache_manager(settings, clock: Clock = time.time) -> TieredCacheManager:
    """Build a cache manager from application settings and warm it from disk."""
    manager = TieredCacheManager(
        directory=settings.cache_directory,
        ttls={
            Tier.STRUCTURE: settings.cache_ttl_structure,
            Tier.BRANCHES: settings.cache_ttl_branches,
            Tier.PIPELINES: settings.cache_ttl_pipelines,
            Tier.STATISTICS: settings.cache_ttl_statistics,
        },
        clock=clock,
    )
    counts = manager.warm_load()
    logger.info(f"Cache ready at {manager.directory} {counts}")
    return manager
