"""
Tiered pipeline cache with independent TTLs, stale-but-available reads,
durable snapshots and fetch coalescing.
"""
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
from .ttl_policies import DEFAULT_TIER_TTLS, classify, resolve_tier_ttls
from .store import DurableCacheStore, JsonTierStore
from .coalescer import RequestCoalescer
from .manager import TierCache, TieredCacheManager, create_cache_manager
from .statistics import DurationEstimate, estimate, median

__all__ = [
    # Core types
    "CacheEntry",
    "CacheResult",
    "Freshness",
    "Tier",
    "branches_key",
    "pipeline_key",
    "statistics_key",
    "structure_key",
    # TTL policies
    "DEFAULT_TIER_TTLS",
    "classify",
    "resolve_tier_ttls",
    # Persistence
    "DurableCacheStore",
    "JsonTierStore",
    # Coalescing
    "RequestCoalescer",
    # Manager
    "TierCache",
    "TieredCacheManager",
    "create_cache_manager",
    # Statistics
    "DurationEstimate",
    "estimate",
    "median",
]
