"""
TTL configuration and freshness classification.
"""
from typing import Dict, Mapping, Optional

from .core import Freshness, Tier


# TTL Configuration by tier (in seconds)
DEFAULT_TIER_TTLS: Dict[Tier, float] = {
    Tier.STRUCTURE: 1800,     # 30 minutes
    Tier.BRANCHES: 300,       # 5 minutes
    Tier.PIPELINES: 5,        # 5 seconds
    Tier.STATISTICS: 1800,    # 30 minutes, estimates move slowly
}


def classify(now: float, timestamp: Optional[float], ttl: float) -> Freshness:
    """
    Classify an entry by age.

    Staleness is advisory: a stale entry is still served. An entry is
    stale only once its age strictly exceeds the TTL, so with a TTL of 0
    a read in the same instant as the write is still fresh.

    Args:
        now: Current epoch seconds
        timestamp: Epoch seconds the entry was written, None if absent
        ttl: Tier TTL in seconds

    Returns:
        Freshness.ABSENT, STALE or FRESH
    """
    if timestamp is None:
        return Freshness.ABSENT
    if now - timestamp > ttl:
        return Freshness.STALE
    return Freshness.FRESH


def resolve_tier_ttls(overrides: Optional[Mapping[Tier, Optional[float]]] = None) -> Dict[Tier, float]:
    """
    Merge per-tier overrides over the defaults.

    None values fall back to the default for that tier.

    Raises:
        ValueError: If any resulting TTL is negative
    """
    ttls = dict(DEFAULT_TIER_TTLS)
    for tier, ttl in (overrides or {}).items():
        if ttl is not None:
            ttls[tier] = ttl

    for tier, ttl in ttls.items():
        if ttl < 0:
            raise ValueError(f"TTL for {tier.value} must be >= 0, got {ttl}")
    return ttls
