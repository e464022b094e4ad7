"""
Core cache data structures.
"""
from dataclasses import dataclass
from typing import Any, Dict, Optional, Union
from enum import Enum


class Tier(Enum):
    """Independently refreshed cache namespaces."""
    STRUCTURE = "structure"      # groups & projects per server
    BRANCHES = "branches"        # branches per project
    PIPELINES = "pipelines"      # latest pipeline per branch
    STATISTICS = "statistics"    # median duration per branch

    @property
    def filename(self) -> str:
        """Snapshot file for this tier inside the cache directory."""
        return _TIER_FILES[self]


_TIER_FILES = {
    Tier.STRUCTURE: "groups-projects.json",
    Tier.BRANCHES: "branches.json",
    Tier.PIPELINES: "pipelines.json",
    Tier.STATISTICS: "pipeline-statistics.json",
}


class Freshness(Enum):
    """Classification of a cache lookup."""
    FRESH = "fresh"     # Within TTL, serve as-is
    STALE = "stale"     # Past TTL, serve and refill in background
    ABSENT = "absent"   # Nothing cached, must fetch


@dataclass
class CacheEntry:
    """
    A cached value with the instant it was written.

    Timestamps are epoch seconds in memory and epoch milliseconds on disk.
    """
    value: Any
    timestamp: float
    tier: Tier
    duration: Optional[float] = None  # Seconds the upstream fetch took

    def age(self, now: float) -> float:
        """Seconds since the entry was written."""
        return now - self.timestamp

    def to_dict(self) -> Dict[str, Any]:
        """Serialise to the snapshot document form."""
        return {
            "timestamp": int(round(self.timestamp * 1000)),
            "data": self.value,
            "duration": int(round(self.duration * 1000)) if self.duration is not None else None,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any], tier: Tier) -> "CacheEntry":
        """
        Rebuild an entry from its snapshot form.

        Raises:
            KeyError, TypeError, ValueError: If the record is malformed
        """
        if "data" not in raw:
            raise KeyError("data")
        timestamp = float(raw["timestamp"]) / 1000
        duration = raw.get("duration")
        return cls(
            value=raw["data"],
            timestamp=timestamp,
            tier=tier,
            duration=float(duration) / 1000 if duration is not None else None,
        )


@dataclass
class CacheResult:
    """
    Outcome of a tier read.

    ``data`` is None when nothing is cached; ``is_stale`` is only ever
    True when ``data`` came from an entry older than the tier TTL.
    """
    data: Any
    is_stale: bool
    age: Optional[float] = None
    duration: Optional[float] = None

    @classmethod
    def absent(cls) -> "CacheResult":
        return cls(data=None, is_stale=False, age=None)

    @property
    def freshness(self) -> Freshness:
        if self.age is None:
            return Freshness.ABSENT
        return Freshness.STALE if self.is_stale else Freshness.FRESH

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON response."""
        return {
            "data": self.data,
            "isStale": self.is_stale,
            "age": round(self.age, 3) if self.age is not None else None,
        }


# ===== KEY COMPOSITION =====

def structure_key(server_name: str) -> str:
    """Structure tier: one entry per GitLab server."""
    return server_name


def branches_key(project_path: str) -> str:
    """Branches tier: one entry per project path."""
    return project_path


def pipeline_key(project_path: str, branch_name: str, include_jobs: bool) -> str:
    """
    Pipelines tier key.

    The with-jobs and without-jobs payloads are different shapes, so the
    flag is part of the key and both are cached side by side.
    """
    suffix = "jobs" if include_jobs else "nojobs"
    return f"{project_path}:{branch_name}:{suffix}"


def statistics_key(project_id: Union[int, str], branch_name: str) -> str:
    """Statistics tier: one estimate per (project id, branch)."""
    return f"{project_id}:{branch_name}"
