"""
Pydantic schemas for API responses
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class CachedPayload(BaseModel):
    """Data served from the tiered cache, with its staleness."""
    data: Any = None
    isStale: bool
    isRefreshing: bool = False
    age: Optional[float] = None
    source: str


class PipelinePayload(CachedPayload):
    """Latest pipeline of a branch plus its duration text."""
    durationText: str = "-"


class StatisticsPayload(CachedPayload):
    """Duration estimate plus its human readable form."""
    estimatedDurationText: Optional[str] = None


class ServerList(BaseModel):
    servers: List[str]


class CacheCleared(BaseModel):
    cleared: int


class CacheStats(BaseModel):
    cache: Dict[str, Any]
    orchestrator: Dict[str, Any]
