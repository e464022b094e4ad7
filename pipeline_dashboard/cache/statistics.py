"""
Pipeline duration estimates from recent history.

The estimate is the median of the last N representative pipeline
durations for a branch. Canceled and skipped pipelines, and pipelines
without a positive duration, are not representative.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

NON_REPRESENTATIVE_STATUSES = frozenset({"canceled", "skipped"})

DEFAULT_SAMPLE_COUNT = 10


def median(values: Iterable[float]) -> Optional[float]:
    """Median of ``values``; average of the middle pair for even counts."""
    ordered = sorted(values)
    if not ordered:
        return None

    middle = len(ordered) // 2
    if len(ordered) % 2 == 0:
        return (ordered[middle - 1] + ordered[middle]) / 2
    return ordered[middle]


def _sample_duration(sample: Union[Mapping[str, Any], float, int]) -> Optional[float]:
    """Duration of a representative sample, else None."""
    if isinstance(sample, Mapping):
        if sample.get("status") in NON_REPRESENTATIVE_STATUSES:
            return None
        duration = sample.get("duration")
    else:
        duration = sample

    if isinstance(duration, bool) or not isinstance(duration, (int, float)):
        return None
    if duration <= 0:
        return None
    return float(duration)


def valid_durations(
    samples: Iterable[Union[Mapping[str, Any], float, int]],
    sample_count: int = DEFAULT_SAMPLE_COUNT,
) -> List[float]:
    """
    Durations of the most recent representative samples.

    Args:
        samples: Pipelines (dicts with ``status`` and ``duration``) or bare
            durations, newest first
        sample_count: Max number of samples to keep

    Returns:
        Up to ``sample_count`` positive durations, newest first
    """
    durations: List[float] = []
    for sample in samples:
        if len(durations) >= sample_count:
            break
        duration = _sample_duration(sample)
        if duration is not None:
            durations.append(duration)
    return durations


def _utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


@dataclass
class DurationEstimate:
    """Estimated total duration of a branch's pipeline."""
    project_id: Union[int, str]
    branch_name: str
    estimated_duration: Optional[float]
    sample_size: int
    last_updated: str = field(default_factory=_utcnow_iso)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "projectId": self.project_id,
            "branchName": self.branch_name,
            "estimatedDuration": self.estimated_duration,
            "sampleSize": self.sample_size,
            "lastUpdated": self.last_updated,
        }

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "DurationEstimate":
        return cls(
            project_id=raw["projectId"],
            branch_name=raw["branchName"],
            estimated_duration=raw.get("estimatedDuration"),
            sample_size=raw.get("sampleSize", 0),
            last_updated=raw.get("lastUpdated") or _utcnow_iso(),
        )


def estimate(
    project_id: Union[int, str],
    branch_name: str,
    samples: Iterable[Union[Mapping[str, Any], float, int]],
    sample_count: int = DEFAULT_SAMPLE_COUNT,
) -> DurationEstimate:
    """
    Median-of-last-N duration estimate for a branch.

    ``estimated_duration`` is None when no representative sample remains.
    """
    durations = valid_durations(samples, sample_count)
    return DurationEstimate(
        project_id=project_id,
        branch_name=branch_name,
        estimated_duration=median(durations),
        sample_size=len(durations),
    )


# ===== DISPLAY HELPERS =====

def format_duration(seconds: Optional[float]) -> str:
    """
    Human readable duration.

    Examples: "2m 15s", "45s", "1h 23m 45s". Empty or zero is "0s".
    """
    if seconds is None or seconds != seconds or seconds == 0:
        return "0s"

    total = int(seconds)
    hours = total // 3600
    minutes = (total % 3600) // 60
    secs = total % 60

    parts = []
    if hours > 0:
        parts.append(f"{hours}h")
    if minutes > 0:
        parts.append(f"{minutes}m")
    if secs > 0 or not parts:
        parts.append(f"{secs}s")
    return " ".join(parts)


def elapsed_seconds(started_at: Optional[str], now: Optional[datetime] = None) -> Optional[int]:
    """Whole seconds since ``started_at`` (ISO-8601), None if missing or invalid."""
    if not started_at:
        return None
    try:
        started = datetime.fromisoformat(started_at.replace("Z", "+00:00"))
    except ValueError:
        return None
    if started.tzinfo is None:
        started = started.replace(tzinfo=timezone.utc)

    now = now or datetime.now(timezone.utc)
    return int((now - started).total_seconds())


def format_pipeline_duration(
    pipeline: Mapping[str, Any],
    estimated_duration: Optional[float],
    now: Optional[datetime] = None,
) -> str:
    """
    Duration text for a pipeline.

    Running pipelines show elapsed against the estimate ("2m 15s / ~7m 30s");
    finished ones show their actual duration; "-" when unknown.
    """
    if pipeline.get("status") == "running":
        elapsed = elapsed_seconds(pipeline.get("started_at"), now)
        elapsed_text = format_duration(elapsed) if elapsed is not None and elapsed > 0 else "?"
        estimated_text = (
            f"~{format_duration(estimated_duration)}"
            if estimated_duration is not None and estimated_duration > 0
            else "?"
        )
        return f"{elapsed_text} / {estimated_text}"

    duration = pipeline.get("duration")
    if isinstance(duration, (int, float)) and duration == duration:
        return format_duration(duration)
    return "-"
