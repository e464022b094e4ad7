"""
In-flight fetch registry.

When several callers need the same (tier, key) refilled at once, only one
upstream call is made and every caller gets its result.
"""
import threading
import time
import logging
from typing import Any, Callable, Dict, Optional, Tuple
from dataclasses import dataclass, field

from .core import Tier

logger = logging.getLogger("cache.coalescer")

FetchKey = Tuple[Tier, str]


@dataclass
class InFlightFetch:
    """Tracks an in-progress upstream fetch."""
    done: threading.Event = field(default_factory=threading.Event)
    result: Optional[Any] = None
    error: Optional[BaseException] = None
    started_at: float = field(default_factory=time.time)
    waiters: int = 0


class RequestCoalescer:
    """
    At most one upstream fetch per (tier, key) at a time.

    - The first caller for a key runs ``fetch_fn``
    - Concurrent callers for the same key block on the in-flight record
    - All of them receive the same result, or the same exception
    - The record is dropped once the fetch finishes, so the next caller
      after completion starts a new fetch

    Usage:
        coalescer = RequestCoalescer()
        branches = coalescer.get_or_fetch(
            Tier.BRANCHES, "group/project",
            lambda: client.get_branches(42),
        )
    """

    def __init__(self, timeout: float = 30.0):
        """
        Args:
            timeout: Max seconds a waiter blocks on someone else's fetch
        """
        self._in_flight: Dict[FetchKey, InFlightFetch] = {}
        self._lock = threading.Lock()
        self._timeout = timeout
        self._coalesced = 0

    def get_or_fetch(self, tier: Tier, key: str, fetch_fn: Callable[[], Any]) -> Any:
        """
        Join the in-flight fetch for (tier, key) or start one.

        Raises:
            TimeoutError: If waiting on another caller's fetch times out
            Exception: Any error from fetch_fn is propagated to every caller
        """
        fetch_key = (tier, key)
        with self._lock:
            in_flight = self._in_flight.get(fetch_key)
            if in_flight is not None:
                in_flight.waiters += 1
                self._coalesced += 1
                is_initiator = False
                logger.debug(
                    f"Coalescing {tier.value} fetch for {key} (waiters: {in_flight.waiters})"
                )
            else:
                in_flight = InFlightFetch()
                self._in_flight[fetch_key] = in_flight
                is_initiator = True
                logger.debug(f"Initiating {tier.value} fetch for {key}")

        if is_initiator:
            try:
                in_flight.result = fetch_fn()
            except Exception as e:
                in_flight.error = e
                logger.warning(f"{tier.value} fetch failed for {key}: {e}")
            finally:
                with self._lock:
                    self._in_flight.pop(fetch_key, None)
                in_flight.done.set()
        elif not in_flight.done.wait(timeout=self._timeout):
            logger.error(f"Timeout waiting for coalesced {tier.value} fetch: {key}")
            raise TimeoutError(
                f"{tier.value} fetch for {key} timed out after {self._timeout}s"
            )

        if in_flight.error is not None:
            raise in_flight.error
        return in_flight.result

    def is_in_flight(self, tier: Tier, key: str) -> bool:
        with self._lock:
            return (tier, key) in self._in_flight

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight fetches."""
        with self._lock:
            return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        """Get coalescer statistics."""
        with self._lock:
            return {
                "active_requests": len(self._in_flight),
                "active_keys": [f"{tier.value}:{key}" for tier, key in self._in_flight],
                "coalesced": self._coalesced,
            }
