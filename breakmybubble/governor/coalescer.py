"""
In-flight request tracking for duplicate call suppression.

When several callers submit the same dedup key while a call for it is still
outstanding, they all receive the same future and only one upstream call is
made.
"""
import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

logger = logging.getLogger("governor.coalescer")

# An entry older than this is not treated as a duplicate even if still present
MAX_IN_FLIGHT_AGE_SECONDS = 30.0


@dataclass
class InFlightRequest:
    """Tracks an outstanding upstream call shared by duplicate callers."""
    dedup_key: str
    future: Future
    started_at: float
    waiter_count: int = 0
    request_id: Optional[str] = field(default=None)


class InFlightRegistry:
    """
    Maps dedup keys to the future of the call currently serving them.

    Pattern:
    - First submit for a key registers its future
    - Later submits for the same key join that future while it is younger
      than max_age
    - The entry is released when its future settles

    The governor calls lookup() and register() under its own lock so the
    check-then-register sequence is atomic; the registry lock only protects
    its own map.
    """

    def __init__(
        self,
        max_age: float = MAX_IN_FLIGHT_AGE_SECONDS,
        clock: Callable[[], float] = time.time,
    ):
        self._in_flight: Dict[str, InFlightRequest] = {}
        self._lock = threading.Lock()
        self._max_age = max_age
        self._clock = clock

    def lookup(self, dedup_key: str) -> Optional[InFlightRequest]:
        """
        Return the live entry for dedup_key, or None.

        Entries past max_age are ignored, not removed; their own settlement
        removes them.
        """
        with self._lock:
            entry = self._in_flight.get(dedup_key)
            if entry is None:
                return None
            if self._clock() - entry.started_at >= self._max_age:
                logger.debug(f"Ignoring stale in-flight entry for {dedup_key}")
                return None
            entry.waiter_count += 1
            logger.debug(
                f"Coalescing request for {dedup_key} "
                f"(waiters: {entry.waiter_count})"
            )
            return entry

    def register(self, dedup_key: str, future: Future, request_id: Optional[str] = None) -> InFlightRequest:
        entry = InFlightRequest(
            dedup_key=dedup_key,
            future=future,
            started_at=self._clock(),
            request_id=request_id,
        )
        with self._lock:
            self._in_flight[dedup_key] = entry
        logger.debug(f"Registered in-flight request {dedup_key}")
        return entry

    def release(self, dedup_key: str, future: Future) -> bool:
        """
        Remove the entry for dedup_key if it still belongs to future.

        A newer call may have replaced a stale entry under the same key.
        """
        with self._lock:
            entry = self._in_flight.get(dedup_key)
            if entry is not None and entry.future is future:
                del self._in_flight[dedup_key]
                return True
            return False

    def clear(self) -> None:
        with self._lock:
            self._in_flight.clear()

    @property
    def active_requests(self) -> int:
        """Number of currently in-flight requests."""
        with self._lock:
            return len(self._in_flight)

    def get_stats(self) -> Dict[str, Any]:
        """Get registry statistics."""
        with self._lock:
            return {
                "active_requests": len(self._in_flight),
                "active_keys": list(self._in_flight.keys()),
            }
