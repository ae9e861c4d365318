"""Multi-window rolling rate limiter for outbound API calls."""

from collections import deque
from threading import Lock
from time import time
from typing import Callable, Dict, List, Optional, Tuple

from .models import RateLimitConfig

# Window sizes in seconds
WINDOW_SECONDS: Dict[str, float] = {
    "second": 1.0,
    "minute": 60.0,
    "hour": 3600.0,
    "day": 86400.0,
}


class RollingWindowLimiter:
    """
    Sliding window limiter over four windows (second, minute, hour, day).

    A call is permitted only when none of the windows is at capacity.
    One timestamp list serves all windows; entries older than a day are pruned.
    Thread-safe implementation.
    """

    def __init__(
        self,
        config: Optional[RateLimitConfig] = None,
        clock: Callable[[], float] = time,
    ):
        self.config = config or RateLimitConfig()
        self._clock = clock
        self._timestamps: deque = deque()
        self._lock = Lock()

    def _limits(self) -> List[Tuple[str, int]]:
        return [
            ("second", self.config.requests_per_second),
            ("minute", self.config.requests_per_minute),
            ("hour", self.config.requests_per_hour),
            ("day", self.config.requests_per_day),
        ]

    def _prune(self, now: float) -> None:
        horizon = now - WINDOW_SECONDS["day"]
        while self._timestamps and self._timestamps[0] <= horizon:
            self._timestamps.popleft()

    def _count_in_window(self, now: float, window: float) -> int:
        count = 0
        for ts in reversed(self._timestamps):
            if now - ts < window:
                count += 1
            else:
                break
        return count

    def check(self, now: Optional[float] = None) -> Tuple[bool, float, Optional[str]]:
        """
        Check whether one more call fits in every window.

        Returns:
            Tuple of (allowed, wait_seconds, blocking_window).
            wait_seconds is how long until the earliest timestamp in the full
            window ages out.
        """
        now = self._clock() if now is None else now

        with self._lock:
            self._prune(now)
            for name, limit in self._limits():
                window = WINDOW_SECONDS[name]
                count = self._count_in_window(now, window)
                if count >= limit:
                    if limit <= 0:
                        return False, window, name
                    # Oldest timestamp still inside this window
                    oldest_in_window = self._timestamps[len(self._timestamps) - count]
                    wait = oldest_in_window + window - now
                    return False, max(wait, 0.001), name
            return True, 0.0, None

    def record(self, now: Optional[float] = None) -> None:
        """Timestamp one dispatched call into every window."""
        now = self._clock() if now is None else now
        with self._lock:
            self._timestamps.append(now)
            self._prune(now)

    def remaining(self, now: Optional[float] = None) -> Dict[str, int]:
        """
        Get the number of calls still allowed per window.
        """
        now = self._clock() if now is None else now
        with self._lock:
            self._prune(now)
            return {
                name: max(0, limit - self._count_in_window(now, WINDOW_SECONDS[name]))
                for name, limit in self._limits()
            }

    def update(self, config: RateLimitConfig) -> None:
        with self._lock:
            self.config = config

    def reset(self) -> None:
        """
        Forget all recorded calls.

        Useful for testing or admin override.
        """
        with self._lock:
            self._timestamps.clear()
