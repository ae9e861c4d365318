"""
Request analytics for the governor.

Counters only ever accumulate; reset() is the explicit operator action that
zeroes them.
"""
import threading
import time
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from .models import Priority


@dataclass(frozen=True)
class AnalyticsSnapshot:
    """Immutable copy of the counters at one instant."""
    total_requests: int
    successful_requests: int
    failed_requests: int
    duplicates_blocked: int
    rate_limit_hits: int
    average_response_time: float  # seconds
    requests_by_priority: Dict[str, int]
    errors_by_status: Dict[int, int]
    retry_attempts: int
    last_reset_time: float
    last_success_time: Optional[float] = None

    @property
    def error_rate(self) -> float:
        """Failed share of all requests, as a percentage."""
        if self.total_requests <= 0:
            return 0.0
        return self.failed_requests / self.total_requests * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalRequests": self.total_requests,
            "successfulRequests": self.successful_requests,
            "failedRequests": self.failed_requests,
            "duplicatesBlocked": self.duplicates_blocked,
            "rateLimitHits": self.rate_limit_hits,
            "averageResponseTimeMs": round(self.average_response_time * 1000, 1),
            "requestsByPriority": dict(self.requests_by_priority),
            "errorsByStatus": {str(k): v for k, v in self.errors_by_status.items()},
            "retryAttempts": self.retry_attempts,
            "lastResetTime": int(self.last_reset_time * 1000),
        }


@dataclass
class _Counters:
    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    duplicates_blocked: int = 0
    rate_limit_hits: int = 0
    average_response_time: float = 0.0
    requests_by_priority: Dict[str, int] = field(
        default_factory=lambda: {p.value: 0 for p in Priority}
    )
    errors_by_status: Dict[int, int] = field(default_factory=lambda: defaultdict(int))
    retry_attempts: int = 0
    last_reset_time: float = 0.0
    last_success_time: Optional[float] = None


class RequestAnalytics:
    """
    Records governor activity:
    - every submit, and which of them were duplicates
    - per-priority enqueues
    - successes with a running average response time
    - terminal failures and error statuses
    - retries and rate-limit blocks
    """

    def __init__(self, clock: Callable[[], float] = time.time, enabled: bool = True):
        self._clock = clock
        self._enabled = enabled
        self._lock = threading.Lock()
        self._counters = _Counters(last_reset_time=clock())

    def record_submitted(self) -> None:
        if not self._enabled:
            return
        with self._lock:
            self._counters.total_requests += 1

    def record_duplicate(self) -> None:
        if not self._enabled:
            return
        with self._lock:
            self._counters.duplicates_blocked += 1

    def record_enqueued(self, priority: Priority) -> None:
        if not self._enabled:
            return
        with self._lock:
            self._counters.requests_by_priority[priority.value] += 1

    def record_success(self, response_time: float) -> None:
        if not self._enabled:
            return
        with self._lock:
            c = self._counters
            c.average_response_time = (
                (c.average_response_time * c.successful_requests + response_time)
                / (c.successful_requests + 1)
            )
            c.successful_requests += 1
            c.last_success_time = self._clock()

    def record_error_status(self, status: Optional[int]) -> None:
        if not self._enabled or status is None:
            return
        with self._lock:
            self._counters.errors_by_status[status] += 1

    def record_failure(self, status: Optional[int] = None) -> None:
        if not self._enabled:
            return
        with self._lock:
            self._counters.failed_requests += 1
            if status is not None:
                self._counters.errors_by_status[status] += 1

    def record_retry(self) -> None:
        if not self._enabled:
            return
        with self._lock:
            self._counters.retry_attempts += 1

    def record_rate_limit_hit(self) -> None:
        if not self._enabled:
            return
        with self._lock:
            self._counters.rate_limit_hits += 1

    def snapshot(self) -> AnalyticsSnapshot:
        with self._lock:
            c = self._counters
            return AnalyticsSnapshot(
                total_requests=c.total_requests,
                successful_requests=c.successful_requests,
                failed_requests=c.failed_requests,
                duplicates_blocked=c.duplicates_blocked,
                rate_limit_hits=c.rate_limit_hits,
                average_response_time=c.average_response_time,
                requests_by_priority=dict(c.requests_by_priority),
                errors_by_status=dict(c.errors_by_status),
                retry_attempts=c.retry_attempts,
                last_reset_time=c.last_reset_time,
                last_success_time=c.last_success_time,
            )

    def reset(self) -> None:
        with self._lock:
            self._counters = _Counters(last_reset_time=self._clock())
