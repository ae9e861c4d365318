"""
Data structures for governed outbound requests.
"""
import hashlib
import json
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Optional


class Priority(Enum):
    """Queue priority; lower rank drains first."""
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]

    def demoted(self) -> "Priority":
        """One level lower, bottoming out at LOW."""
        if self is Priority.HIGH:
            return Priority.MEDIUM
        return Priority.LOW

    @classmethod
    def coerce(cls, value: Any) -> "Priority":
        if isinstance(value, cls):
            return value
        return cls(str(value).lower())


_PRIORITY_RANK = {Priority.HIGH: 0, Priority.MEDIUM: 1, Priority.LOW: 2}


class CallState(Enum):
    QUEUED = "queued"
    RATE_LIMIT_WAIT = "rate_limit_wait"
    EXECUTING = "executing"
    RETRY_SCHEDULED = "retry_scheduled"
    SUCCEEDED = "succeeded"
    FAILED_TERMINAL = "failed_terminal"


DEFAULT_RETRYABLE_STATUSES: FrozenSet[int] = frozenset({429, 502, 503, 504, 408})


@dataclass(frozen=True)
class RetryPolicy:
    """
    Exponential backoff: min(base_delay * multiplier ** attempt, max_delay)
    plus uniform jitter in [0, jitter). All values in seconds.
    """
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    backoff_multiplier: float = 2.0
    retryable_statuses: FrozenSet[int] = DEFAULT_RETRYABLE_STATUSES
    jitter: float = 1.0

    def delay_for(self, retry_count: int) -> float:
        """Backoff before retry number retry_count + 1, without jitter."""
        delay = self.base_delay * (self.backoff_multiplier ** retry_count)
        return min(delay, self.max_delay)

    def is_retryable(self, status: Optional[int]) -> bool:
        return status is not None and status in self.retryable_statuses


@dataclass(frozen=True)
class RateLimitConfig:
    """Ceilings for the four rolling windows."""
    requests_per_second: int = 1
    requests_per_minute: int = 60
    requests_per_hour: int = 1000
    requests_per_day: int = 1000


@dataclass(frozen=True)
class HttpRequest:
    """What the transport actually sends."""
    method: str
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[str] = None


@dataclass
class HttpResponse:
    """Transport result. The governor never raises for a status on its own."""
    status: int
    headers: Dict[str, str] = field(default_factory=dict)
    body: str = ""
    elapsed: float = 0.0

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup."""
        lowered = name.lower()
        for key, value in self.headers.items():
            if key.lower() == lowered:
                return value
        return None

    def json(self) -> Any:
        return json.loads(self.body) if self.body else None


@dataclass(frozen=True)
class RequestSpec:
    """
    A call submitted to the governor.

    dedup_key falls back to a hash of method, target, headers and body.
    timeout and retry_policy fall back to the governor's defaults.
    """
    target: str
    method: str = "GET"
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[str] = None
    timeout: Optional[float] = None
    priority: Priority = Priority.MEDIUM
    retry_policy: Optional[RetryPolicy] = None
    dedup_key: Optional[str] = None

    def resolve_dedup_key(self) -> str:
        if self.dedup_key:
            return self.dedup_key
        material = json.dumps(
            [self.method.upper(), self.target, sorted(self.headers.items()), self.body or ""],
            separators=(",", ":"),
        )
        return hashlib.sha256(material.encode("utf-8")).hexdigest()

    def to_http_request(self) -> HttpRequest:
        return HttpRequest(
            method=self.method.upper(),
            url=self.target,
            headers=dict(self.headers),
            body=self.body,
        )


@dataclass
class QueuedCall:
    """A submitted call waiting for, or going through, execution."""
    id: str
    spec: RequestSpec
    dedup_key: str
    priority: Priority
    enqueued_at: float
    future: Future
    retry_count: int = 0
    state: CallState = CallState.QUEUED
    last_error: Optional[BaseException] = None
