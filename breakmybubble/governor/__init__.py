"""
Outbound request governance: dedup, rate limiting, priority queueing, retries.
"""
from .analytics import AnalyticsSnapshot, RequestAnalytics
from .coalescer import InFlightRegistry, InFlightRequest, MAX_IN_FLIGHT_AGE_SECONDS
from .models import (
    CallState,
    DEFAULT_RETRYABLE_STATUSES,
    HttpRequest,
    HttpResponse,
    Priority,
    QueuedCall,
    RateLimitConfig,
    RequestSpec,
    RetryPolicy,
)
from .optimizer import RequestGovernor
from .rate_limiter import RollingWindowLimiter, WINDOW_SECONDS
from .transport import RequestsTransport, Transport

__all__ = [
    # Models
    "CallState",
    "DEFAULT_RETRYABLE_STATUSES",
    "HttpRequest",
    "HttpResponse",
    "Priority",
    "QueuedCall",
    "RateLimitConfig",
    "RequestSpec",
    "RetryPolicy",
    # Components
    "AnalyticsSnapshot",
    "RequestAnalytics",
    "InFlightRegistry",
    "InFlightRequest",
    "MAX_IN_FLIGHT_AGE_SECONDS",
    "RollingWindowLimiter",
    "WINDOW_SECONDS",
    "RequestsTransport",
    "Transport",
    # Governor
    "RequestGovernor",
]
