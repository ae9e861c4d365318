"""
NewsAPI client
All calls go through the request governor with endpoint-aware priorities,
dedup keys and error mapping
"""
import logging
import threading
import time
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional
from urllib.parse import urlencode

from .cache.core import Article
from .errors import FatalAPIError, RequestError, TransientAPIError
from .governor import (
    DEFAULT_RETRYABLE_STATUSES,
    HttpResponse,
    Priority,
    RateLimitConfig,
    RequestGovernor,
    RequestSpec,
    RetryPolicy,
)

logger = logging.getLogger("newsapi")

BASE_URL = "https://newsapi.org/v2"
ENDPOINTS = ("everything", "sources", "top-headlines")

MIN_API_KEY_LENGTH = 32
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 100
HIGH_PRIORITY_PAGE_SIZE = 20
RECENT_WINDOW_SECONDS = 24 * 60 * 60
TIER_DETECTION_INTERVAL_SECONDS = 60 * 60
FREE_TIER_DAILY_LIMIT = 1000

# Weight of the previous value in the exponential moving averages
EMA_DECAY = 0.9

SERVER_ERROR_STATUSES = frozenset({500, 502, 503, 504})

NEWSAPI_RETRY_POLICY = RetryPolicy(
    retryable_statuses=DEFAULT_RETRYABLE_STATUSES | {500},
)


def detect_newsapi_tier(response: HttpResponse) -> Dict[str, int]:
    """
    Rate-limit ceilings implied by the account's X-RateLimit-Limit header.

    Returns an empty dict unless the header shows more than the free tier's
    daily allowance.
    """
    remaining = response.header("X-RateLimit-Remaining")
    limit = response.header("X-RateLimit-Limit")
    if not remaining or not limit:
        return {}

    try:
        daily = int(limit)
    except ValueError:
        return {}
    if daily <= FREE_TIER_DAILY_LIMIT:
        return {}

    return {
        "requests_per_day": daily,
        "requests_per_hour": max(1, daily // 24),
        "requests_per_minute": max(1, daily // (24 * 60)),
        "requests_per_second": max(1, daily // (24 * 60 * 60)),
    }


def _parse_timestamp(value: str) -> Optional[float]:
    """ISO-8601 date or datetime to epoch seconds, naive values read as UTC."""
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


class NewsApiClient:
    """
    Client for the three NewsAPI endpoints.

    Usage:
        client = NewsApiClient(api_key, governor)
        response = client.fetch_everything({"q": "climate"})
        articles = response.json()["articles"]
    """

    def __init__(
        self,
        api_key: str,
        governor: RequestGovernor,
        base_url: str = BASE_URL,
        timeout: float = 30.0,
        retry_policy: Optional[RetryPolicy] = None,
        clock: Callable[[], float] = time.time,
    ):
        if not api_key or len(api_key) < MIN_API_KEY_LENGTH:
            raise ValueError("Invalid NewsAPI key provided")

        self._api_key = api_key
        self._governor = governor
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._retry_policy = retry_policy or NEWSAPI_RETRY_POLICY
        self._clock = clock

        self._lock = threading.Lock()
        self._last_tier_detection: Optional[float] = None
        self._init_analytics()

    def _init_analytics(self) -> None:
        self._endpoint_usage: Dict[str, int] = {}
        self._response_times: Dict[str, float] = {}  # ms, EMA
        self._response_sizes: Dict[str, float] = {}  # bytes, EMA
        self._error_patterns: Dict[int, int] = {}

    # ----------------------------------------------------------------
    # Request shaping
    # ----------------------------------------------------------------

    @staticmethod
    def optimize_params(params: Optional[Mapping[str, Any]]) -> Dict[str, str]:
        """Default page size, cap it, and pin the sort order."""
        optimized = {k: str(v) for k, v in (params or {}).items() if v is not None}

        page_size = optimized.get("pageSize")
        if not page_size:
            optimized["pageSize"] = str(DEFAULT_PAGE_SIZE)
        else:
            try:
                if int(page_size) > MAX_PAGE_SIZE:
                    optimized["pageSize"] = str(MAX_PAGE_SIZE)
            except ValueError:
                optimized["pageSize"] = str(DEFAULT_PAGE_SIZE)

        optimized.setdefault("sortBy", "publishedAt")
        return optimized

    @staticmethod
    def dedup_key(endpoint: str, params: Mapping[str, str]) -> str:
        """Endpoint plus sorted params, without the credential."""
        cleaned = sorted((k, v) for k, v in params.items() if k != "apiKey")
        return f"newsapi:{endpoint}:{urlencode(cleaned)}"

    def calculate_priority(self, endpoint: str, params: Mapping[str, str]) -> Priority:
        """Sources lookups, small pages and last-24h queries go first."""
        if endpoint == "sources":
            return Priority.HIGH

        try:
            page_size = int(params.get("pageSize", DEFAULT_PAGE_SIZE))
        except ValueError:
            page_size = DEFAULT_PAGE_SIZE
        if page_size <= HIGH_PRIORITY_PAGE_SIZE:
            return Priority.HIGH

        since = params.get("from")
        if since:
            since_ts = _parse_timestamp(since)
            if since_ts is not None and since_ts > self._clock() - RECENT_WINDOW_SECONDS:
                return Priority.HIGH

        return Priority.MEDIUM

    # ----------------------------------------------------------------
    # Requests
    # ----------------------------------------------------------------

    def request(
        self,
        endpoint: str,
        params: Optional[Mapping[str, Any]] = None,
        priority: Optional[Any] = None,
        timeout: Optional[float] = None,
        dedup_key: Optional[str] = None,
    ) -> HttpResponse:
        """
        Send one NewsAPI call through the governor.

        Raises:
            FatalAPIError: bad credential, bad request or unexpected status
            TransientAPIError: rate limited or server error after retries
            RequestError: anything else that went wrong
        """
        if endpoint not in ENDPOINTS:
            raise ValueError(f"Unknown NewsAPI endpoint: {endpoint}")

        optimized = self.optimize_params(params)
        optimized.pop("apiKey", None)
        resolved_priority = (
            Priority.coerce(priority) if priority is not None
            else self.calculate_priority(endpoint, optimized)
        )

        spec = RequestSpec(
            target=f"{self._base_url}/{endpoint}?{urlencode(optimized)}",
            headers={"X-Api-Key": self._api_key},
            timeout=timeout if timeout is not None else self._timeout,
            priority=resolved_priority,
            retry_policy=self._retry_policy,
            dedup_key=dedup_key or self.dedup_key(endpoint, optimized),
        )

        with self._lock:
            self._endpoint_usage[endpoint] = self._endpoint_usage.get(endpoint, 0) + 1

        started = self._clock()
        try:
            response = self._governor.request(spec)
        except RequestError as e:
            if e.status_code is not None:
                raise self._map_status(e.status_code) from e
            raise
        except Exception as e:
            raise RequestError(f"Request to {endpoint} failed: {e}") from e

        self._record_timing(endpoint, (self._clock() - started) * 1000)

        if not response.ok:
            raise self._map_status(response.status)

        self._update_rate_limits(response)
        self._record_size(endpoint, response)
        return response

    def _map_status(self, status: int) -> RequestError:
        with self._lock:
            self._error_patterns[status] = self._error_patterns.get(status, 0) + 1

        if status == 401:
            return FatalAPIError(
                "Invalid API key. Please check the NEWS_API_KEY setting.",
                kind="unauthorized", status_code=401,
            )
        if status == 429:
            return TransientAPIError(
                "Rate limit exceeded. Try again later.",
                kind="rate_limited", status_code=429,
            )
        if status == 400:
            return FatalAPIError(
                "Bad request to NewsAPI. Please check your request parameters.",
                kind="bad_request", status_code=400,
            )
        if status in SERVER_ERROR_STATUSES:
            return TransientAPIError(
                "NewsAPI server error. Please try again later.",
                kind="server_error", status_code=status,
            )
        if status == 408:
            return TransientAPIError(
                "NewsAPI request timed out. Please try again later.",
                kind="timeout", status_code=408,
            )
        return FatalAPIError(
            f"NewsAPI request failed with status {status}",
            kind="request_failed", status_code=status,
        )

    def _update_rate_limits(self, response: HttpResponse) -> None:
        now = self._clock()
        with self._lock:
            if (
                self._last_tier_detection is not None
                and now - self._last_tier_detection < TIER_DETECTION_INTERVAL_SECONDS
            ):
                return
            self._last_tier_detection = now

        tier = detect_newsapi_tier(response)
        if tier:
            self._governor.update_rate_limits(**tier)
            logger.info(f"Updated rate limiting based on detected tier: {tier}")

    def _record_timing(self, endpoint: str, elapsed_ms: float) -> None:
        with self._lock:
            previous = self._response_times.get(endpoint, 0.0)
            self._response_times[endpoint] = previous * EMA_DECAY + elapsed_ms * (1 - EMA_DECAY)

    def _record_size(self, endpoint: str, response: HttpResponse) -> None:
        length = response.header("Content-Length")
        if not length:
            return
        try:
            size = int(length)
        except ValueError:
            return
        with self._lock:
            previous = self._response_sizes.get(endpoint, 0.0)
            self._response_sizes[endpoint] = previous * EMA_DECAY + size * (1 - EMA_DECAY)

    # ----------------------------------------------------------------
    # Endpoints
    # ----------------------------------------------------------------

    def fetch_everything(self, params=None, priority=None, dedup_key=None) -> HttpResponse:
        return self.request("everything", params, priority=priority, dedup_key=dedup_key)

    def fetch_sources(self, params=None, priority=Priority.HIGH, dedup_key=None) -> HttpResponse:
        return self.request("sources", params, priority=priority, dedup_key=dedup_key)

    def fetch_top_headlines(self, params=None, priority=None, dedup_key=None) -> HttpResponse:
        return self.request("top-headlines", params, priority=priority, dedup_key=dedup_key)

    def fetch_source_articles(self, source_key: str) -> List[Article]:
        """Latest articles for one NewsAPI source id."""
        response = self.fetch_everything({"sources": source_key})
        data = response.json() or {}
        if data.get("status") == "error":
            raise FatalAPIError(
                data.get("message") or "NewsAPI returned an error",
                kind=data.get("code") or "api_error",
                status_code=response.status,
            )
        articles = data.get("articles") or []
        logger.debug(f"Fetched {len(articles)} articles for {source_key}")
        return articles

    def check_status(self) -> Dict[str, Any]:
        """Probe the key with a one-article headline call."""
        try:
            response = self.fetch_top_headlines({"country": "us", "pageSize": 1}, priority=Priority.HIGH)
        except RequestError as e:
            logger.warning(f"NewsAPI status check failed: {e}")
            return {"valid": False, "error": e.to_dict()}

        def as_int(name: str) -> Optional[int]:
            value = response.header(name)
            return int(value) if value and value.isdigit() else None

        reset = as_int("X-RateLimit-Reset")
        return {
            "valid": response.ok,
            "remaining": as_int("X-RateLimit-Remaining"),
            "limit": as_int("X-RateLimit-Limit"),
            "reset_time": (
                datetime.fromtimestamp(reset, tz=timezone.utc).isoformat() if reset is not None else None
            ),
        }

    def preload_critical_data(self) -> bool:
        """Warm the sources list. Failures are logged, not raised."""
        try:
            self.fetch_sources({}, priority=Priority.HIGH, dedup_key="preload:sources")
        except RequestError as e:
            logger.warning(f"Failed to preload critical data: {e}")
            return False
        logger.info("Critical NewsAPI data preloaded")
        return True

    # ----------------------------------------------------------------
    # Analytics
    # ----------------------------------------------------------------

    def get_analytics(self) -> Dict[str, Any]:
        with self._lock:
            local = {
                "endpointUsage": dict(self._endpoint_usage),
                "averageResponseSizes": {k: round(v, 1) for k, v in self._response_sizes.items()},
                "errorPatterns": {str(k): v for k, v in self._error_patterns.items()},
                "optimalRequestTiming": {k: round(v, 1) for k, v in self._response_times.items()},
            }
        queue = self._governor.get_queue_status()
        return {
            **local,
            "requestOptimizer": self._governor.get_analytics().to_dict(),
            "queueStatus": queue,
        }

    def reset_analytics(self) -> None:
        with self._lock:
            self._init_analytics()
        self._governor.reset_analytics()

    def get_timing_recommendations(self) -> Dict[str, str]:
        with self._lock:
            timings = dict(self._response_times)

        recommendations = {}
        for endpoint, avg in timings.items():
            if avg > 5000:
                recommendations[endpoint] = (
                    "Consider reducing page size or adding more specific filters. "
                    f"Average response time: {round(avg)}ms"
                )
            elif avg > 2000:
                recommendations[endpoint] = (
                    f"Response time is acceptable but could be optimized. Average: {round(avg)}ms"
                )
            else:
                recommendations[endpoint] = f"Optimal performance. Average response time: {round(avg)}ms"
        return recommendations

    @property
    def rate_limits(self) -> RateLimitConfig:
        return self._governor.rate_limits
