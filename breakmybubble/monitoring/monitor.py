"""
Request Monitoring Dashboard

Turns governor analytics into:
1. Performance metrics (response time, throughput, efficiency)
2. Health status (healthy / degraded / critical) and system load
3. Optimization recommendations and warnings
4. A per-status error summary

The dashboard is recomputed at most once per analysis interval.
"""
import logging
import threading
import time
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from ..cache.core import iso_timestamp
from ..governor import AnalyticsSnapshot, RequestGovernor

logger = logging.getLogger("monitoring.monitor")

PERFORMANCE_HISTORY_SECONDS = 60 * 60
HEALTH_HISTORY_SECONDS = 24 * 60 * 60

# status code -> (severity, message)
ERROR_SEVERITY: Dict[int, Tuple[str, str]] = {
    401: ("high", "Authentication errors - check API key"),
    429: ("medium", "Rate limiting errors"),
    500: ("high", "Server errors - API may be down"),
    502: ("high", "Server errors - API may be down"),
    503: ("high", "Server errors - API may be down"),
    504: ("high", "Server errors - API may be down"),
    400: ("medium", "Bad request errors - check parameters"),
}


@dataclass
class PerformanceMetrics:
    average_response_time: float  # ms
    request_throughput: float     # requests per minute
    caching_efficiency: float
    rate_limit_utilization: float
    queue_efficiency: float
    duplicates_blocked: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "averageResponseTime": round(self.average_response_time, 1),
            "requestThroughput": round(self.request_throughput, 2),
            "cachingEfficiency": round(self.caching_efficiency, 1),
            "rateLimitUtilization": round(self.rate_limit_utilization, 1),
            "queueEfficiency": round(self.queue_efficiency, 1),
            "duplicatesBlocked": self.duplicates_blocked,
        }


@dataclass
class HealthMetrics:
    status: str
    uptime: float  # seconds
    api_availability: float
    error_rate: float
    last_successful_request: Optional[float]
    system_load: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "uptimeSeconds": round(self.uptime, 1),
            "apiAvailability": round(self.api_availability, 1),
            "errorRate": round(self.error_rate, 1),
            "lastSuccessfulRequest": (
                iso_timestamp(self.last_successful_request)
                if self.last_successful_request is not None else None
            ),
            "systemLoad": self.system_load,
        }


@dataclass
class ErrorSummary:
    type: str
    count: int
    message: str
    severity: str

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MonitoringDashboard:
    performance: PerformanceMetrics
    health: HealthMetrics
    recommendations: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    errors: List[ErrorSummary] = field(default_factory=list)
    generated_at: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "performance": self.performance.to_dict(),
            "health": self.health.to_dict(),
            "recommendations": list(self.recommendations),
            "warnings": list(self.warnings),
            "errors": [e.to_dict() for e in self.errors],
            "generatedAt": iso_timestamp(self.generated_at),
        }


class RequestMonitor:
    """
    Read-only view over a RequestGovernor (and optionally a NewsApiClient).

    Usage:
        monitor = RequestMonitor(governor, news_client=client)
        dashboard = monitor.get_dashboard()
        print(monitor.generate_report())
    """

    def __init__(
        self,
        governor: RequestGovernor,
        news_client: Optional[Any] = None,
        clock: Callable[[], float] = time.time,
        analysis_interval: float = 30.0,
    ):
        self._governor = governor
        self._news_client = news_client
        self._clock = clock
        self._analysis_interval = analysis_interval

        self._lock = threading.Lock()
        self._start_time = clock()
        self._last_analysis: Optional[float] = None
        self._dashboard: Optional[MonitoringDashboard] = None
        self._performance_history: List[Dict[str, float]] = []
        self._health_history: List[Dict[str, Any]] = []

    # ----------------------------------------------------------------
    # Dashboard
    # ----------------------------------------------------------------

    def get_dashboard(self) -> MonitoringDashboard:
        """Current dashboard, recomputed at most once per analysis interval."""
        with self._lock:
            now = self._clock()
            if (
                self._dashboard is not None
                and self._last_analysis is not None
                and now - self._last_analysis < self._analysis_interval
            ):
                return self._dashboard

            dashboard = self._build_dashboard(now)
            self._record_history(now, dashboard)
            self._dashboard = dashboard
            self._last_analysis = now
            return dashboard

    def _build_dashboard(self, now: float) -> MonitoringDashboard:
        snapshot = self._governor.get_analytics()
        queue = self._governor.get_queue_status()
        performance = self._performance_metrics(snapshot, queue, now)

        return MonitoringDashboard(
            performance=performance,
            health=self._health_metrics(snapshot, queue, now),
            recommendations=self._recommendations(snapshot, queue, performance),
            warnings=self._warnings(snapshot, queue),
            errors=self._error_summary(snapshot),
            generated_at=now,
        )

    def _performance_metrics(
        self, snapshot: AnalyticsSnapshot, queue: Dict[str, Any], now: float
    ) -> PerformanceMetrics:
        throughput = self._throughput(snapshot, now)
        per_minute = self._governor.rate_limits.requests_per_minute

        if snapshot.total_requests == 0:
            queue_efficiency = 100.0
        else:
            ratio = queue["queue_length"] / max(snapshot.total_requests, 1)
            queue_efficiency = max(0.0, 100 - ratio * 100)

        return PerformanceMetrics(
            average_response_time=snapshot.average_response_time * 1000,
            request_throughput=throughput,
            caching_efficiency=self._caching_efficiency(snapshot),
            rate_limit_utilization=(throughput / per_minute * 100) if per_minute > 0 else 0.0,
            queue_efficiency=queue_efficiency,
            duplicates_blocked=snapshot.duplicates_blocked,
        )

    def _health_metrics(
        self, snapshot: AnalyticsSnapshot, queue: Dict[str, Any], now: float
    ) -> HealthMetrics:
        error_rate = snapshot.error_rate
        queue_length = queue["queue_length"]

        status = "healthy"
        if error_rate > 20:
            status = "critical"
        elif error_rate > 10 or queue_length > 50:
            status = "degraded"

        if snapshot.total_requests > 0:
            availability = snapshot.successful_requests / snapshot.total_requests * 100
        else:
            availability = 100.0

        return HealthMetrics(
            status=status,
            uptime=now - self._start_time,
            api_availability=availability,
            error_rate=error_rate,
            last_successful_request=snapshot.last_success_time,
            system_load=self._system_load(error_rate, queue),
        )

    @staticmethod
    def _system_load(error_rate: float, queue: Dict[str, Any]) -> str:
        queue_length = queue["queue_length"]
        in_flight = queue["in_flight_count"]
        if queue_length > 30 or in_flight > 10 or error_rate > 15:
            return "high"
        if queue_length > 10 or in_flight > 5 or error_rate > 5:
            return "medium"
        return "low"

    def _throughput(self, snapshot: AnalyticsSnapshot, now: float) -> float:
        """Requests per minute since the monitor started."""
        uptime_minutes = (now - self._start_time) / 60
        return snapshot.total_requests / uptime_minutes if uptime_minutes > 0 else 0.0

    @staticmethod
    def _caching_efficiency(snapshot: AnalyticsSnapshot) -> float:
        if snapshot.total_requests <= 0:
            return 0.0
        return snapshot.duplicates_blocked / snapshot.total_requests * 100

    def _recommendations(
        self,
        snapshot: AnalyticsSnapshot,
        queue: Dict[str, Any],
        performance: PerformanceMetrics,
    ) -> List[str]:
        recommendations = []

        if queue["queue_length"] > 20:
            recommendations.append(
                "High queue length detected. Consider implementing request batching "
                "or reducing concurrent requests."
            )
        if snapshot.rate_limit_hits > 5:
            recommendations.append(
                "Frequent rate limiting detected. Consider implementing more aggressive request spacing."
            )
        if performance.average_response_time > 3000:
            recommendations.append(
                "High average response time. Consider optimizing request parameters "
                "or implementing more aggressive caching."
            )
        if performance.caching_efficiency < 30:
            recommendations.append(
                "Low caching efficiency. Review cache key generation and consider "
                "longer cache durations for stable data."
            )

        if self._news_client is not None:
            for endpoint, advice in self._news_client.get_timing_recommendations().items():
                if "Consider" in advice:
                    recommendations.append(f"{endpoint}: {advice}")

        return recommendations

    @staticmethod
    def _warnings(snapshot: AnalyticsSnapshot, queue: Dict[str, Any]) -> List[str]:
        warnings = []
        queue_length = queue["queue_length"]

        if queue_length > 50:
            warnings.append("Critical: Request queue length exceeds 50. System may be overloaded.")
        elif queue_length > 20:
            warnings.append("Warning: Request queue length is high. Monitor for potential bottlenecks.")

        error_rate = snapshot.error_rate
        if error_rate > 15:
            warnings.append("Critical: High error rate detected. Check API connectivity and configuration.")
        elif error_rate > 5:
            warnings.append("Warning: Elevated error rate. Monitor for API issues.")

        if snapshot.rate_limit_hits > 10:
            warnings.append(
                "Warning: Frequent rate limiting. Consider upgrading API tier "
                "or optimizing request patterns."
            )
        return warnings

    @staticmethod
    def _error_summary(snapshot: AnalyticsSnapshot) -> List[ErrorSummary]:
        errors = []
        for status, count in snapshot.errors_by_status.items():
            severity, message = ERROR_SEVERITY.get(status, ("medium", f"HTTP {status} errors"))
            errors.append(ErrorSummary(
                type=f"HTTP_{status}",
                count=count,
                message=message,
                severity=severity,
            ))
        return sorted(errors, key=lambda e: e.count, reverse=True)

    def _record_history(self, now: float, dashboard: MonitoringDashboard) -> None:
        self._performance_history.append({
            "timestamp": now,
            "response_time": dashboard.performance.average_response_time,
        })
        self._performance_history = [
            entry for entry in self._performance_history
            if entry["timestamp"] > now - PERFORMANCE_HISTORY_SECONDS
        ]

        self._health_history.append({"timestamp": now, "status": dashboard.health.status})
        self._health_history = [
            entry for entry in self._health_history
            if entry["timestamp"] > now - HEALTH_HISTORY_SECONDS
        ]

    # ----------------------------------------------------------------
    # Export / report
    # ----------------------------------------------------------------

    def get_history(self) -> Dict[str, List[Dict[str, Any]]]:
        with self._lock:
            return {
                "performance": list(self._performance_history),
                "health": list(self._health_history),
            }

    def export_analytics(self) -> Dict[str, Any]:
        """Machine-readable dump for external monitoring."""
        return {
            "optimizer": self._governor.get_analytics().to_dict(),
            "newsApi": self._news_client.get_analytics() if self._news_client is not None else None,
            "monitor": self.get_dashboard().to_dict(),
        }

    def reset(self) -> None:
        """Zero governor and client counters, drop histories, restart uptime."""
        with self._lock:
            self._start_time = self._clock()
            self._last_analysis = None
            self._dashboard = None
            self._performance_history = []
            self._health_history = []

        self._governor.reset_analytics()
        if self._news_client is not None:
            self._news_client.reset_analytics()
        logger.info("Monitoring data reset")

    def generate_report(self) -> str:
        dashboard = self.get_dashboard()
        health = dashboard.health
        performance = dashboard.performance
        hours = int(health.uptime // 3600)
        minutes = int(health.uptime % 3600 // 60)

        recommendations = "\n".join(f"- {r}" for r in dashboard.recommendations) or "No recommendations"
        warnings = "\n".join(f"- {w}" for w in dashboard.warnings) or "No active warnings"
        errors = "\n".join(
            f"- {e.type}: {e.count} occurrences ({e.severity} severity)" for e in dashboard.errors
        ) or "No recent errors"

        return "\n".join([
            "# Request Optimization Monitoring Report",
            "",
            f"## System Health: {health.status.upper()}",
            f"- Uptime: {hours}h {minutes}m",
            f"- API Availability: {health.api_availability:.1f}%",
            f"- Error Rate: {health.error_rate:.1f}%",
            f"- System Load: {health.system_load}",
            "",
            "## Performance Metrics",
            f"- Average Response Time: {performance.average_response_time:.0f}ms",
            f"- Request Throughput: {performance.request_throughput:.1f} req/min",
            f"- Caching Efficiency: {performance.caching_efficiency:.1f}%",
            f"- Duplicates Blocked: {performance.duplicates_blocked}",
            "",
            "## Recommendations",
            recommendations,
            "",
            "## Warnings",
            warnings,
            "",
            "## Error Summary",
            errors,
        ])
