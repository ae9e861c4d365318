from .monitor import (
    ErrorSummary,
    HealthMetrics,
    MonitoringDashboard,
    PerformanceMetrics,
    RequestMonitor,
)

__all__ = [
    "ErrorSummary",
    "HealthMetrics",
    "MonitoringDashboard",
    "PerformanceMetrics",
    "RequestMonitor",
]
