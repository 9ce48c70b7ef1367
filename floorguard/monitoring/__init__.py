"""
Monitoring package.

This package contains Prometheus metrics, health checks, the metrics
server and webhook alerting.
"""

from floorguard.monitoring.alerting import Alert, AlertConfig, AlertManager, AlertSeverity, AlertType
from floorguard.monitoring.metrics import DefenseMetrics
from floorguard.monitoring.server import HealthChecker, start_metrics_server

__all__ = [
    "Alert",
    "AlertConfig",
    "AlertManager",
    "AlertSeverity",
    "AlertType",
    "DefenseMetrics",
    "HealthChecker",
    "start_metrics_server",
]
