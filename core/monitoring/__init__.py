"""
Monitoring components for Smart Feed
"""

from .prometheus_metrics import CONNECTION_STATE_CODES, PrometheusMetricsCollector

__all__ = [
    "CONNECTION_STATE_CODES",
    "PrometheusMetricsCollector",
]
