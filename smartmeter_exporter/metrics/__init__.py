"""
Prometheus metrics for the exporter.
"""
from .sink import MetricsSink, MetricsSnapshot

__all__ = [
    "MetricsSink",
    "MetricsSnapshot",
]
