"""Run outcome monitoring and metrics collection."""

from .metrics import MetricsCollector, RunMetrics

__all__ = ["MetricsCollector", "RunMetrics"]
