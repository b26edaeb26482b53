"""Metric collectors."""

from atlas_metrics.collectors.metrics_collector import MetricsCollector

__all__ = ["MetricsCollector"]
