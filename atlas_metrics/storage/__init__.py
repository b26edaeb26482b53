"""
Measurement storage: checkpoint tracker, idempotent ingestion and the
PostgreSQL/TimescaleDB backend.
"""

from atlas_metrics.storage.backend import PostgresMeasurementStore
from atlas_metrics.storage.metrics_storage import MetricsStorage, parse_point
from atlas_metrics.storage.tracker import TimestampTracker

__all__ = ["PostgresMeasurementStore", "MetricsStorage", "TimestampTracker", "parse_point"]
