"""
Atlas metrics harvester.

Collects host and disk metrics from the Atlas monitoring API, stores each
data point exactly once in PostgreSQL/TimescaleDB, classifies series
behaviour and removes historical duplicates.

Usage:
    from atlas_metrics import HarvesterService
    from atlas_metrics.config import HarvesterConfig

    service = HarvesterService(HarvesterConfig.from_file("atlas-metrics.yml"))
    results = await service.collect_once()
"""

__version__ = "1.0.0"

from atlas_metrics.analysis.pattern_analyzer import analyze_pattern
from atlas_metrics.collectors.metrics_collector import MetricsCollector
from atlas_metrics.maintenance.duplicate_cleanup import DuplicateCleanupUtility
from atlas_metrics.service import HarvesterService
from atlas_metrics.storage.metrics_storage import MetricsStorage
from atlas_metrics.storage.tracker import TimestampTracker

__all__ = [
    "analyze_pattern",
    "DuplicateCleanupUtility",
    "HarvesterService",
    "MetricsCollector",
    "MetricsStorage",
    "TimestampTracker",
]
