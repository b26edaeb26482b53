"""Pattern classification and per-project aggregation."""

from atlas_metrics.analysis.pattern_analyzer import (
    MIN_SAWTOOTH_CYCLES,
    SPIKE_THRESHOLD,
    TREND_THRESHOLD,
    VOLATILITY_THRESHOLD,
    analyze_pattern,
)
from atlas_metrics.analysis.results import MetricAggregate, ProjectMetricsResult

__all__ = [
    "analyze_pattern",
    "MetricAggregate",
    "ProjectMetricsResult",
    "SPIKE_THRESHOLD",
    "TREND_THRESHOLD",
    "VOLATILITY_THRESHOLD",
    "MIN_SAWTOOTH_CYCLES",
]
