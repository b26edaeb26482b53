"""
Per-project aggregation of collected metric values.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from atlas_metrics.schemas import PatternResult, PatternType


@dataclass
class MetricAggregate:
    """Running statistics for one metric within a project."""

    max_value: Optional[float] = None
    max_location: str = ""
    total: float = 0.0
    count: int = 0
    patterns: Dict[str, PatternResult] = field(default_factory=dict)  # location -> result

    @property
    def average(self) -> float:
        return self.total / self.count if self.count else 0.0

    def add(self, value: float, location: str) -> None:
        if self.max_value is None or value > self.max_value:
            self.max_value = value
            self.max_location = location
        self.total += value
        self.count += 1


@dataclass
class ProjectMetricsResult:
    """Max, average and pattern results for every metric of one project."""

    project_name: str
    project_id: str
    metrics: Dict[str, MetricAggregate] = field(default_factory=dict)

    def initialize_metric(self, metric: str) -> MetricAggregate:
        return self.metrics.setdefault(metric, MetricAggregate())

    def add_measurement(self, metric: str, value: float, location: str) -> None:
        self.initialize_metric(metric).add(value, location)

    def add_pattern_result(self, metric: str, location: str, result: PatternResult) -> None:
        self.initialize_metric(metric).patterns[location] = result

    def get_max_value(self, metric: str) -> Optional[float]:
        aggregate = self.metrics.get(metric)
        return aggregate.max_value if aggregate else None

    def get_max_location(self, metric: str) -> Optional[str]:
        aggregate = self.metrics.get(metric)
        return aggregate.max_location if aggregate else None

    def get_avg_value(self, metric: str) -> Optional[float]:
        aggregate = self.metrics.get(metric)
        return aggregate.average if aggregate else None

    def get_pattern_result(self, metric: str, location: str) -> Optional[PatternResult]:
        aggregate = self.metrics.get(metric)
        return aggregate.patterns.get(location) if aggregate else None

    def get_pattern_results(self, metric: str) -> Dict[str, PatternResult]:
        aggregate = self.metrics.get(metric)
        return dict(aggregate.patterns) if aggregate else {}

    def has_pattern_data(self, metric: str) -> bool:
        return bool(self.get_pattern_results(metric))

    def count_pattern_types(self, metric: str) -> Dict[PatternType, int]:
        counts = {pattern_type: 0 for pattern_type in PatternType}
        for result in self.get_pattern_results(metric).values():
            counts[result.pattern_type] += 1
        return counts

    def get_dominant_pattern(self, metric: str) -> PatternType:
        """Most frequent pattern across locations; ties go to the earlier PatternType."""
        dominant = PatternType.UNKNOWN
        best = 0
        for pattern_type, count in self.count_pattern_types(metric).items():
            if count > best:
                dominant, best = pattern_type, count
        return dominant

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "project_name": self.project_name,
            "project_id": self.project_id,
            "metrics": {
                metric: {
                    "max_value": aggregate.max_value,
                    "max_location": aggregate.max_location,
                    "average": aggregate.average,
                    "count": aggregate.count,
                    "dominant_pattern": self.get_dominant_pattern(metric).value,
                    "patterns": {
                        location: result.model_dump(mode="json")
                        for location, result in aggregate.patterns.items()
                    },
                }
                for metric, aggregate in self.metrics.items()
            },
        }
