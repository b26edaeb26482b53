"""
Unit tests for per-project metric aggregation.
"""

from atlas_metrics.analysis.results import MetricAggregate, ProjectMetricsResult
from atlas_metrics.schemas import PatternResult, PatternType


def _pattern(pattern_type: PatternType) -> PatternResult:
    return PatternResult(pattern_type=pattern_type)


class TestMetricAggregate:
    """Test running statistics."""

    def test_empty_average(self):
        assert MetricAggregate().average == 0.0

    def test_tracks_max_and_location(self):
        aggregate = MetricAggregate()
        aggregate.add(5.0, "h1:27017")
        aggregate.add(9.0, "h2:27017")
        aggregate.add(7.0, "h3:27017")

        assert aggregate.max_value == 9.0
        assert aggregate.max_location == "h2:27017"
        assert aggregate.average == 7.0
        assert aggregate.count == 3


class TestProjectMetricsResult:
    """Test ProjectMetricsResult functionality."""

    def test_unknown_metric_returns_none(self):
        result = ProjectMetricsResult(project_name="prod", project_id="p1")
        assert result.get_max_value("CPU") is None
        assert result.get_avg_value("CPU") is None
        assert result.get_pattern_results("CPU") == {}
        assert not result.has_pattern_data("CPU")

    def test_initialized_metric_has_no_values(self):
        result = ProjectMetricsResult(project_name="prod", project_id="p1")
        result.initialize_metric("CPU")
        assert result.get_max_value("CPU") is None
        assert result.get_avg_value("CPU") == 0.0

    def test_measurements_across_locations(self):
        result = ProjectMetricsResult(project_name="prod", project_id="p1")
        result.add_measurement("CPU", 10.0, "h1:27017")
        result.add_measurement("CPU", 30.0, "h2:27017, partition: data")

        assert result.get_max_value("CPU") == 30.0
        assert result.get_max_location("CPU") == "h2:27017, partition: data"
        assert result.get_avg_value("CPU") == 20.0

    def test_dominant_pattern(self):
        result = ProjectMetricsResult(project_name="prod", project_id="p1")
        result.add_pattern_result("CPU", "h1:27017", _pattern(PatternType.SPIKY))
        result.add_pattern_result("CPU", "h2:27017", _pattern(PatternType.FLAT))
        result.add_pattern_result("CPU", "h3:27017", _pattern(PatternType.SPIKY))

        counts = result.count_pattern_types("CPU")
        assert counts[PatternType.SPIKY] == 2
        assert counts[PatternType.FLAT] == 1
        assert counts[PatternType.SAWTOOTH] == 0
        assert result.get_dominant_pattern("CPU") == PatternType.SPIKY
        assert result.get_pattern_result("CPU", "h2:27017").pattern_type == PatternType.FLAT

    def test_dominant_pattern_tie_prefers_earlier_type(self):
        result = ProjectMetricsResult(project_name="prod", project_id="p1")
        result.add_pattern_result("CPU", "h1:27017", _pattern(PatternType.SAWTOOTH))
        result.add_pattern_result("CPU", "h2:27017", _pattern(PatternType.FLAT))
        assert result.get_dominant_pattern("CPU") == PatternType.FLAT

    def test_dominant_pattern_without_data(self):
        result = ProjectMetricsResult(project_name="prod", project_id="p1")
        assert result.get_dominant_pattern("CPU") == PatternType.UNKNOWN

    def test_to_dict(self):
        result = ProjectMetricsResult(project_name="prod", project_id="p1")
        result.add_measurement("CPU", 4.0, "h1:27017")
        result.add_pattern_result("CPU", "h1:27017", _pattern(PatternType.FLAT))

        data = result.to_dict()
        assert data["project_name"] == "prod"
        assert data["metrics"]["CPU"]["max_value"] == 4.0
        assert data["metrics"]["CPU"]["dominant_pattern"] == "FLAT"
        assert data["metrics"]["CPU"]["patterns"]["h1:27017"]["pattern_type"] == "FLAT"
