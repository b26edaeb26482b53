"""
Typed schemas for the metrics harvester.

Wire-level documents from the monitoring API and rows from the store are
converted into these models at the boundary; nothing inside the pipeline
passes raw dictionaries around.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field

DISK_METRIC_PREFIX = "DISK_"
EXCLUDED_PROCESS_TYPE_PREFIXES = ("SHARD_CONFIG",)
EXCLUDED_PROCESS_TYPES = ("SHARD_MONGOS",)


def is_disk_metric(metric: str) -> bool:
    return metric.startswith(DISK_METRIC_PREFIX)


# ============================================================================
# ENUMS
# ============================================================================


class PatternType(str, Enum):
    """Behavioural categories a time series can be classified into."""

    FLAT = "FLAT"
    SPIKY = "SPIKY"
    TRENDING_UP = "TRENDING_UP"
    TRENDING_DOWN = "TRENDING_DOWN"
    SAWTOOTH = "SAWTOOTH"
    UNKNOWN = "UNKNOWN"

    @property
    def description(self) -> str:
        return _PATTERN_DESCRIPTIONS[self]


_PATTERN_DESCRIPTIONS = {
    PatternType.FLAT: "Flat/Stable",
    PatternType.SPIKY: "Spiky/Volatile",
    PatternType.TRENDING_UP: "Trending Upward",
    PatternType.TRENDING_DOWN: "Trending Downward",
    PatternType.SAWTOOTH: "Sawtooth/Cyclic",
    PatternType.UNKNOWN: "Unknown/Mixed",
}


class BackfillStrategy(str, Enum):
    """How a large cold-start tracker backfill should be handled."""

    FOREGROUND = "foreground"  # build now, report progress, cancellable
    BACKGROUND = "background"  # build in a background task, no progress
    SKIP = "skip"  # rely on store existence checks until the tracker catches up
    ABORT = "abort"


# ============================================================================
# MONITORING API SHAPES
# ============================================================================


class MetricDataPoint(BaseModel):
    """A single measurement as returned by the monitoring API."""

    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    value: Optional[float] = None


class MeasurementBatch(BaseModel):
    """All data points for one metric in one API response."""

    metric_name: str = Field(min_length=1)
    units: Optional[str] = None
    data_points: List[MetricDataPoint] = Field(default_factory=list)

    @property
    def values(self) -> List[float]:
        return [p.value for p in self.data_points if p.value is not None]


class ProcessDescriptor(BaseModel):
    """A monitored mongod/mongos process."""

    hostname: str = Field(min_length=1)
    port: int = Field(gt=0, le=65535)
    type_name: str = ""
    id: Optional[str] = None

    @property
    def host_port(self) -> str:
        return f"{self.hostname}:{self.port}"

    @property
    def is_data_bearing(self) -> bool:
        """Config servers and mongos routers carry no useful host telemetry."""
        if self.type_name.startswith(EXCLUDED_PROCESS_TYPE_PREFIXES):
            return False
        return self.type_name not in EXCLUDED_PROCESS_TYPES


class DiskPartition(BaseModel):
    """A disk partition attached to a process."""

    partition_name: str = Field(min_length=1)


# ============================================================================
# STORE SHAPES
# ============================================================================


class SeriesKey(BaseModel):
    """Identifies one stored time series."""

    model_config = ConfigDict(frozen=True)

    host: str = Field(min_length=1, description="hostname:port")
    metric: str = Field(min_length=1)
    partition: Optional[str] = None

    @property
    def key(self) -> str:
        key = f"{self.host}:{self.metric}"
        if self.partition is not None:
            key += f":{self.partition}"
        return key

    @classmethod
    def for_process(
        cls, hostname: str, port: int, metric: str, partition: Optional[str] = None
    ) -> "SeriesKey":
        return cls(host=f"{hostname}:{port}", metric=metric, partition=partition)


class MeasurementMetadata(BaseModel):
    """Metadata attached to every stored measurement."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    project_name: str = Field(alias="projectName")
    host: str
    metric: str
    partition: Optional[str] = None


class StoredMeasurement(BaseModel):
    """A persisted measurement row."""

    model_config = ConfigDict(frozen=True)

    id: Optional[int] = Field(None, description="Insertion-order identifier")
    timestamp: datetime
    value: float
    metadata: MeasurementMetadata

    def to_document(self) -> dict:
        """Wire shape: ``{timestamp, value, metadata: {projectName, host, metric, partition?}}``."""
        doc = {
            "timestamp": self.timestamp.isoformat(),
            "value": self.value,
            "metadata": self.metadata.model_dump(by_alias=True, exclude_none=True),
        }
        if self.id is not None:
            doc["_id"] = self.id
        return doc


class TrackerEntry(BaseModel):
    """Persisted checkpoint for one series."""

    key: str
    host: str
    metric: str
    partition: Optional[str] = None
    last_timestamp: datetime

    @classmethod
    def from_series(cls, series: SeriesKey, last_timestamp: datetime) -> "TrackerEntry":
        return cls(
            key=series.key,
            host=series.host,
            metric=series.metric,
            partition=series.partition,
            last_timestamp=last_timestamp,
        )


# ============================================================================
# PATTERN ANALYSIS
# ============================================================================


class PatternResult(BaseModel):
    """Outcome of classifying one value sequence."""

    model_config = ConfigDict(frozen=True)

    pattern_type: PatternType
    volatility: float = 0.0
    trend_slope: float = 0.0
    spike_count: int = Field(0, ge=0)
    sawtooth_cycles: int = Field(0, ge=0)
    details: str = ""

    def describe(self) -> str:
        """One-line human description, e.g. ``Spiky/Volatile (4 spikes, volatility: 21.30%)``."""
        text = self.pattern_type.description
        if self.pattern_type == PatternType.SPIKY:
            text += f" ({self.spike_count} spikes, volatility: {self.volatility * 100:.2f}%)"
        elif self.pattern_type in (PatternType.TRENDING_UP, PatternType.TRENDING_DOWN):
            text += f" (slope: {self.trend_slope:.4f})"
        elif self.pattern_type == PatternType.SAWTOOTH:
            text += f" ({self.sawtooth_cycles} cycles detected)"
        elif self.pattern_type == PatternType.FLAT:
            text += f" (volatility: {self.volatility * 100:.2f}%)"

        if self.details:
            text += f" - {self.details}"
        return text


# ============================================================================
# INGESTION / COLLECTION OUTCOMES
# ============================================================================


class BatchStoreResult(BaseModel):
    """Typed outcome of one storage batch."""

    key: str
    received: int = Field(0, ge=0)
    stored: int = Field(0, ge=0)
    duplicates: int = Field(0, ge=0)
    parse_errors: int = Field(0, ge=0)
    write_failed: bool = False


class CollectionStats(BaseModel):
    """Aggregate counters for one collection run."""

    projects: int = Field(0, ge=0)
    processes_scanned: int = Field(0, ge=0)
    points_collected: int = Field(0, ge=0)
    points_stored: int = Field(0, ge=0)
    units_failed: int = Field(0, ge=0)
    units_skipped: int = Field(0, ge=0)
    projects_failed: int = Field(0, ge=0)
    per_project_points: Dict[str, int] = Field(default_factory=dict)
    duration_ms: int = Field(0, ge=0)
    cancelled: bool = False

    @property
    def points_skipped(self) -> int:
        return max(0, self.points_collected - self.points_stored)


class BackfillPlan(BaseModel):
    """Estimated work for a cold-start tracker build."""

    series_count: int = Field(ge=0)
    host_count: int = Field(ge=0)

    @property
    def estimated_minutes_min(self) -> int:
        return self.series_count // 60

    @property
    def estimated_minutes_max(self) -> int:
        return self.series_count // 30


class BackfillProgress(BaseModel):
    """Progress report emitted during a foreground backfill."""

    processed: int = Field(ge=0)
    total: int = Field(ge=0)
    entries_created: int = Field(ge=0)
    current_host: str = ""
    elapsed_seconds: float = Field(0.0, ge=0)

    @property
    def percent(self) -> int:
        return (self.processed * 100) // self.total if self.total else 100

    @property
    def eta_seconds(self) -> float:
        if not self.processed:
            return 0.0
        return self.elapsed_seconds * (self.total - self.processed) / self.processed


# ============================================================================
# DUPLICATE CLEANUP
# ============================================================================


class DuplicateStats(BaseModel):
    """Statistics about duplicate measurements in the store."""

    total_documents: int = Field(0, ge=0)
    duplicate_groups: int = Field(0, ge=0)
    total_duplicate_documents: int = Field(0, ge=0)
    documents_that_would_be_removed: int = Field(0, ge=0)
    worst_group_size: int = Field(0, ge=0)
    avg_group_size: float = Field(0.0, ge=0)
    duration_ms: int = Field(0, ge=0)

    @property
    def duplicate_percentage(self) -> float:
        if not self.total_documents:
            return 0.0
        return self.total_duplicate_documents * 100.0 / self.total_documents


class DuplicateGroup(BaseModel):
    """Measurements sharing the duplicate-identity key."""

    timestamp: datetime
    host: str
    metric: str
    project_name: str
    value: float
    partition: Optional[str] = None
    duplicate_count: int = Field(ge=2)
    document_ids: List[int] = Field(default_factory=list, description="Ascending")

    @property
    def kept_id(self) -> Optional[int]:
        return self.document_ids[0] if self.document_ids else None

    @property
    def ids_to_remove(self) -> List[int]:
        return self.document_ids[1:]


class DetailedDuplicateGroup(BaseModel):
    """A duplicate group with its full member rows."""

    timestamp: datetime
    host: str
    metric: str
    project_name: str
    value: float
    partition: Optional[str] = None
    duplicate_count: int = Field(ge=2)
    documents: List[StoredMeasurement] = Field(default_factory=list, description="Ascending id")

    @property
    def kept_document(self) -> Optional[StoredMeasurement]:
        return self.documents[0] if self.documents else None

    @property
    def documents_to_remove(self) -> List[StoredMeasurement]:
        return self.documents[1:]


class CleanupResult(BaseModel):
    """Outcome of a cleanup run."""

    dry_run: bool = False
    duplicate_groups: int = Field(0, ge=0)
    duplicate_documents: int = Field(0, ge=0)
    documents_removed: int = Field(0, ge=0)
    failed_groups: int = Field(0, ge=0)
    groups_processed: int = Field(0, ge=0)
    cancelled: bool = False
    duration_ms: int = Field(0, ge=0)

    @property
    def duration_seconds(self) -> float:
        return self.duration_ms / 1000.0
