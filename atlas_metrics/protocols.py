"""
Harvester protocols defining contracts between components.

These protocols define what each component promises to provide, so the
tracker, storage, collector and cleanup utility can be exercised against
in-memory fakes as well as the PostgreSQL backend.
"""

from datetime import datetime
from typing import Dict, List, Optional, Protocol, Sequence, Set, Tuple, runtime_checkable

from atlas_metrics.schemas import (
    BackfillPlan,
    BackfillProgress,
    BackfillStrategy,
    DiskPartition,
    DuplicateGroup,
    MeasurementBatch,
    MeasurementMetadata,
    ProcessDescriptor,
    SeriesKey,
    StoredMeasurement,
    TrackerEntry,
)


# ============================================================================
# STORE PROTOCOL - Primitive queries over measurements and checkpoints
# ============================================================================


@runtime_checkable
class MeasurementStore(Protocol):
    """Persistence for measurement rows and series checkpoints."""

    async def load_checkpoints(self) -> List[TrackerEntry]:
        """
        Load every persisted checkpoint.

        Promises:
        - Returns one entry per series key
        - Raises on connection failure
        """
        ...

    async def upsert_checkpoint(self, entry: TrackerEntry) -> None:
        """
        Insert or advance a checkpoint.

        Promises:
        - Stored value becomes max(stored, entry.last_timestamp)
        - Never moves a checkpoint backwards
        """
        ...

    async def list_series(self) -> List[SeriesKey]:
        """
        List every distinct (host, metric, partition) present in the store.

        Promises:
        - Each series appears once
        """
        ...

    async def latest_timestamp_for_series(self, series: SeriesKey) -> Optional[datetime]:
        """
        Latest stored timestamp for exactly this series.

        Promises:
        - partition None matches only rows without a partition
        - Returns None when the series has no rows
        """
        ...

    async def series_latest_timestamps(self) -> Dict[SeriesKey, datetime]:
        """
        Latest timestamp of every series in a single aggregation.

        Promises:
        - One round trip to the store
        - Raises when the aggregation is unsupported or fails
        """
        ...

    async def existing_points(
        self, metadata: MeasurementMetadata, timestamps: Sequence[datetime]
    ) -> Set[Tuple[datetime, float]]:
        """
        Return (timestamp, value) pairs already stored for this series.

        Promises:
        - Exact match on project, host, metric and partition
        - partition None matches only rows without a partition
        - Only pairs whose timestamp is in `timestamps` are returned
        """
        ...

    async def insert_measurements(
        self, rows: Sequence[StoredMeasurement]
    ) -> List[StoredMeasurement]:
        """
        Bulk insert measurements.

        Promises:
        - Returns the rows actually written
        - A row rejected by the database does not block the others
        - Raises StorageWriteError when nothing could be written
        """
        ...

    async def latest_timestamp(
        self,
        metric: Optional[str] = None,
        project: Optional[str] = None,
        host: Optional[str] = None,
        partition: Optional[str] = None,
    ) -> Optional[datetime]:
        """Latest timestamp matching the filters; None filters are ignored."""
        ...

    async def earliest_timestamp(
        self,
        metric: Optional[str] = None,
        project: Optional[str] = None,
        host: Optional[str] = None,
        partition: Optional[str] = None,
    ) -> Optional[datetime]:
        """Earliest timestamp matching the filters; None filters are ignored."""
        ...

    async def get_measurements(
        self,
        start: datetime,
        end: Optional[datetime] = None,
        project: Optional[str] = None,
        host: Optional[str] = None,
        metric: Optional[str] = None,
    ) -> List[StoredMeasurement]:
        """
        Measurements within [start, end].

        Promises:
        - Ordered by ascending timestamp
        """
        ...

    async def count_measurements(self) -> int:
        """Total number of stored measurements."""
        ...

    async def duplicate_summary(self) -> Tuple[int, int, int]:
        """
        Summarize duplicate groups without loading their ids.

        Promises:
        - Returns (group count, documents in groups, largest group size)
        - Returns (0, 0, 0) when there are no duplicates
        """
        ...

    async def find_duplicate_groups(self, limit: Optional[int] = None) -> List[DuplicateGroup]:
        """
        Group measurements by the duplicate-identity key.

        Promises:
        - Only groups with more than one member
        - Ordered by descending group size
        - document_ids ascending
        """
        ...

    async def fetch_measurements_by_ids(self, ids: Sequence[int]) -> List[StoredMeasurement]:
        """Load full rows for the given ids, ascending by id."""
        ...

    async def delete_measurements(self, ids: Sequence[int]) -> int:
        """Delete rows by id and return the number removed."""
        ...


# ============================================================================
# MONITORING API PROTOCOL - What the remote source promises to provide
# ============================================================================


@runtime_checkable
class MonitoringApi(Protocol):
    """Read-only view of the monitoring API used by the collector."""

    async def is_available(self) -> bool:
        """
        Check that the API answers authenticated requests.

        Promises:
        - Never raises exceptions
        """
        ...

    async def list_projects(self) -> Dict[str, str]:
        """
        Map project name to project id.

        Promises:
        - Follows pagination until every project is listed
        - Raises TransientFetchError on failure
        """
        ...

    async def list_processes(self, project_id: str) -> List[ProcessDescriptor]:
        """List every process in a project."""
        ...

    async def list_disk_partitions(self, project_id: str, host_port: str) -> List[DiskPartition]:
        """List the disk partitions of one process."""
        ...

    async def get_process_measurements(
        self,
        project_id: str,
        host_port: str,
        metrics: Sequence[str],
        granularity: str,
        start: datetime,
        end: datetime,
    ) -> List[MeasurementBatch]:
        """
        Fetch host-level measurements.

        Promises:
        - One batch per metric returned by the API, pages merged
        - Raises TransientFetchError on failure
        """
        ...

    async def get_disk_measurements(
        self,
        project_id: str,
        host_port: str,
        partition: str,
        metrics: Sequence[str],
        granularity: str,
        start: datetime,
        end: datetime,
    ) -> List[MeasurementBatch]:
        """Fetch measurements for one disk partition."""
        ...


# ============================================================================
# BACKFILL POLICY - Decides how a large cold start is handled
# ============================================================================


@runtime_checkable
class BackfillPolicy(Protocol):
    """Chooses a strategy for large tracker backfills."""

    async def choose_strategy(self, plan: BackfillPlan) -> BackfillStrategy:
        """
        Pick a strategy for the planned backfill.

        Promises:
        - Only called when the plan exceeds the backfill threshold
        - Never reads from stdin unless explicitly constructed to
        """
        ...

    def report_progress(self, progress: BackfillProgress) -> None:
        """Receive progress from a foreground backfill."""
        ...
