"""
Pytest configuration and fixtures for atlas-metrics tests.

Provides in-memory fakes for the measurement store and the monitoring API.
"""

import asyncio
import os
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

import pytest

from atlas_metrics.errors import StorageWriteError, TransientFetchError
from atlas_metrics.schemas import (
    DiskPartition,
    DuplicateGroup,
    MeasurementBatch,
    MeasurementMetadata,
    MetricDataPoint,
    ProcessDescriptor,
    SeriesKey,
    StoredMeasurement,
    TrackerEntry,
)

T0 = datetime(2024, 1, 1, 0, 0, tzinfo=timezone.utc)


def pytest_configure(config):
    """Keep real credentials out of tests."""
    for name in ("ATLAS_PUBLIC_KEY", "ATLAS_PRIVATE_KEY", "ATLAS_METRICS_DSN"):
        os.environ.pop(name, None)


def make_points(start: datetime, values: Sequence[float], step: timedelta = timedelta(minutes=1)):
    """Consecutive API data points starting at `start`."""
    return [MetricDataPoint(timestamp=start + i * step, value=v) for i, v in enumerate(values)]


class InMemoryMeasurementStore:
    """Dict-backed store implementing the MeasurementStore protocol."""

    def __init__(self):
        self.rows: List[StoredMeasurement] = []
        self.checkpoints: Dict[str, TrackerEntry] = {}
        self._next_id = 1
        self.fail_inserts = False
        self.fail_aggregation = False
        self.fail_checkpoints = False
        self.fail_delete_ids: Set[int] = set()
        # Rows at these timestamps are rejected individually, like a row-level constraint failure
        self.reject_timestamps: Set[datetime] = set()
        # Yield to the event loop inside I/O calls so concurrent writers interleave
        self.yield_on_io = False
        self.insert_calls = 0
        self.existence_queries = 0

    # Seeding helpers

    def add_row(
        self,
        timestamp: datetime,
        value: float,
        host: str = "h1:27017",
        metric: str = "CPU",
        project: str = "P",
        partition: Optional[str] = None,
    ) -> StoredMeasurement:
        row = StoredMeasurement(
            id=self._next_id,
            timestamp=timestamp,
            value=value,
            metadata=MeasurementMetadata(
                project_name=project, host=host, metric=metric, partition=partition
            ),
        )
        self._next_id += 1
        self.rows.append(row)
        return row

    def rows_for(self, host: str, metric: str, partition: Optional[str] = None) -> List[StoredMeasurement]:
        return [
            r
            for r in self.rows
            if r.metadata.host == host and r.metadata.metric == metric and r.metadata.partition == partition
        ]

    # Checkpoints

    async def load_checkpoints(self) -> List[TrackerEntry]:
        return list(self.checkpoints.values())

    async def upsert_checkpoint(self, entry: TrackerEntry) -> None:
        if self.fail_checkpoints:
            raise StorageWriteError("checkpoint write failed")
        current = self.checkpoints.get(entry.key)
        if current is None or entry.last_timestamp > current.last_timestamp:
            self.checkpoints[entry.key] = entry

    # Series

    def _series(self, row: StoredMeasurement) -> SeriesKey:
        return SeriesKey(host=row.metadata.host, metric=row.metadata.metric, partition=row.metadata.partition)

    async def list_series(self) -> List[SeriesKey]:
        return list(dict.fromkeys(self._series(r) for r in self.rows))

    async def latest_timestamp_for_series(self, series: SeriesKey) -> Optional[datetime]:
        timestamps = [r.timestamp for r in self.rows if self._series(r) == series]
        return max(timestamps) if timestamps else None

    async def series_latest_timestamps(self) -> Dict[SeriesKey, datetime]:
        if self.fail_aggregation:
            raise RuntimeError("aggregation failed")
        latest: Dict[SeriesKey, datetime] = {}
        for row in self.rows:
            series = self._series(row)
            if series not in latest or row.timestamp > latest[series]:
                latest[series] = row.timestamp
        return latest

    # Ingestion

    async def existing_points(
        self, metadata: MeasurementMetadata, timestamps: Sequence[datetime]
    ) -> Set[Tuple[datetime, float]]:
        self.existence_queries += 1
        if self.yield_on_io:
            await asyncio.sleep(0)
        wanted = set(timestamps)
        return {(r.timestamp, r.value) for r in self.rows if r.metadata == metadata and r.timestamp in wanted}

    async def insert_measurements(self, rows: Sequence[StoredMeasurement]) -> List[StoredMeasurement]:
        self.insert_calls += 1
        if self.yield_on_io:
            await asyncio.sleep(0)
        if self.fail_inserts:
            raise StorageWriteError("insert failed")
        written = []
        for row in rows:
            if row.timestamp in self.reject_timestamps:
                continue
            stored = row.model_copy(update={"id": self._next_id})
            self._next_id += 1
            self.rows.append(stored)
            written.append(stored)
        if rows and not written:
            raise StorageWriteError(f"None of {len(rows)} measurements could be written")
        return written

    # Reads

    def _matching(self, metric=None, project=None, host=None, partition=None) -> List[StoredMeasurement]:
        return [
            r
            for r in self.rows
            if (metric is None or r.metadata.metric == metric)
            and (project is None or r.metadata.project_name == project)
            and (host is None or r.metadata.host == host)
            and (partition is None or r.metadata.partition == partition)
        ]

    async def latest_timestamp(self, metric=None, project=None, host=None, partition=None):
        rows = self._matching(metric, project, host, partition)
        return max(r.timestamp for r in rows) if rows else None

    async def earliest_timestamp(self, metric=None, project=None, host=None, partition=None):
        rows = self._matching(metric, project, host, partition)
        return min(r.timestamp for r in rows) if rows else None

    async def get_measurements(self, start, end=None, project=None, host=None, metric=None):
        rows = [
            r
            for r in self._matching(metric, project, host)
            if r.timestamp >= start and (end is None or r.timestamp <= end)
        ]
        return sorted(rows, key=lambda r: r.timestamp)

    async def count_measurements(self) -> int:
        return len(self.rows)

    # Duplicates

    def _groups(self) -> List[DuplicateGroup]:
        members = defaultdict(list)
        for row in self.rows:
            m = row.metadata
            members[(row.timestamp, m.host, m.metric, m.project_name, row.value, m.partition)].append(row.id)
        groups = [
            DuplicateGroup(
                timestamp=key[0],
                host=key[1],
                metric=key[2],
                project_name=key[3],
                value=key[4],
                partition=key[5],
                duplicate_count=len(ids),
                document_ids=sorted(ids),
            )
            for key, ids in members.items()
            if len(ids) > 1
        ]
        return sorted(groups, key=lambda g: (-g.duplicate_count, g.timestamp))

    async def duplicate_summary(self) -> Tuple[int, int, int]:
        groups = self._groups()
        if not groups:
            return 0, 0, 0
        return len(groups), sum(g.duplicate_count for g in groups), max(g.duplicate_count for g in groups)

    async def find_duplicate_groups(self, limit: Optional[int] = None) -> List[DuplicateGroup]:
        groups = self._groups()
        return groups[:limit] if limit is not None else groups

    async def fetch_measurements_by_ids(self, ids: Sequence[int]) -> List[StoredMeasurement]:
        wanted = set(ids)
        return sorted((r for r in self.rows if r.id in wanted), key=lambda r: r.id)

    async def delete_measurements(self, ids: Sequence[int]) -> int:
        if self.fail_delete_ids & set(ids):
            raise StorageWriteError("delete failed")
        wanted = set(ids)
        before = len(self.rows)
        self.rows = [r for r in self.rows if r.id not in wanted]
        return before - len(self.rows)


class FakeMonitoringApi:
    """Scripted monitoring API for collector tests."""

    def __init__(self):
        self.projects: Dict[str, str] = {}
        self.processes: Dict[str, List[ProcessDescriptor]] = {}
        self.partitions: Dict[str, List[DiskPartition]] = {}
        # (host_port, partition) -> batches
        self.measurements: Dict[Tuple[str, Optional[str]], List[MeasurementBatch]] = {}
        self.failing_units: Set[Tuple[str, Optional[str]]] = set()
        self.failing_projects: Set[str] = set()
        self.measurement_calls: List[dict] = []
        self.available = True
        # Called before each measurement fetch
        self.on_fetch: Optional[Callable[[str, Optional[str]], None]] = None

    def add_process(self, project_id: str, hostname: str, port: int = 27017, type_name: str = "REPLICA_PRIMARY"):
        process = ProcessDescriptor(hostname=hostname, port=port, type_name=type_name)
        self.processes.setdefault(project_id, []).append(process)
        return process

    async def is_available(self) -> bool:
        return self.available

    async def list_projects(self) -> Dict[str, str]:
        return dict(self.projects)

    async def list_processes(self, project_id: str) -> List[ProcessDescriptor]:
        if project_id in self.failing_projects:
            raise TransientFetchError(f"processes unavailable for {project_id}", status_code=503)
        return list(self.processes.get(project_id, []))

    async def list_disk_partitions(self, project_id: str, host_port: str) -> List[DiskPartition]:
        return list(self.partitions.get(host_port, []))

    async def _measurements(self, host_port, partition, metrics, granularity, start, end):
        self.measurement_calls.append(
            {
                "host_port": host_port,
                "partition": partition,
                "metrics": list(metrics),
                "granularity": granularity,
                "start": start,
                "end": end,
            }
        )
        if self.on_fetch is not None:
            self.on_fetch(host_port, partition)
        if (host_port, partition) in self.failing_units:
            raise TransientFetchError(f"measurements unavailable for {host_port}", status_code=500)
        return list(self.measurements.get((host_port, partition), []))

    async def get_process_measurements(self, project_id, host_port, metrics, granularity, start, end):
        return await self._measurements(host_port, None, metrics, granularity, start, end)

    async def get_disk_measurements(self, project_id, host_port, partition, metrics, granularity, start, end):
        return await self._measurements(host_port, partition, metrics, granularity, start, end)


@pytest.fixture
def store():
    """Empty in-memory measurement store."""
    return InMemoryMeasurementStore()


@pytest.fixture
def api():
    """Empty scripted monitoring API."""
    return FakeMonitoringApi()
