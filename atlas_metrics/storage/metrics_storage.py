"""
Idempotent ingestion of monitoring data points.

Each batch is filtered through three layers before anything is written:
the series checkpoint, an intra-batch timestamp set, and one exact-match
existence query against the store. Only then are the survivors inserted
and the checkpoint advanced.
"""

import logging
import math
from datetime import datetime, timedelta
from typing import Any, List, Mapping, Optional, Sequence, Set, Tuple, Union

from atlas_metrics.errors import PointParseError
from atlas_metrics.protocols import MeasurementStore
from atlas_metrics.schemas import (
    BatchStoreResult,
    MeasurementMetadata,
    MetricDataPoint,
    SeriesKey,
    StoredMeasurement,
)
from atlas_metrics.storage.tracker import TimestampTracker
from atlas_metrics.utils.time_utils import EPOCH, ensure_utc, parse_timestamp

logger = logging.getLogger(__name__)

RawPoint = Union[MetricDataPoint, Mapping[str, Any]]


def parse_point(raw: RawPoint) -> Tuple[datetime, float]:
    """
    Extract (timestamp, value) from an API data point.

    Raises:
        PointParseError: bad timestamp, or a null or non-numeric value
    """
    if isinstance(raw, MetricDataPoint):
        timestamp, value = raw.timestamp, raw.value
    elif isinstance(raw, Mapping):
        timestamp, value = raw.get("timestamp"), raw.get("value")
    else:
        raise PointParseError(f"Unsupported data point: {raw!r}")

    try:
        timestamp = parse_timestamp(timestamp)
    except ValueError as e:
        raise PointParseError(f"Failed to parse timestamp: {timestamp!r}", cause=e)

    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise PointParseError(f"Null or invalid value at {timestamp.isoformat()}: {value!r}")
    value = float(value)
    if not math.isfinite(value):
        raise PointParseError(f"Non-finite value at {timestamp.isoformat()}")

    return timestamp, value


class MetricsStorage:
    """Stores data points exactly once per series and reads them back."""

    def __init__(self, store: MeasurementStore, tracker: TimestampTracker):
        self._store = store
        self._tracker = tracker
        self._batches = 0
        self._stored = 0
        self._duplicates = 0
        self._parse_errors = 0
        self._failed_batches = 0

    @property
    def tracker(self) -> TimestampTracker:
        return self._tracker

    async def store_metrics(
        self,
        project_name: str,
        host: str,
        port: int,
        partition: Optional[str],
        metric: str,
        points: Sequence[RawPoint],
    ) -> int:
        """Store a batch and return the number of new points written."""
        result = await self.store_batch(project_name, host, port, partition, metric, points)
        return result.stored

    async def store_batch(
        self,
        project_name: str,
        host: str,
        port: int,
        partition: Optional[str],
        metric: str,
        points: Sequence[RawPoint],
    ) -> BatchStoreResult:
        """
        Store a batch of points for one series.

        Never raises: storage failures are logged and reported through
        `write_failed` with nothing counted as stored.
        """
        series = SeriesKey.for_process(host, port, metric, partition)
        key = series.key
        points = list(points or [])
        self._batches += 1

        if not points:
            logger.debug(f"No data points to store for {key}")
            return BatchStoreResult(key=key)

        async with self._tracker.lock_for(key):
            last_timestamp = self._tracker.get(key)
            logger.debug(f"Last timestamp for {key}: {last_timestamp.isoformat()}")

            parse_errors = 0
            duplicates = 0
            seen: Set[datetime] = set()
            candidates: List[Tuple[datetime, float]] = []

            for raw in points:
                try:
                    timestamp, value = parse_point(raw)
                except PointParseError as e:
                    parse_errors += 1
                    logger.debug(f"Skipping point for {key}: {e}")
                    continue

                if timestamp <= last_timestamp or timestamp in seen:
                    duplicates += 1
                    continue

                seen.add(timestamp)
                candidates.append((timestamp, value))

            self._parse_errors += parse_errors
            result = BatchStoreResult(
                key=key, received=len(points), duplicates=duplicates, parse_errors=parse_errors
            )
            if parse_errors:
                logger.warning(f"{parse_errors} unparseable data points skipped for {key}")
            if not candidates:
                self._duplicates += duplicates
                logger.debug(
                    f"No new data points to store for {key} (all {duplicates} points were duplicates)"
                )
                return result

            metadata = MeasurementMetadata(
                project_name=project_name, host=series.host, metric=metric, partition=partition
            )
            try:
                existing = await self._store.existing_points(metadata, [ts for ts, _ in candidates])
                rows = [
                    StoredMeasurement(timestamp=ts, value=value, metadata=metadata)
                    for ts, value in candidates
                    if (ts, value) not in existing
                ]
                already_stored = [ts for ts, value in candidates if (ts, value) in existing]
                duplicates += len(already_stored)
                result.duplicates = duplicates
                self._duplicates += duplicates
                if not rows:
                    logger.debug(f"All {len(candidates)} candidate points for {key} already stored")
                    return result

                written = await self._store.insert_measurements(rows)
            except Exception as e:
                self._failed_batches += 1
                logger.error(f"Failed to store metrics for {key}: {e}")
                result.write_failed = True
                return result

            result.stored = len(written)
            self._stored += len(written)
            written_at = {row.timestamp for row in written}
            rejected = [row.timestamp for row in rows if row.timestamp not in written_at]
            checkpoint = self._safe_checkpoint(written_at.union(already_stored), rejected)
            if rejected:
                logger.warning(
                    f"{len(rejected)} of {len(rows)} data points for {key} were rejected "
                    f"by the store; checkpoint held at "
                    f"{checkpoint.isoformat() if checkpoint else last_timestamp.isoformat()}"
                )
            if checkpoint is not None:
                try:
                    await self._tracker.advance(series, checkpoint)
                except Exception as e:
                    # Rows are written; the checkpoint lags and the existence check covers it
                    logger.warning(f"Failed to advance checkpoint for {key}: {e}")

            logger.debug(
                f"Stored {result.stored} new data points for {key} (skipped {duplicates} duplicates)"
            )
            return result

    @staticmethod
    def _safe_checkpoint(stored_at: Set[datetime], rejected: List[datetime]) -> Optional[datetime]:
        """
        Newest stored timestamp with no rejected point at or before it.

        When the earliest point was rejected but later ones were stored, the
        checkpoint is held just before the rejected point so it is fetched again.
        """
        if not stored_at:
            return None
        if not rejected:
            return max(stored_at)
        first_rejected = min(rejected)
        below = [ts for ts in stored_at if ts < first_rejected]
        return max(below) if below else first_rejected - timedelta(microseconds=1)

    async def resume_timestamp_for(
        self, host: str, metric: str, partition: Optional[str] = None
    ) -> datetime:
        """
        Timestamp after which data for one series may still be missing.

        This is the latest stored timestamp, unless a partially rejected write
        left the checkpoint behind rows stored after the rejected ones.
        """
        latest = await self.latest_timestamp_for(metric, host=host, partition=partition)
        checkpoint = self._tracker.get(SeriesKey(host=host, metric=metric, partition=partition).key)
        if checkpoint != EPOCH and checkpoint < latest:
            return checkpoint
        return latest

    async def latest_timestamp_for(
        self,
        metric: str,
        project_name: Optional[str] = None,
        host: Optional[str] = None,
        partition: Optional[str] = None,
    ) -> datetime:
        """Latest stored timestamp matching the filters, or the epoch."""
        latest = await self._store.latest_timestamp(
            metric=metric, project=project_name, host=host, partition=partition
        )
        return ensure_utc(latest) if latest else EPOCH

    async def get_metrics(
        self,
        start: datetime,
        end: Optional[datetime] = None,
        project_name: Optional[str] = None,
        host: Optional[str] = None,
        metric: Optional[str] = None,
    ) -> List[StoredMeasurement]:
        """Stored measurements in [start, end], ascending by timestamp."""
        return await self._store.get_measurements(
            start=ensure_utc(start),
            end=ensure_utc(end) if end else None,
            project=project_name,
            host=host,
            metric=metric,
        )

    async def earliest_data_time(
        self,
        project_name: Optional[str] = None,
        host: Optional[str] = None,
        metric: Optional[str] = None,
    ) -> datetime:
        earliest = await self._store.earliest_timestamp(metric=metric, project=project_name, host=host)
        return ensure_utc(earliest) if earliest else EPOCH

    async def latest_data_time(
        self,
        project_name: Optional[str] = None,
        host: Optional[str] = None,
        metric: Optional[str] = None,
    ) -> datetime:
        latest = await self._store.latest_timestamp(metric=metric, project=project_name, host=host)
        return ensure_utc(latest) if latest else EPOCH

    def get_stats(self) -> dict:
        """Ingestion counters since construction."""
        return {
            "batches": self._batches,
            "stored": self._stored,
            "duplicates": self._duplicates,
            "parse_errors": self._parse_errors,
            "failed_batches": self._failed_batches,
            "tracked_series": len(self._tracker),
        }
