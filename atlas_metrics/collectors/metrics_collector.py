"""
Metrics collector.

For every project, process and disk partition it computes the smallest
fetch window that still covers unseen data, pulls measurements from the
monitoring API, forwards them to storage and optionally folds them into a
per-project aggregate with pattern classification.
"""

import asyncio
import logging
import time
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Sequence

from atlas_metrics.analysis.pattern_analyzer import analyze_pattern
from atlas_metrics.analysis.results import ProjectMetricsResult
from atlas_metrics.base import BaseCollector, CancellationToken
from atlas_metrics.errors import ConfigurationError
from atlas_metrics.logging_config import LogContext, log_collection_run
from atlas_metrics.protocols import MonitoringApi
from atlas_metrics.schemas import (
    CollectionStats,
    MeasurementBatch,
    ProcessDescriptor,
    is_disk_metric,
)
from atlas_metrics.storage.metrics_storage import MetricsStorage
from atlas_metrics.utils.time_utils import EPOCH, ensure_utc, parse_iso_duration, utcnow

logger = logging.getLogger(__name__)

WINDOW_OVERLAP = timedelta(minutes=5)
GAP_WARNING_THRESHOLD = timedelta(minutes=10)
FUTURE_TOLERANCE = timedelta(minutes=5)


class MetricsCollector(BaseCollector[Dict[str, ProjectMetricsResult]]):
    """
    Collects host and disk metrics for a set of projects.

    Per-unit failures (one process or one partition) are logged and
    counted; only configuration problems abort a run.
    """

    def __init__(
        self,
        api: MonitoringApi,
        metrics: Sequence[str],
        period: str = "P7D",
        granularity: str = "PT1M",
        storage: Optional[MetricsStorage] = None,
        store_metrics: bool = True,
        collect_only: bool = False,
        analyze_patterns: bool = True,
        projects: Optional[Sequence[str]] = None,
        max_concurrency: int = 1,
        clock: Callable[[], datetime] = utcnow,
        cancel_token: Optional[CancellationToken] = None,
    ):
        """
        Initialize collector.

        Args:
            api: Monitoring API client
            metrics: Metric names; names starting with DISK_ are fetched per partition
            period: ISO-8601 look-back used when nothing is stored yet
            granularity: Measurement granularity requested from the API
            storage: Measurement storage, required when store_metrics is set
            store_metrics: Forward collected points to storage
            collect_only: Skip in-memory aggregation and pattern analysis
            analyze_patterns: Classify each series when aggregating
            projects: Default project filter for collect(); empty means all
            max_concurrency: Processes collected in parallel within a project
            clock: Source of "now"
            cancel_token: Checked between projects and units; a cancelled run stops early
        """
        super().__init__("MetricsCollector")
        if not metrics:
            raise ConfigurationError("At least one metric must be configured")
        if store_metrics and storage is None:
            raise ConfigurationError("store_metrics requires a MetricsStorage")

        self._api = api
        self.metrics = list(metrics)
        self.period = parse_iso_duration(period)
        self.granularity = granularity
        self._storage = storage
        self.store_metrics = store_metrics
        self.collect_only = collect_only
        self.analyze_patterns = analyze_patterns
        self.projects = list(projects or [])
        self.max_concurrency = max(1, max_concurrency)
        self._clock = clock
        self.cancel_token = cancel_token
        self._run_token: Optional[CancellationToken] = None
        self.last_stats = CollectionStats()

        self.system_metrics = [m for m in self.metrics if not is_disk_metric(m)]
        self.disk_metrics = [m for m in self.metrics if is_disk_metric(m)]

        logger.info(
            f"Collecting {len(self.metrics)} metrics over {period} with {granularity} granularity"
            f"{' (storage enabled)' if store_metrics else ''}"
            f"{' (collect-only)' if collect_only else ''}"
        )

    async def collect(self) -> Dict[str, ProjectMetricsResult]:
        return await self.collect_metrics(self.projects)

    async def is_available(self) -> bool:
        try:
            return await self._api.is_available()
        except Exception:
            return False

    async def collect_metrics(
        self,
        project_names: Optional[Iterable[str]] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Dict[str, ProjectMetricsResult]:
        """
        Collect metrics for the named projects (all projects when empty).

        A cancelled token stops the run between units. Everything stored so
        far is kept and `last_stats.cancelled` is set.

        Returns:
            Per-project aggregates, empty in collect-only mode

        Raises:
            ConfigurationError: unknown project names, or no project to collect
        """
        started = time.monotonic()
        stats = CollectionStats()
        self.last_stats = stats
        token = cancel_token or self.cancel_token
        self._run_token = token

        projects = await self._resolve_projects(list(project_names or []))
        stats.projects = len(projects)
        logger.info(f"Starting metrics collection for {len(projects)} projects")

        results: Dict[str, ProjectMetricsResult] = {}
        if not self.collect_only:
            for name, project_id in projects.items():
                result = ProjectMetricsResult(project_name=name, project_id=project_id)
                for metric in self.metrics:
                    result.initialize_metric(metric)
                results[name] = result

        try:
            for name, project_id in projects.items():
                if self._cancelled:
                    break
                stats.per_project_points[name] = 0
                try:
                    with LogContext(logger, project=name):
                        logger.info(f"Processing project: {name}")
                        await self._collect_project(name, project_id, results.get(name), stats)
                except Exception as e:
                    stats.projects_failed += 1
                    logger.error(f"Error collecting metrics for project {name}: {e}")
                    continue

                collected = stats.per_project_points[name]
                if collected:
                    logger.info(f"{name} complete: {collected} data points collected")
                else:
                    logger.warning(f"{name} complete: no data points collected")

            stats.cancelled = self._cancelled
        finally:
            self._run_token = None

        stats.duration_ms = int((time.monotonic() - started) * 1000)
        if stats.cancelled:
            logger.warning(f"Collection cancelled: {token.reason}")
        self._log_summary(stats)
        log_collection_run(stats, success=not stats.cancelled)
        return results

    @property
    def _cancelled(self) -> bool:
        return self._run_token is not None and self._run_token.is_cancelled

    async def _resolve_projects(self, requested: List[str]) -> Dict[str, str]:
        available = await self._api.list_projects()

        if requested:
            unknown = sorted(set(requested) - set(available))
            if unknown:
                raise ConfigurationError(f"Unknown projects: {', '.join(unknown)}")
            projects = {name: available[name] for name in dict.fromkeys(requested)}
        else:
            projects = dict(available)

        if not projects:
            raise ConfigurationError("No projects available to collect")
        return projects

    async def _collect_project(
        self,
        project_name: str,
        project_id: str,
        result: Optional[ProjectMetricsResult],
        stats: CollectionStats,
    ) -> None:
        processes = await self._api.list_processes(project_id)
        eligible = [p for p in processes if p.is_data_bearing]
        logger.debug(
            f"Filtered to {len(eligible)} of {len(processes)} processes for project {project_name}"
        )
        stats.processes_scanned += len(eligible)

        semaphore = asyncio.Semaphore(self.max_concurrency)

        async def run(process: ProcessDescriptor) -> None:
            async with semaphore:
                if self._cancelled:
                    return
                await self._collect_process(project_name, project_id, process, result, stats)

        await asyncio.gather(*(run(process) for process in eligible))

    async def _collect_process(
        self,
        project_name: str,
        project_id: str,
        process: ProcessDescriptor,
        result: Optional[ProjectMetricsResult],
        stats: CollectionStats,
    ) -> None:
        if self.system_metrics:
            await self._collect_unit(
                project_name, project_id, process, None, self.system_metrics, result, stats
            )

        if not self.disk_metrics or self._cancelled:
            return

        try:
            partitions = await self._api.list_disk_partitions(project_id, process.host_port)
        except Exception as e:
            stats.units_failed += 1
            logger.error(f"Failed to get disk partitions for process {process.host_port}: {e}")
            return

        if not partitions:
            logger.info(f"No disk partitions found for {process.host_port}")
        for partition in partitions:
            await self._collect_unit(
                project_name,
                project_id,
                process,
                partition.partition_name,
                self.disk_metrics,
                result,
                stats,
            )

    async def compute_window_start(
        self,
        host_port: str,
        metrics: Sequence[str],
        partition: Optional[str],
        now: datetime,
    ) -> datetime:
        """
        Earliest start time that still covers unseen data for every metric.

        Each metric contributes its latest stored timestamp minus a small
        overlap, or the full look-back period when nothing is stored.
        """
        period_start = now - self.period
        if not self.store_metrics:
            return period_start

        start: Optional[datetime] = None
        for metric in metrics:
            latest = await self._storage.resume_timestamp_for(host_port, metric, partition)
            candidate = period_start if latest == EPOCH else latest - WINDOW_OVERLAP
            if start is None or candidate < start:
                start = candidate
        return start if start is not None else period_start

    async def _collect_unit(
        self,
        project_name: str,
        project_id: str,
        process: ProcessDescriptor,
        partition: Optional[str],
        metrics: Sequence[str],
        result: Optional[ProjectMetricsResult],
        stats: CollectionStats,
    ) -> None:
        if self._cancelled:
            return

        location = process.host_port
        if partition is not None:
            location = f"{process.host_port}, partition: {partition}"

        try:
            now = ensure_utc(self._clock())
            start = await self.compute_window_start(process.host_port, metrics, partition, now)
            if start > now:
                stats.units_skipped += 1
                logger.info(f"All data is up to date for {location}")
                return

            logger.debug(f"Fetching {len(metrics)} metrics for {location} from {start} to {now}")
            if partition is None:
                batches = await self._api.get_process_measurements(
                    project_id, process.host_port, metrics, self.granularity, start, now
                )
            else:
                batches = await self._api.get_disk_measurements(
                    project_id, process.host_port, partition, metrics, self.granularity, start, now
                )

            if not batches:
                logger.info(f"No measurements found for {location}")
                return

            for batch in batches:
                await self._process_batch(project_name, process, partition, location, batch, result, stats, now)

        except Exception as e:
            stats.units_failed += 1
            logger.error(f"Error collecting measurements for {location}: {e}")

    async def _process_batch(
        self,
        project_name: str,
        process: ProcessDescriptor,
        partition: Optional[str],
        location: str,
        batch: MeasurementBatch,
        result: Optional[ProjectMetricsResult],
        stats: CollectionStats,
        now: datetime,
    ) -> None:
        if not batch.data_points:
            logger.debug(f"Metric {batch.metric_name} has no data points for {location}")
            return

        collected = len(batch.data_points)
        stats.points_collected += collected
        stats.per_project_points[project_name] = stats.per_project_points.get(project_name, 0) + collected
        self.validate_data_points(batch, location, now)

        if self.store_metrics:
            stored = await self._storage.store_metrics(
                project_name,
                process.hostname,
                process.port,
                partition,
                batch.metric_name,
                batch.data_points,
            )
            stats.points_stored += stored
            logger.debug(
                f"Stored {stored} new data points for {batch.metric_name} on {location}, "
                f"skipped {collected - stored}"
            )

        if result is not None:
            values = batch.values
            for value in values:
                result.add_measurement(batch.metric_name, value, location)
            if self.analyze_patterns and values:
                result.add_pattern_result(batch.metric_name, location, analyze_pattern(values))

    def validate_data_points(self, batch: MeasurementBatch, location: str, now: datetime) -> List[str]:
        """Log and return data-quality warnings for one fetched batch."""
        warnings: List[str] = []
        timestamps = sorted(ensure_utc(p.timestamp) for p in batch.data_points)
        if not timestamps:
            return warnings

        if self.granularity == "PT1M":
            for previous, current in zip(timestamps, timestamps[1:]):
                gap = current - previous
                if gap > GAP_WARNING_THRESHOLD:
                    warnings.append(
                        f"Large gap detected in {batch.metric_name} data for {location}: "
                        f"{int(gap.total_seconds() // 60)} minutes between "
                        f"{previous.isoformat()} and {current.isoformat()}"
                    )

        if timestamps[-1] > now + FUTURE_TOLERANCE:
            warnings.append(
                f"Future timestamp detected in {batch.metric_name} data for {location}: "
                f"{timestamps[-1].isoformat()}"
            )

        for warning in warnings:
            logger.warning(warning)
        return warnings

    def _log_summary(self, stats: CollectionStats) -> None:
        if stats.points_collected:
            logger.info(
                f"Collection complete: {stats.points_collected} data points from "
                f"{stats.processes_scanned} processes in {stats.duration_ms}ms"
            )
            if self.store_metrics:
                logger.info(f"{stats.points_stored} data points stored")
        else:
            logger.warning(
                f"Collection complete: no data points collected from {stats.processes_scanned} processes"
            )
        if stats.units_failed or stats.projects_failed:
            logger.warning(
                f"{stats.units_failed} units and {stats.projects_failed} projects failed during collection"
            )
