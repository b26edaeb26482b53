"""
Timestamp tracker.

Read-through cache of per-series checkpoints: for every series key it holds
the last timestamp known to be stored. The persisted checkpoint rows are the
source of truth; this class keeps them in memory and only ever moves them
forward.
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from atlas_metrics.backfill import HeadlessBackfillPolicy
from atlas_metrics.base import CancellationToken
from atlas_metrics.errors import OperationCancelled
from atlas_metrics.protocols import BackfillPolicy, MeasurementStore
from atlas_metrics.schemas import (
    BackfillPlan,
    BackfillProgress,
    BackfillStrategy,
    SeriesKey,
    TrackerEntry,
)
from atlas_metrics.utils.time_utils import EPOCH, ensure_utc

logger = logging.getLogger(__name__)

DEFAULT_BACKFILL_THRESHOLD = 100
DEFAULT_DISCOVERY_FALLBACK_LIMIT = 1000


class TimestampTracker:
    """Per-series checkpoint cache backed by a MeasurementStore."""

    def __init__(
        self,
        store: MeasurementStore,
        backfill_threshold: int = DEFAULT_BACKFILL_THRESHOLD,
        discovery_fallback_limit: int = DEFAULT_DISCOVERY_FALLBACK_LIMIT,
    ):
        """
        Initialize tracker.

        Args:
            store: Persistence for checkpoints and measurements
            backfill_threshold: Series count above which the backfill policy is consulted
            discovery_fallback_limit: Skip the slow discovery fallback above this many entries
        """
        self._store = store
        self.backfill_threshold = backfill_threshold
        self.discovery_fallback_limit = discovery_fallback_limit
        self._entries: Dict[str, datetime] = {}
        self._locks: Dict[str, asyncio.Lock] = {}
        self._backfill_task: Optional[asyncio.Task] = None

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> datetime:
        """Last stored timestamp for `key`, or the epoch when unseen."""
        return self._entries.get(key, EPOCH)

    def snapshot(self) -> Dict[str, datetime]:
        return dict(self._entries)

    def lock_for(self, key: str) -> asyncio.Lock:
        """Lock serializing writers of one series inside this process."""
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        return lock

    async def advance(self, series: SeriesKey, timestamp: datetime) -> bool:
        """
        Move the checkpoint for `series` forward to `timestamp`.

        Returns:
            True if the checkpoint moved, False if `timestamp` is not newer
        """
        timestamp = ensure_utc(timestamp)
        key = series.key
        if timestamp <= self.get(key):
            return False

        await self._store.upsert_checkpoint(TrackerEntry.from_series(series, timestamp))
        # A concurrent advance may have moved past us while the upsert ran
        if timestamp > self.get(key):
            self._entries[key] = timestamp
        return True

    async def initialize(
        self,
        policy: Optional[BackfillPolicy] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> None:
        """
        Load persisted checkpoints and bring the tracker up to date.

        With no checkpoints every series in the store is backfilled; large
        backfills are handed to `policy`. Otherwise only series missing from
        the tracker are discovered and seeded.

        Raises:
            OperationCancelled: if the policy chose to abort
        """
        policy = policy or HeadlessBackfillPolicy()
        started = asyncio.get_running_loop().time()

        entries = await self._store.load_checkpoints()
        for entry in entries:
            self._entries[entry.key] = ensure_utc(entry.last_timestamp)
        logger.info(f"Loaded {len(entries)} timestamp tracker entries")

        if not entries:
            logger.info("No tracker entries found, building initial tracker from stored measurements")
            await self._build_initial_tracker(policy, cancel_token)
        else:
            await self._discover_new_series()

        elapsed_ms = int((asyncio.get_running_loop().time() - started) * 1000)
        logger.info(f"Timestamp tracker initialized with {len(self._entries)} entries in {elapsed_ms}ms")

    async def wait_for_backfill(self) -> None:
        """Wait for a background backfill to finish, if one is running."""
        if self._backfill_task is not None:
            await self._backfill_task

    @property
    def is_backfilling(self) -> bool:
        return self._backfill_task is not None and not self._backfill_task.done()

    async def _build_initial_tracker(
        self, policy: BackfillPolicy, cancel_token: Optional[CancellationToken]
    ) -> None:
        series = await self._store.list_series()
        if not series:
            logger.info("No series found in the store, tracker starts empty")
            return

        series = sorted(series, key=lambda s: (s.host, s.metric, s.partition or ""))
        plan = BackfillPlan(series_count=len(series), host_count=len({s.host for s in series}))
        logger.info(f"Total work: {plan.series_count} series across {plan.host_count} hosts")

        if plan.series_count <= self.backfill_threshold:
            await self._backfill(series)
            return

        logger.info(
            f"Large dataset detected ({plan.series_count} series), this may take several minutes"
        )
        strategy = await policy.choose_strategy(plan)

        if strategy == BackfillStrategy.FOREGROUND:
            await self._backfill(series, policy, cancel_token)
        elif strategy == BackfillStrategy.BACKGROUND:
            logger.info("Building timestamp tracker in background")
            self._backfill_task = asyncio.create_task(self._background_backfill(series))
        elif strategy == BackfillStrategy.SKIP:
            logger.warning(
                "Skipping timestamp tracker build, duplicate detection relies on store lookups"
            )
        else:
            logger.info("Tracker initialization aborted by backfill policy")
            raise OperationCancelled("Timestamp tracker initialization aborted")

    async def _background_backfill(self, series: List[SeriesKey]) -> None:
        try:
            await self._backfill(series)
        except Exception as e:
            logger.error(f"Background tracker backfill failed: {e}")

    async def _backfill(
        self,
        series: Iterable[SeriesKey],
        policy: Optional[BackfillPolicy] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> int:
        series = list(series)
        loop = asyncio.get_running_loop()
        started = loop.time()
        created = 0

        for processed, item in enumerate(series, start=1):
            if cancel_token is not None and cancel_token.is_cancelled:
                logger.warning(
                    f"Timestamp tracker build cancelled, keeping partial tracker with {created} entries"
                )
                break

            if item.key not in self._entries:
                latest = await self._store.latest_timestamp_for_series(item)
                if latest is not None and await self.advance(item, latest):
                    created += 1

            if policy is not None:
                policy.report_progress(
                    BackfillProgress(
                        processed=processed,
                        total=len(series),
                        entries_created=created,
                        current_host=item.host,
                        elapsed_seconds=loop.time() - started,
                    )
                )

        logger.info(f"Tracker backfill created {created} entries from {len(series)} series")
        return created

    async def _discover_new_series(self) -> None:
        logger.info("Checking for new host/metric combinations")
        try:
            latest_by_series = await self._store.series_latest_timestamps()
        except Exception as e:
            logger.error(f"Error checking for new host/metric combinations: {e}")
            logger.info("Falling back to per-series scan")
            await self._discover_new_series_simple()
            return

        added = 0
        for series, latest in latest_by_series.items():
            if series.key in self._entries:
                continue
            try:
                if await self.advance(series, latest):
                    added += 1
            except Exception as e:
                logger.warning(f"Failed to seed checkpoint for {series.key}: {e}")

        if added:
            logger.info(f"Found and added {added} new host/metric combinations to tracker")
        else:
            logger.info("No new host/metric combinations found")

    async def _discover_new_series_simple(self) -> None:
        if len(self._entries) > self.discovery_fallback_limit:
            logger.info(
                f"Large dataset detected ({len(self._entries)}+ entries), "
                f"skipping new combination check"
            )
            return

        added = 0
        try:
            for series in await self._store.list_series():
                if series.key in self._entries:
                    continue
                latest = await self._store.latest_timestamp_for_series(series)
                if latest is not None and await self.advance(series, latest):
                    added += 1
        except Exception as e:
            logger.error(f"Per-series discovery failed: {e}")
        logger.info(f"Simple check found {added} new combinations")
