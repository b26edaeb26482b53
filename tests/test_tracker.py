"""
Unit tests for the series timestamp tracker.
"""

from datetime import timedelta

import pytest

from atlas_metrics.base import CancellationToken
from atlas_metrics.errors import OperationCancelled, StorageWriteError
from atlas_metrics.schemas import BackfillStrategy, SeriesKey, TrackerEntry
from atlas_metrics.storage.tracker import TimestampTracker
from atlas_metrics.utils.time_utils import EPOCH

from conftest import T0


class RecordingPolicy:
    """Backfill policy returning a fixed strategy and recording calls."""

    def __init__(self, strategy: BackfillStrategy):
        self.strategy = strategy
        self.plans = []
        self.progress = []

    async def choose_strategy(self, plan):
        self.plans.append(plan)
        return self.strategy

    def report_progress(self, progress):
        self.progress.append(progress)


def _seed_series(store, count: int):
    for i in range(count):
        store.add_row(T0 + timedelta(minutes=i), float(i), host=f"h{i}:27017", metric="CPU")


class TestAdvance:
    """Test checkpoint movement."""

    @pytest.mark.asyncio
    async def test_unseen_key_is_epoch(self, store):
        tracker = TimestampTracker(store)
        assert tracker.get("h1:27017:CPU") == EPOCH
        assert "h1:27017:CPU" not in tracker

    @pytest.mark.asyncio
    async def test_advance_persists_and_never_moves_back(self, store):
        tracker = TimestampTracker(store)
        series = SeriesKey(host="h1:27017", metric="CPU")

        assert await tracker.advance(series, T0 + timedelta(minutes=5))
        assert not await tracker.advance(series, T0)

        assert tracker.get(series.key) == T0 + timedelta(minutes=5)
        assert store.checkpoints[series.key].last_timestamp == T0 + timedelta(minutes=5)

    @pytest.mark.asyncio
    async def test_failed_persist_leaves_memory_unchanged(self, store):
        tracker = TimestampTracker(store)
        store.fail_checkpoints = True

        with pytest.raises(StorageWriteError):
            await tracker.advance(SeriesKey(host="h1:27017", metric="CPU"), T0)

        assert len(tracker) == 0

    @pytest.mark.asyncio
    async def test_partitions_are_separate_series(self, store):
        tracker = TimestampTracker(store)
        await tracker.advance(SeriesKey(host="h1:27017", metric="DISK_IOPS", partition="data"), T0)

        assert "h1:27017:DISK_IOPS:data" in tracker
        assert tracker.get("h1:27017:DISK_IOPS") == EPOCH


class TestInitialize:
    """Test checkpoint loading, discovery and cold-start backfill."""

    @pytest.mark.asyncio
    async def test_loads_persisted_checkpoints(self, store):
        series = SeriesKey(host="h1:27017", metric="CPU")
        store.checkpoints[series.key] = TrackerEntry.from_series(series, T0)
        store.add_row(T0, 1.0)

        tracker = TimestampTracker(store)
        await tracker.initialize()

        assert tracker.snapshot() == {series.key: T0}

    @pytest.mark.asyncio
    async def test_discovers_new_series(self, store):
        known = SeriesKey(host="h1:27017", metric="CPU")
        store.checkpoints[known.key] = TrackerEntry.from_series(known, T0)
        store.add_row(T0, 1.0)
        store.add_row(T0 + timedelta(minutes=3), 2.0, host="h2:27017")

        tracker = TimestampTracker(store)
        await tracker.initialize()

        assert tracker.get("h2:27017:CPU") == T0 + timedelta(minutes=3)
        assert "h2:27017:CPU" in store.checkpoints

    @pytest.mark.asyncio
    async def test_discovery_falls_back_when_aggregation_fails(self, store):
        known = SeriesKey(host="h1:27017", metric="CPU")
        store.checkpoints[known.key] = TrackerEntry.from_series(known, T0)
        store.add_row(T0 + timedelta(minutes=1), 2.0, host="h2:27017")
        store.fail_aggregation = True

        tracker = TimestampTracker(store)
        await tracker.initialize()

        assert tracker.get("h2:27017:CPU") == T0 + timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_fallback_skipped_for_large_trackers(self, store):
        known = SeriesKey(host="h1:27017", metric="CPU")
        store.checkpoints[known.key] = TrackerEntry.from_series(known, T0)
        store.add_row(T0, 2.0, host="h2:27017")
        store.fail_aggregation = True

        tracker = TimestampTracker(store, discovery_fallback_limit=0)
        await tracker.initialize()

        assert "h2:27017:CPU" not in tracker

    @pytest.mark.asyncio
    async def test_empty_store_starts_empty(self, store):
        tracker = TimestampTracker(store)
        await tracker.initialize()
        assert len(tracker) == 0

    @pytest.mark.asyncio
    async def test_small_backfill_skips_policy(self, store):
        _seed_series(store, 3)
        policy = RecordingPolicy(BackfillStrategy.ABORT)

        tracker = TimestampTracker(store, backfill_threshold=3)
        await tracker.initialize(policy)

        assert len(tracker) == 3
        assert policy.plans == []

    @pytest.mark.asyncio
    async def test_foreground_backfill_reports_progress(self, store):
        _seed_series(store, 4)
        policy = RecordingPolicy(BackfillStrategy.FOREGROUND)

        tracker = TimestampTracker(store, backfill_threshold=2)
        await tracker.initialize(policy)

        assert len(tracker) == 4
        assert policy.plans[0].series_count == 4
        assert policy.plans[0].host_count == 4
        assert [p.processed for p in policy.progress] == [1, 2, 3, 4]
        assert policy.progress[-1].entries_created == 4

    @pytest.mark.asyncio
    async def test_cancelled_foreground_backfill_keeps_partial_state(self, store):
        _seed_series(store, 4)
        token = CancellationToken()
        token.cancel()

        tracker = TimestampTracker(store, backfill_threshold=2)
        await tracker.initialize(RecordingPolicy(BackfillStrategy.FOREGROUND), token)

        assert len(tracker) == 0

    @pytest.mark.asyncio
    async def test_background_backfill(self, store):
        _seed_series(store, 4)

        tracker = TimestampTracker(store, backfill_threshold=2)
        await tracker.initialize(RecordingPolicy(BackfillStrategy.BACKGROUND))
        await tracker.wait_for_backfill()

        assert len(tracker) == 4
        assert not tracker.is_backfilling

    @pytest.mark.asyncio
    async def test_skip_leaves_tracker_empty(self, store):
        _seed_series(store, 4)

        tracker = TimestampTracker(store, backfill_threshold=2)
        await tracker.initialize(RecordingPolicy(BackfillStrategy.SKIP))

        assert len(tracker) == 0

    @pytest.mark.asyncio
    async def test_abort_raises(self, store):
        _seed_series(store, 4)

        tracker = TimestampTracker(store, backfill_threshold=2)
        with pytest.raises(OperationCancelled):
            await tracker.initialize(RecordingPolicy(BackfillStrategy.ABORT))
