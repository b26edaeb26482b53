"""
Unit tests for harvester base classes.

Tests the collector base class, the periodic runner, the retry mixin and
cancellation tokens.
"""

import asyncio
from typing import List

import pytest

from atlas_metrics.base import BaseCollector, CancellationToken, PeriodicCollector, RetryableMixin
from atlas_metrics.errors import OperationCancelled, TransientFetchError


class FakeCollector(BaseCollector[List[int]]):
    """Concrete test implementation of BaseCollector."""

    def __init__(self, name: str = "FakeCollector", timeout_seconds=None):
        super().__init__(name, timeout_seconds=timeout_seconds)
        self.available = True
        self.delay = 0.0
        self.collect_called = 0

    async def collect(self) -> List[int]:
        self.collect_called += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.available:
            raise Exception("Test error")
        return [1, 2]

    async def is_available(self) -> bool:
        return self.available


class FlakyOperation(RetryableMixin):
    """Fails a set number of times before succeeding."""

    def __init__(self, failures, **kwargs):
        super().__init__(**kwargs)
        self.failures = list(failures)
        self.calls = 0

    async def run(self):
        async def operation():
            self.calls += 1
            if self.failures:
                raise self.failures.pop(0)
            return "ok"

        return await self._with_retry(operation, "flaky operation")


class TestBaseCollector:
    """Test BaseCollector functionality."""

    @pytest.mark.asyncio
    async def test_successful_collection(self):
        collector = FakeCollector()

        assert await collector.collect_with_timeout() == [1, 2]
        stats = collector.get_stats()
        assert stats["collections"] == 1
        assert stats["errors"] == 0
        assert stats["last_collection"] is not None

    @pytest.mark.asyncio
    async def test_failed_collection_returns_none(self):
        collector = FakeCollector()
        collector.available = False

        assert await collector.collect_with_timeout() is None
        assert collector.get_stats()["last_error"] == "Test error"

    @pytest.mark.asyncio
    async def test_timeout(self):
        collector = FakeCollector(timeout_seconds=0.01)
        collector.delay = 1.0

        assert await collector.collect_with_timeout() is None
        assert "timeout" in collector.get_stats()["last_error"]

    @pytest.mark.asyncio
    async def test_reset_stats(self):
        collector = FakeCollector()
        collector.available = False
        await collector.collect_with_timeout()

        collector.reset_stats()

        assert collector.get_stats()["errors"] == 0


class TestPeriodicCollector:
    """Test periodic scheduling."""

    @pytest.mark.asyncio
    async def test_runs_and_stops(self):
        collector = FakeCollector()
        results = []

        async def on_result(result):
            results.append(result)

        periodic = PeriodicCollector(collector, interval_seconds=0.01, on_result=on_result)
        await periodic.start()
        await asyncio.sleep(0.05)
        await periodic.stop()

        assert not periodic.is_running
        assert collector.collect_called >= 2
        assert results[0] == [1, 2]
        assert periodic.get_last_result() == [1, 2]

    @pytest.mark.asyncio
    async def test_stop_interrupts_interval(self):
        collector = FakeCollector()
        periodic = PeriodicCollector(collector, interval_seconds=3600)

        await periodic.start()
        await asyncio.sleep(0.01)
        await asyncio.wait_for(periodic.stop(), timeout=1)

        assert collector.collect_called == 1
        assert not periodic.is_running

    @pytest.mark.asyncio
    async def test_failed_result_handler_keeps_running(self):
        collector = FakeCollector()

        async def on_result(result):
            raise RuntimeError("sink down")

        periodic = PeriodicCollector(collector, interval_seconds=0.01, on_result=on_result)
        await periodic.start()
        await asyncio.sleep(0.05)
        await periodic.stop()

        assert collector.collect_called >= 2


class TestRetryableMixin:
    """Test bounded retries."""

    @pytest.mark.asyncio
    async def test_retries_server_errors(self):
        operation = FlakyOperation([TransientFetchError("boom", status_code=503)], retry_base_delay=0)

        assert await operation.run() == "ok"
        assert operation.calls == 2

    @pytest.mark.asyncio
    async def test_does_not_retry_client_errors(self):
        operation = FlakyOperation([TransientFetchError("gone", status_code=404)], retry_base_delay=0)

        with pytest.raises(TransientFetchError):
            await operation.run()
        assert operation.calls == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_retries(self):
        failures = [TransientFetchError("throttled", status_code=429)] * 5
        operation = FlakyOperation(failures, max_retries=2, retry_base_delay=0)

        with pytest.raises(TransientFetchError):
            await operation.run()
        assert operation.calls == 3


class TestCancellationToken:
    """Test cooperative cancellation."""

    def test_cancel(self):
        token = CancellationToken()
        assert not token.is_cancelled
        token.raise_if_cancelled()

        token.cancel("user pressed Ctrl+C")
        token.cancel("second reason ignored")

        assert token.is_cancelled
        assert token.reason == "user pressed Ctrl+C"
        with pytest.raises(OperationCancelled):
            token.raise_if_cancelled()

    @pytest.mark.asyncio
    async def test_wait(self):
        token = CancellationToken()
        asyncio.get_running_loop().call_soon(token.cancel)
        await asyncio.wait_for(token.wait(), timeout=1)
        assert token.is_cancelled
