"""
Base classes shared by the harvester components.

Defines the collector base class, the periodic runner used by the service,
the retry mixin used by the monitoring client, and the cooperative
cancellation token used by long-running maintenance operations.
"""

from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar
from datetime import datetime, timezone
import asyncio
import logging

from atlas_metrics.errors import OperationCancelled, TransientFetchError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """
    Cooperative cancellation flag.

    Long-running loops check the token between units of work so partial
    progress is kept when the user interrupts.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self.is_cancelled:
            raise OperationCancelled(f"Operation cancelled: {self.reason}")

    async def wait(self) -> None:
        await self._event.wait()


class BaseCollector(ABC, Generic[T]):
    """
    Abstract base class for collectors.

    Ensures consistent error handling, timeout behaviour and run statistics.
    """

    def __init__(self, name: str, timeout_seconds: Optional[float] = None):
        """
        Initialize base collector.

        Args:
            name: Collector name for logging and identification
            timeout_seconds: Maximum time allowed for one collection, None for no limit
        """
        self.name = name
        self.timeout_seconds = timeout_seconds
        self._last_collection_time: Optional[datetime] = None
        self._last_error: Optional[str] = None
        self._collection_count = 0
        self._error_count = 0

    @abstractmethod
    async def collect(self) -> T:
        """
        Run one collection.

        Promises:
        - Logs all per-unit errors
        - Raises only configuration-level errors
        """
        pass

    @abstractmethod
    async def is_available(self) -> bool:
        """
        Check if the data source is reachable.

        Promises:
        - Never raises exceptions
        - Returns False on any error
        """
        pass

    async def collect_with_timeout(self) -> Optional[T]:
        """
        Collect with timeout enforcement.

        Returns:
            Collection result, or None on timeout/error
        """
        try:
            self._collection_count += 1
            start_time = datetime.now(timezone.utc)

            if self.timeout_seconds:
                result = await asyncio.wait_for(self.collect(), timeout=self.timeout_seconds)
            else:
                result = await self.collect()

            self._last_collection_time = datetime.now(timezone.utc)
            logger.debug(
                f"{self.name} finished in "
                f"{(self._last_collection_time - start_time).total_seconds():.2f}s"
            )
            return result

        except asyncio.TimeoutError:
            self._error_count += 1
            self._last_error = f"Collection timeout after {self.timeout_seconds}s"
            logger.error(f"{self.name}: {self._last_error}")
            return None

        except Exception as e:
            self._error_count += 1
            self._last_error = str(e)
            logger.error(f"{self.name} collection failed: {e}")
            return None

    def get_stats(self) -> dict:
        """Get collector statistics."""
        return {
            "name": self.name,
            "collections": self._collection_count,
            "errors": self._error_count,
            "error_rate": self._error_count / max(1, self._collection_count),
            "last_collection": self._last_collection_time.isoformat()
            if self._last_collection_time
            else None,
            "last_error": self._last_error,
        }

    def reset_stats(self) -> None:
        """Reset collector statistics."""
        self._collection_count = 0
        self._error_count = 0
        self._last_error = None


class PeriodicCollector:
    """Runs a collector every `interval_seconds` until stopped."""

    def __init__(
        self,
        collector: BaseCollector,
        interval_seconds: float = 3600,
        on_result: Optional[Callable[[Any], Awaitable[None]]] = None,
    ):
        """
        Args:
            collector: The collector to run
            interval_seconds: Pause between the end of one run and the start of the next
            on_result: Optional coroutine called with each successful result
        """
        self.collector = collector
        self.interval_seconds = interval_seconds
        self.on_result = on_result
        self._stop_requested = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self._last_result: Optional[Any] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        if self.is_running:
            logger.warning(f"{self.collector.name} is already running")
            return

        self._stop_requested.clear()
        self._task = asyncio.create_task(self._run_forever())
        logger.info(f"Collecting with {self.collector.name} every {self.interval_seconds}s")

    async def stop(self) -> None:
        """Stop after the current run finishes; the pause between runs is cut short."""
        if not self.is_running:
            return

        self._stop_requested.set()
        await self._task
        self._task = None
        logger.info(f"Stopped {self.collector.name}")

    async def _run_forever(self) -> None:
        while not self._stop_requested.is_set():
            result = await self.collector.collect_with_timeout()
            self._last_result = result
            if self.on_result and result is not None:
                try:
                    await self.on_result(result)
                except Exception as e:
                    logger.error(f"Result handler for {self.collector.name} failed: {e}")

            try:
                await asyncio.wait_for(self._stop_requested.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    def get_last_result(self) -> Optional[Any]:
        return self._last_result



class RetryableMixin:
    """
    Mixin adding bounded exponential-backoff retries.

    Only TransientFetchErrors flagged as retryable by `_is_retryable` are
    retried; everything else propagates on the first failure.
    """

    def __init__(self, *args, max_retries: int = 2, retry_base_delay: float = 1.0, **kwargs):
        """
        Initialize retryable mixin.

        Args:
            max_retries: Retries after the first attempt
            retry_base_delay: Delay before the first retry, doubled each time
        """
        super().__init__(*args, **kwargs)
        self.max_retries = max_retries
        self.retry_base_delay = retry_base_delay

    @staticmethod
    def _is_retryable(error: TransientFetchError) -> bool:
        # Transport failures carry no status code
        code = error.status_code
        return code is None or code == 429 or code >= 500

    async def _with_retry(self, operation: Callable[[], Awaitable[T]], description: str) -> T:
        attempt = 0
        while True:
            try:
                return await operation()
            except TransientFetchError as e:
                if attempt >= self.max_retries or not self._is_retryable(e):
                    raise
                wait_time = self.retry_base_delay * (2**attempt)
                attempt += 1
                logger.warning(
                    f"{description} attempt {attempt} failed, retrying in {wait_time:.1f}s: {e}"
                )
                await asyncio.sleep(wait_time)
