"""
Harvester service that wires storage, tracker, client and collector.

Runs one collection on demand or keeps collecting on a fixed interval
until stopped.
"""

import asyncio
import logging
import signal
from typing import Dict, List, Optional

from atlas_metrics.analysis.results import ProjectMetricsResult
from atlas_metrics.backfill import HeadlessBackfillPolicy
from atlas_metrics.base import CancellationToken, PeriodicCollector
from atlas_metrics.clients.monitoring import AtlasMonitoringClient
from atlas_metrics.collectors.metrics_collector import MetricsCollector
from atlas_metrics.config.settings import HarvesterConfig
from atlas_metrics.maintenance.duplicate_cleanup import DuplicateCleanupUtility
from atlas_metrics.protocols import BackfillPolicy, MeasurementStore, MonitoringApi
from atlas_metrics.schemas import CollectionStats
from atlas_metrics.storage.backend import PostgresMeasurementStore
from atlas_metrics.storage.metrics_storage import MetricsStorage
from atlas_metrics.storage.tracker import TimestampTracker

logger = logging.getLogger(__name__)


class HarvesterService:
    """
    Main harvester service.

    This service:
    - Connects to the measurement store and prepares its schema
    - Loads or builds the timestamp tracker
    - Creates the monitoring client and the metrics collector
    - Runs single or periodic collections
    """

    def __init__(
        self,
        config: HarvesterConfig,
        backfill_policy: Optional[BackfillPolicy] = None,
        store: Optional[MeasurementStore] = None,
        api: Optional[MonitoringApi] = None,
    ):
        """
        Initialize harvester service.

        Args:
            config: Harvester configuration
            backfill_policy: Strategy for large tracker backfills (headless by default)
            store: Measurement store; a PostgreSQL store is created from config when omitted
            api: Monitoring API; an Atlas client is created from config when omitted
        """
        self.config = config
        self.backfill_policy = backfill_policy or HeadlessBackfillPolicy()
        self.store = store
        self.api = api
        self.cancel_token = CancellationToken()

        self.tracker: Optional[TimestampTracker] = None
        self.storage: Optional[MetricsStorage] = None
        self.collector: Optional[MetricsCollector] = None
        self.periodic: Optional[PeriodicCollector] = None

        self._owns_store = store is None
        self._owns_api = api is None
        self._initialized = False
        self._running = False
        self._shutdown_event = asyncio.Event()

    @property
    def storage_enabled(self) -> bool:
        return self.config.collection.store_metrics

    async def initialize(self) -> None:
        """Initialize harvester components."""
        if self._initialized:
            return

        logger.info("Initializing harvester service")
        collection = self.config.collection

        if self.storage_enabled:
            await self._initialize_storage()

        if self.api is None:
            atlas = self.config.atlas
            self.api = AtlasMonitoringClient(
                public_key=atlas.public_key or "",
                private_key=atlas.private_key or "",
                base_url=atlas.base_url,
                api_version=atlas.api_version,
                timeout_seconds=atlas.timeout_seconds,
                items_per_page=atlas.items_per_page,
                max_retries=atlas.max_retries,
                retry_base_delay=atlas.retry_base_delay,
            )

        self.collector = MetricsCollector(
            api=self.api,
            metrics=collection.metrics,
            period=collection.period,
            granularity=collection.granularity,
            storage=self.storage,
            store_metrics=self.storage_enabled,
            collect_only=collection.collect_only,
            analyze_patterns=collection.analyze_patterns,
            projects=collection.projects,
            max_concurrency=collection.max_concurrency,
            cancel_token=self.cancel_token,
        )
        self._initialized = True

        logger.info(
            f"Harvester service initialized "
            f"(storage={'enabled' if self.storage_enabled else 'disabled'}, "
            f"interval={collection.interval_seconds}s)"
        )

    async def _connect_store(self, initialize_schema: bool) -> MeasurementStore:
        if self.store is None:
            storage_config = self.config.storage
            backend = PostgresMeasurementStore(
                storage_config.dsn,
                pool_min_size=storage_config.pool_min_size,
                pool_max_size=storage_config.pool_max_size,
                command_timeout=storage_config.command_timeout,
                use_timescale=storage_config.use_timescale,
            )
            await backend.connect()
            if initialize_schema:
                await backend.initialize_schema()
            logger.info("Connected to measurement database")
            self.store = backend
        return self.store

    async def _initialize_storage(self) -> None:
        await self._connect_store(initialize_schema=True)

        self.tracker = TimestampTracker(
            self.store, backfill_threshold=self.config.collection.backfill_threshold
        )
        await self.tracker.initialize(self.backfill_policy, self.cancel_token)
        self.storage = MetricsStorage(self.store, self.tracker)

    async def collect_once(
        self, projects: Optional[List[str]] = None
    ) -> Dict[str, ProjectMetricsResult]:
        """
        Perform a single collection.

        Args:
            projects: Project names, defaults to the configured list (empty means all)

        Returns:
            Per-project aggregates, empty in collect-only mode
        """
        await self.initialize()
        names = projects if projects else self.config.collection.projects
        return await self.collector.collect_metrics(names)

    @property
    def last_stats(self) -> Optional[CollectionStats]:
        return self.collector.last_stats if self.collector else None

    async def start(self) -> None:
        """Start periodic collection and wait until stopped."""
        if self._running:
            logger.warning("Harvester service already running")
            return

        logger.info("Starting harvester service")
        await self.initialize()

        self.periodic = PeriodicCollector(
            self.collector, interval_seconds=self.config.collection.interval_seconds
        )
        await self.periodic.start()
        self._running = True

        self._register_signal_handlers()
        logger.info("Harvester service started")

        await self._shutdown_event.wait()

    async def stop(self) -> None:
        """Stop collection and release connections."""
        self.cancel_token.cancel("service stopping")

        if self.periodic:
            await self.periodic.stop()
            self.periodic = None

        await self.close()
        self._running = False
        self._shutdown_event.set()
        logger.info("Harvester service stopped")

    async def close(self) -> None:
        """Close the API client and store connection if this service created them."""
        if self.tracker is not None and self.tracker.is_backfilling:
            logger.info("Waiting for background tracker backfill to finish")
            try:
                await self.tracker.wait_for_backfill()
            except Exception as e:
                logger.error(f"Background backfill failed: {e}")

        if self._owns_api and isinstance(self.api, AtlasMonitoringClient):
            await self.api.close()
        if self._owns_store and isinstance(self.store, PostgresMeasurementStore):
            await self.store.disconnect()

    def _register_signal_handlers(self) -> None:
        """Register signal handlers for graceful shutdown."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum: int) -> None:
            logger.info(f"Received signal {signum}, initiating shutdown")
            asyncio.create_task(self.stop())

        for signum in (signal.SIGTERM, signal.SIGINT):
            try:
                loop.add_signal_handler(signum, signal_handler, signum)
            except NotImplementedError:
                logger.debug(f"Signal handlers unsupported on this platform ({signum})")

    async def open_cleanup(self) -> DuplicateCleanupUtility:
        """Connect to the store and return a duplicate cleanup utility."""
        return DuplicateCleanupUtility(await self._connect_store(initialize_schema=False))
