"""
PostgreSQL/TimescaleDB storage backend for harvested measurements.

Implements the MeasurementStore primitives on top of an asyncpg pool:
measurement rows live in a (hyper)table keyed by time, series checkpoints
in a small table keyed by series key.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

import asyncpg

from atlas_metrics.errors import StorageWriteError
from atlas_metrics.schemas import (
    DuplicateGroup,
    MeasurementMetadata,
    SeriesKey,
    StoredMeasurement,
    TrackerEntry,
)
from atlas_metrics.utils.time_utils import ensure_utc

logger = logging.getLogger(__name__)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS measurements (
        id BIGSERIAL,
        time TIMESTAMPTZ NOT NULL,
        value DOUBLE PRECISION NOT NULL,
        project_name TEXT NOT NULL,
        host TEXT NOT NULL,
        metric TEXT NOT NULL,
        partition TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_measurements_id ON measurements (id)",
    "CREATE INDEX IF NOT EXISTS idx_measurements_host_metric_time ON measurements (host, metric, time DESC)",
    "CREATE INDEX IF NOT EXISTS idx_measurements_project_time ON measurements (project_name, time DESC)",
    "CREATE INDEX IF NOT EXISTS idx_measurements_partition ON measurements (partition)",
    """
    CREATE TABLE IF NOT EXISTS series_checkpoints (
        series_key TEXT PRIMARY KEY,
        host TEXT NOT NULL,
        metric TEXT NOT NULL,
        partition TEXT,
        last_timestamp TIMESTAMPTZ NOT NULL
    )
    """,
)

DUPLICATE_KEY_COLUMNS = "time, host, metric, project_name, value, partition"


def _row_to_measurement(row: Any) -> StoredMeasurement:
    return StoredMeasurement(
        id=row["id"],
        timestamp=ensure_utc(row["time"]),
        value=float(row["value"]),
        metadata=MeasurementMetadata(
            project_name=row["project_name"],
            host=row["host"],
            metric=row["metric"],
            partition=row["partition"],
        ),
    )


def _filters(**columns: Optional[str]) -> Tuple[str, List[Any]]:
    """Build a WHERE clause from the non-None column filters."""
    clauses = []
    args: List[Any] = []
    for column, value in columns.items():
        if value is None:
            continue
        args.append(value)
        clauses.append(f"{column} = ${len(args)}")
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    return where, args


def _affected_rows(status: str) -> int:
    # asyncpg returns command tags such as "DELETE 3"
    try:
        return int(status.split()[-1])
    except (AttributeError, IndexError, ValueError):
        return 0


class PostgresMeasurementStore:
    """
    PostgreSQL/TimescaleDB measurement store.

    Handles all database operations for measurements and checkpoints.
    """

    def __init__(
        self,
        dsn: str,
        pool_min_size: int = 2,
        pool_max_size: int = 10,
        command_timeout: float = 60,
        use_timescale: bool = True,
    ):
        """
        Initialize storage backend.

        Args:
            dsn: PostgreSQL connection string
            pool_min_size: Minimum connection pool size
            pool_max_size: Maximum connection pool size
            command_timeout: Per-statement timeout in seconds
            use_timescale: Convert the measurements table into a hypertable
        """
        self.dsn = dsn
        self.pool_min_size = pool_min_size
        self.pool_max_size = pool_max_size
        self.command_timeout = command_timeout
        self.use_timescale = use_timescale
        self._pool: Optional[Any] = None  # asyncpg.Pool

    async def connect(self) -> None:
        """Establish connection pool to database."""
        if self._pool:
            return

        try:
            self._pool = await asyncpg.create_pool(
                self.dsn,
                min_size=self.pool_min_size,
                max_size=self.pool_max_size,
                command_timeout=self.command_timeout,
            )
            logger.info("Connected to PostgreSQL/TimescaleDB")
        except Exception as e:
            logger.error(f"Failed to connect to database: {e}")
            raise

    async def disconnect(self) -> None:
        """Close connection pool."""
        if self._pool:
            await self._pool.close()
            self._pool = None
            logger.info("Disconnected from PostgreSQL/TimescaleDB")

    async def ensure_connected(self) -> None:
        """Ensure we have an active connection pool."""
        if not self._pool:
            await self.connect()

        if not self._pool:
            raise RuntimeError("Database connection not established")

    async def initialize_schema(self) -> None:
        """Create tables and indexes if they do not exist."""
        await self.ensure_connected()

        async with self._pool.acquire() as conn:
            async with conn.transaction():
                for statement in SCHEMA_STATEMENTS:
                    await conn.execute(statement)

            if self.use_timescale:
                try:
                    await conn.execute(
                        "SELECT create_hypertable('measurements', 'time', "
                        "if_not_exists => TRUE, migrate_data => TRUE)"
                    )
                    logger.info("measurements is a TimescaleDB hypertable")
                except asyncpg.PostgresError as e:
                    logger.warning(f"TimescaleDB unavailable, using a plain table: {e}")

        logger.info("Measurement schema initialized")

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    async def load_checkpoints(self) -> List[TrackerEntry]:
        await self.ensure_connected()

        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT series_key, host, metric, partition, last_timestamp
                FROM series_checkpoints
            """
            )

        return [
            TrackerEntry(
                key=row["series_key"],
                host=row["host"],
                metric=row["metric"],
                partition=row["partition"],
                last_timestamp=ensure_utc(row["last_timestamp"]),
            )
            for row in rows
        ]

    async def upsert_checkpoint(self, entry: TrackerEntry) -> None:
        await self.ensure_connected()

        async with self._pool.acquire() as conn:
            await conn.execute(
                """
                INSERT INTO series_checkpoints (series_key, host, metric, partition, last_timestamp)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (series_key) DO UPDATE SET
                    last_timestamp = GREATEST(series_checkpoints.last_timestamp, EXCLUDED.last_timestamp)
            """,
                entry.key,
                entry.host,
                entry.metric,
                entry.partition,
                entry.last_timestamp,
            )

    # ------------------------------------------------------------------
    # Series discovery
    # ------------------------------------------------------------------

    async def list_series(self) -> List[SeriesKey]:
        await self.ensure_connected()

        async with self._pool.acquire() as conn:
            rows = await conn.fetch("SELECT DISTINCT host, metric, partition FROM measurements")

        return [
            SeriesKey(host=row["host"], metric=row["metric"], partition=row["partition"])
            for row in rows
        ]

    async def latest_timestamp_for_series(self, series: SeriesKey) -> Optional[datetime]:
        await self.ensure_connected()

        async with self._pool.acquire() as conn:
            latest = await conn.fetchval(
                """
                SELECT MAX(time) FROM measurements
                WHERE host = $1 AND metric = $2 AND partition IS NOT DISTINCT FROM $3::text
            """,
                series.host,
                series.metric,
                series.partition,
            )

        return ensure_utc(latest) if latest else None

    async def series_latest_timestamps(self) -> Dict[SeriesKey, datetime]:
        await self.ensure_connected()

        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT host, metric, partition, MAX(time) AS latest
                FROM measurements
                GROUP BY host, metric, partition
            """
            )

        return {
            SeriesKey(host=row["host"], metric=row["metric"], partition=row["partition"]): ensure_utc(
                row["latest"]
            )
            for row in rows
        }

    # ------------------------------------------------------------------
    # Ingestion
    # ------------------------------------------------------------------

    async def existing_points(
        self, metadata: MeasurementMetadata, timestamps: Sequence[datetime]
    ) -> Set[Tuple[datetime, float]]:
        if not timestamps:
            return set()

        await self.ensure_connected()

        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT time, value FROM measurements
                WHERE project_name = $1 AND host = $2 AND metric = $3
                  AND partition IS NOT DISTINCT FROM $4::text
                  AND time = ANY($5::timestamptz[])
            """,
                metadata.project_name,
                metadata.host,
                metadata.metric,
                metadata.partition,
                list(timestamps),
            )

        return {(ensure_utc(row["time"]), float(row["value"])) for row in rows}

    async def insert_measurements(
        self, rows: Sequence[StoredMeasurement]
    ) -> List[StoredMeasurement]:
        """
        Bulk insert measurements.

        A bulk insert rejected by the database is retried row by row so a
        single bad row does not block the rest of the batch.

        Raises:
            StorageWriteError: if no row could be written
        """
        rows = list(rows)
        if not rows:
            return []

        await self.ensure_connected()

        statement = """
            INSERT INTO measurements (time, value, project_name, host, metric, partition)
            VALUES ($1, $2, $3, $4, $5, $6)
        """
        records = [
            (
                row.timestamp,
                row.value,
                row.metadata.project_name,
                row.metadata.host,
                row.metadata.metric,
                row.metadata.partition,
            )
            for row in rows
        ]

        async with self._pool.acquire() as conn:
            try:
                async with conn.transaction():
                    await conn.executemany(statement, records)
                return rows
            except asyncpg.PostgresError as e:
                logger.warning(f"Bulk insert of {len(rows)} rows rejected, retrying row by row: {e}")

            written = []
            for row, record in zip(rows, records):
                try:
                    await conn.execute(statement, *record)
                    written.append(row)
                except asyncpg.PostgresError as e:
                    logger.error(f"Failed to insert measurement at {row.timestamp.isoformat()}: {e}")

        if not written:
            raise StorageWriteError(f"None of {len(rows)} measurements could be written")
        return written

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def latest_timestamp(
        self,
        metric: Optional[str] = None,
        project: Optional[str] = None,
        host: Optional[str] = None,
        partition: Optional[str] = None,
    ) -> Optional[datetime]:
        return await self._timestamp_bound("MAX", metric, project, host, partition)

    async def earliest_timestamp(
        self,
        metric: Optional[str] = None,
        project: Optional[str] = None,
        host: Optional[str] = None,
        partition: Optional[str] = None,
    ) -> Optional[datetime]:
        return await self._timestamp_bound("MIN", metric, project, host, partition)

    async def _timestamp_bound(
        self,
        aggregate: str,
        metric: Optional[str],
        project: Optional[str],
        host: Optional[str],
        partition: Optional[str],
    ) -> Optional[datetime]:
        await self.ensure_connected()

        where, args = _filters(metric=metric, project_name=project, host=host, partition=partition)
        async with self._pool.acquire() as conn:
            value = await conn.fetchval(f"SELECT {aggregate}(time) FROM measurements {where}", *args)

        return ensure_utc(value) if value else None

    async def get_measurements(
        self,
        start: datetime,
        end: Optional[datetime] = None,
        project: Optional[str] = None,
        host: Optional[str] = None,
        metric: Optional[str] = None,
    ) -> List[StoredMeasurement]:
        await self.ensure_connected()

        where, args = _filters(project_name=project, host=host, metric=metric)
        args.append(start)
        clauses = [f"time >= ${len(args)}"]
        if end is not None:
            args.append(end)
            clauses.append(f"time <= ${len(args)}")
        where = f"{where} AND " if where else "WHERE "
        where += " AND ".join(clauses)

        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT id, time, value, project_name, host, metric, partition
                FROM measurements
                {where}
                ORDER BY time ASC
            """,
                *args,
            )

        return [_row_to_measurement(row) for row in rows]

    # ------------------------------------------------------------------
    # Duplicate maintenance
    # ------------------------------------------------------------------

    async def count_measurements(self) -> int:
        await self.ensure_connected()

        async with self._pool.acquire() as conn:
            return int(await conn.fetchval("SELECT COUNT(*) FROM measurements") or 0)

    async def duplicate_summary(self) -> Tuple[int, int, int]:
        """(group count, documents in groups, largest group size)."""
        await self.ensure_connected()

        async with self._pool.acquire() as conn:
            row = await conn.fetchrow(
                f"""
                SELECT COUNT(*) AS group_count,
                       COALESCE(SUM(group_size), 0) AS documents,
                       COALESCE(MAX(group_size), 0) AS worst
                FROM (
                    SELECT COUNT(*) AS group_size
                    FROM measurements
                    GROUP BY {DUPLICATE_KEY_COLUMNS}
                    HAVING COUNT(*) > 1
                ) duplicate_groups
            """
            )

        return int(row["group_count"]), int(row["documents"]), int(row["worst"])

    async def find_duplicate_groups(self, limit: Optional[int] = None) -> List[DuplicateGroup]:
        await self.ensure_connected()

        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                f"""
                SELECT {DUPLICATE_KEY_COLUMNS},
                       COUNT(*) AS duplicate_count,
                       array_agg(id ORDER BY id) AS ids
                FROM measurements
                GROUP BY {DUPLICATE_KEY_COLUMNS}
                HAVING COUNT(*) > 1
                ORDER BY duplicate_count DESC, time ASC
                LIMIT $1::bigint
            """,
                limit,
            )

        return [
            DuplicateGroup(
                timestamp=ensure_utc(row["time"]),
                host=row["host"],
                metric=row["metric"],
                project_name=row["project_name"],
                value=float(row["value"]),
                partition=row["partition"],
                duplicate_count=row["duplicate_count"],
                document_ids=list(row["ids"]),
            )
            for row in rows
        ]

    async def fetch_measurements_by_ids(self, ids: Sequence[int]) -> List[StoredMeasurement]:
        if not ids:
            return []

        await self.ensure_connected()

        async with self._pool.acquire() as conn:
            rows = await conn.fetch(
                """
                SELECT id, time, value, project_name, host, metric, partition
                FROM measurements
                WHERE id = ANY($1::bigint[])
                ORDER BY id ASC
            """,
                list(ids),
            )

        return [_row_to_measurement(row) for row in rows]

    async def delete_measurements(self, ids: Sequence[int]) -> int:
        if not ids:
            return 0

        await self.ensure_connected()

        async with self._pool.acquire() as conn:
            status = await conn.execute(
                "DELETE FROM measurements WHERE id = ANY($1::bigint[])", list(ids)
            )

        return _affected_rows(status)
