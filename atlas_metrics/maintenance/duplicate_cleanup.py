"""
Retroactive duplicate removal.

Finds measurements that share the full duplicate-identity key
(timestamp, host, metric, project, value, partition) and deletes every
member of each group except the one with the lowest id.
"""

import logging
import time
from typing import List, Optional

from atlas_metrics.base import CancellationToken
from atlas_metrics.logging_config import log_cleanup_operation
from atlas_metrics.protocols import MeasurementStore
from atlas_metrics.schemas import (
    CleanupResult,
    DetailedDuplicateGroup,
    DuplicateGroup,
    DuplicateStats,
)

logger = logging.getLogger(__name__)

PROGRESS_LOG_INTERVAL = 100


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


class DuplicateCleanupUtility:
    """Reports on and removes duplicate measurements in a store."""

    def __init__(self, store: MeasurementStore):
        self._store = store

    async def get_duplicate_stats(self) -> DuplicateStats:
        """Summarize duplicates without modifying anything."""
        logger.info("Analyzing duplicate statistics...")
        started = time.monotonic()

        total_documents = await self._store.count_measurements()
        groups, documents, worst = await self._store.duplicate_summary()

        stats = DuplicateStats(
            total_documents=total_documents,
            duplicate_groups=groups,
            total_duplicate_documents=documents,
            documents_that_would_be_removed=documents - groups,
            worst_group_size=worst,
            avg_group_size=documents / groups if groups else 0.0,
            duration_ms=_elapsed_ms(started),
        )

        logger.info(
            f"Duplicate analysis complete: {stats.duplicate_groups} groups, "
            f"{stats.total_duplicate_documents} duplicate documents, "
            f"{stats.documents_that_would_be_removed} would be removed"
        )
        return stats

    async def get_sample_duplicates(self, limit: int = 10) -> List[DuplicateGroup]:
        """Largest duplicate groups first."""
        logger.info(f"Fetching sample of {limit} duplicate groups...")
        groups = await self._store.find_duplicate_groups(limit=limit)
        logger.info(f"Found {len(groups)} sample duplicate groups")
        return groups

    async def get_detailed_sample_duplicates(self, limit: int = 5) -> List[DetailedDuplicateGroup]:
        """Largest duplicate groups with their full rows, ascending by id."""
        logger.info(f"Fetching detailed sample of {limit} duplicate groups...")
        detailed = []
        for group in await self._store.find_duplicate_groups(limit=limit):
            documents = await self._store.fetch_measurements_by_ids(group.document_ids)
            detailed.append(
                DetailedDuplicateGroup(
                    timestamp=group.timestamp,
                    host=group.host,
                    metric=group.metric,
                    project_name=group.project_name,
                    value=group.value,
                    partition=group.partition,
                    duplicate_count=group.duplicate_count,
                    documents=sorted(documents, key=lambda doc: doc.id or 0),
                )
            )
        logger.info(f"Found {len(detailed)} detailed sample duplicate groups")
        return detailed

    async def cleanup_duplicates(
        self, dry_run: bool = True, cancel_token: Optional[CancellationToken] = None
    ) -> CleanupResult:
        """
        Remove all but the lowest-id member of every duplicate group.

        With `dry_run` nothing is deleted and `documents_removed` reports
        what would have been removed. A failing group is logged, counted in
        `failed_groups` and skipped. On cancellation `duplicate_groups` still
        reports every group found and `groups_processed` the ones handled.
        """
        logger.info(f"Starting duplicate cleanup (dry_run={dry_run})")
        started = time.monotonic()
        result = CleanupResult(dry_run=dry_run)

        logger.info("Running aggregation to find duplicate groups...")
        groups = await self._store.find_duplicate_groups()
        if not groups:
            logger.info("No duplicates found in the store")
            result.duration_ms = _elapsed_ms(started)
            log_cleanup_operation(result)
            return result

        logger.info(f"Found {len(groups)} duplicate groups")
        result.duplicate_groups = len(groups)

        for processed, group in enumerate(groups, start=1):
            if cancel_token is not None and cancel_token.is_cancelled:
                logger.warning(
                    f"Cleanup cancelled after {processed - 1}/{len(groups)} groups, "
                    f"{result.documents_removed} documents removed"
                )
                result.cancelled = True
                break

            result.groups_processed = processed
            result.duplicate_documents += group.duplicate_count
            ids_to_remove = sorted(group.document_ids)[1:]

            if dry_run:
                result.documents_removed += len(ids_to_remove)
                logger.debug(
                    f"Would remove {len(ids_to_remove)} duplicates for group with "
                    f"{group.duplicate_count} total documents"
                )
            elif ids_to_remove:
                try:
                    deleted = await self._store.delete_measurements(ids_to_remove)
                except Exception as e:
                    result.failed_groups += 1
                    logger.error(
                        f"Failed to remove duplicates for {group.host} {group.metric} "
                        f"at {group.timestamp.isoformat()}: {e}"
                    )
                    continue
                result.documents_removed += deleted
                logger.debug(
                    f"Removed {deleted} duplicates for group with {group.duplicate_count} total documents"
                )

            if processed % PROGRESS_LOG_INTERVAL == 0:
                logger.info(
                    f"Processed {processed}/{len(groups)} duplicate groups, "
                    f"removed {result.documents_removed} documents"
                )

        result.duration_ms = _elapsed_ms(started)
        if dry_run:
            logger.info(
                f"DRY RUN COMPLETE: Found {result.duplicate_groups} duplicate groups with "
                f"{result.duplicate_documents} total duplicate documents. Would remove "
                f"{result.documents_removed} documents in {result.duration_seconds:.2f} seconds"
            )
        else:
            logger.info(
                f"CLEANUP COMPLETE: Processed {result.groups_processed} of {result.duplicate_groups} "
                f"duplicate groups, removed {result.documents_removed} of "
                f"{result.duplicate_documents} duplicate documents "
                f"in {result.duration_seconds:.2f} seconds"
            )
        log_cleanup_operation(result)
        return result
