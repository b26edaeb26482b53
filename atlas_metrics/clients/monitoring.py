"""
Async client for the Atlas monitoring endpoints.

Only the read-only calls the collector needs: projects, processes, disk
partitions and process/disk measurements. Responses are converted into
typed models here; malformed data points are dropped with a warning.
"""

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence, Tuple

import httpx
from pydantic import ValidationError

from atlas_metrics.base import RetryableMixin
from atlas_metrics.errors import TransientFetchError
from atlas_metrics.schemas import (
    DiskPartition,
    MeasurementBatch,
    MetricDataPoint,
    ProcessDescriptor,
)
from atlas_metrics.utils.time_utils import format_timestamp

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://cloud.mongodb.com/api/atlas/v2"
DEFAULT_API_VERSION = "2023-02-01"
MAX_PAGES = 1000

Params = List[Tuple[str, Any]]


def _has_next_page(payload: Dict[str, Any], fetched: int) -> bool:
    if any(link.get("rel") == "next" for link in payload.get("links") or []):
        return True
    total = payload.get("totalCount")
    return total is not None and fetched < total


class AtlasMonitoringClient(RetryableMixin):
    """Read-only monitoring API client using HTTP digest authentication."""

    def __init__(
        self,
        public_key: str,
        private_key: str,
        base_url: str = DEFAULT_BASE_URL,
        api_version: str = DEFAULT_API_VERSION,
        timeout_seconds: float = 60.0,
        items_per_page: int = 500,
        max_retries: int = 2,
        retry_base_delay: float = 1.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        """
        Initialize client.

        Args:
            public_key: API public key
            private_key: API private key
            base_url: API root including the version path
            api_version: Versioned media type date
            timeout_seconds: Per-request timeout
            items_per_page: Page size for paginated endpoints
            max_retries: Retries for transport errors, 429 and 5xx
            retry_base_delay: First retry delay, doubled per attempt
            transport: Optional httpx transport (tests)
        """
        super().__init__(max_retries=max_retries, retry_base_delay=retry_base_delay)
        self.items_per_page = items_per_page
        self._client = httpx.AsyncClient(
            base_url=base_url,
            auth=httpx.DigestAuth(public_key, private_key),
            headers={"Accept": f"application/vnd.atlas.{api_version}+json"},
            timeout=timeout_seconds,
            transport=transport,
        )

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "AtlasMonitoringClient":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def is_available(self) -> bool:
        """True if the API answers an authenticated request."""
        try:
            await self._get("/groups", [("itemsPerPage", 1)])
            return True
        except Exception as e:
            logger.debug(f"Monitoring API unavailable: {e}")
            return False

    async def _request(self, path: str, params: Params) -> Dict[str, Any]:
        try:
            response = await self._client.get(path, params=params)
        except httpx.HTTPError as e:
            raise TransientFetchError(f"GET {path} failed: {e}", cause=e)

        if response.status_code >= 400:
            raise TransientFetchError(
                f"GET {path} returned {response.status_code}: {response.text[:200]}",
                status_code=response.status_code,
            )

        try:
            return response.json()
        except ValueError as e:
            raise TransientFetchError(f"GET {path} returned invalid JSON", cause=e)

    async def _get(self, path: str, params: Optional[Params] = None) -> Dict[str, Any]:
        params = params or []
        return await self._with_retry(lambda: self._request(path, params), f"GET {path}")

    async def _get_all_results(self, path: str) -> List[Dict[str, Any]]:
        results: List[Dict[str, Any]] = []
        for page in range(1, MAX_PAGES + 1):
            payload = await self._get(
                path, [("pageNum", page), ("itemsPerPage", self.items_per_page)]
            )
            items = payload.get("results") or []
            results.extend(items)
            if not items or not _has_next_page(payload, len(results)):
                break
        return results

    async def list_projects(self) -> Dict[str, str]:
        projects = {}
        for item in await self._get_all_results("/groups"):
            projects[item["name"]] = item["id"]
        logger.debug(f"Found {len(projects)} projects")
        return projects

    async def list_processes(self, project_id: str) -> List[ProcessDescriptor]:
        processes = []
        for item in await self._get_all_results(f"/groups/{project_id}/processes"):
            try:
                processes.append(
                    ProcessDescriptor(
                        hostname=item["hostname"],
                        port=item["port"],
                        type_name=item.get("typeName") or "",
                        id=item.get("id"),
                    )
                )
            except (KeyError, ValidationError) as e:
                logger.warning(f"Skipping malformed process in project {project_id}: {e}")
        return processes

    async def list_disk_partitions(self, project_id: str, host_port: str) -> List[DiskPartition]:
        items = await self._get_all_results(f"/groups/{project_id}/processes/{host_port}/disks")
        return [
            DiskPartition(partition_name=item["partitionName"])
            for item in items
            if item.get("partitionName")
        ]

    async def get_process_measurements(
        self,
        project_id: str,
        host_port: str,
        metrics: Sequence[str],
        granularity: str,
        start: datetime,
        end: datetime,
    ) -> List[MeasurementBatch]:
        return await self._get_measurements(
            f"/groups/{project_id}/processes/{host_port}/measurements",
            metrics,
            granularity,
            start,
            end,
        )

    async def get_disk_measurements(
        self,
        project_id: str,
        host_port: str,
        partition: str,
        metrics: Sequence[str],
        granularity: str,
        start: datetime,
        end: datetime,
    ) -> List[MeasurementBatch]:
        return await self._get_measurements(
            f"/groups/{project_id}/processes/{host_port}/disks/{partition}/measurements",
            metrics,
            granularity,
            start,
            end,
        )

    async def _get_measurements(
        self,
        path: str,
        metrics: Sequence[str],
        granularity: str,
        start: datetime,
        end: datetime,
    ) -> List[MeasurementBatch]:
        base_params: Params = [
            ("granularity", granularity),
            ("start", format_timestamp(start)),
            ("end", format_timestamp(end)),
        ]
        base_params.extend(("m", metric) for metric in metrics)

        # Pages are merged per metric, keeping first-seen metric order
        merged: Dict[str, MeasurementBatch] = {}
        for page in range(1, MAX_PAGES + 1):
            payload = await self._get(
                path, base_params + [("pageNum", page), ("itemsPerPage", self.items_per_page)]
            )
            measurements = payload.get("measurements") or []
            for measurement in measurements:
                name = measurement.get("name")
                if not name:
                    continue
                batch = merged.get(name)
                if batch is None:
                    batch = merged[name] = MeasurementBatch(
                        metric_name=name, units=measurement.get("units")
                    )
                batch.data_points.extend(self._parse_points(name, measurement.get("dataPoints")))

            if not measurements or not any(link.get("rel") == "next" for link in payload.get("links") or []):
                break

        return list(merged.values())

    @staticmethod
    def _parse_points(metric: str, raw_points: Optional[List[Dict[str, Any]]]) -> List[MetricDataPoint]:
        points = []
        dropped = 0
        for raw in raw_points or []:
            try:
                points.append(MetricDataPoint(timestamp=raw.get("timestamp"), value=raw.get("value")))
            except (AttributeError, ValidationError):
                dropped += 1
        if dropped:
            logger.warning(f"Dropped {dropped} malformed data points for {metric}")
        return points
