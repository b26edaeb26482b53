"""
Configuration settings for the metrics harvester.

Settings are loaded from a YAML file and can be overridden by environment
variables for secrets (API keys, database DSN).
"""

import os
from datetime import timedelta
from pathlib import Path
from typing import List, Optional

import yaml
from pydantic import BaseModel, Field, field_validator

from atlas_metrics.errors import ConfigurationError
from atlas_metrics.utils.time_utils import parse_iso_duration

DEFAULT_METRICS = [
    "SYSTEM_NORMALIZED_CPU_USER",
    "SYSTEM_MEMORY_USED",
    "DISK_PARTITION_IOPS_READ",
    "DISK_PARTITION_IOPS_WRITE",
]

GRANULARITIES = ("PT10S", "PT1M", "PT5M", "PT1H", "P1D")


class AtlasApiConfig(BaseModel):
    """Monitoring API access."""

    public_key: Optional[str] = Field(None, description="API public key (digest username)")
    private_key: Optional[str] = Field(None, description="API private key (digest password)")
    base_url: str = "https://cloud.mongodb.com/api/atlas/v2"
    api_version: str = "2023-02-01"
    timeout_seconds: float = Field(60.0, gt=0)
    max_retries: int = Field(2, ge=0)
    retry_base_delay: float = Field(1.0, ge=0)
    items_per_page: int = Field(500, ge=1, le=500)


class StorageConfig(BaseModel):
    """Measurement store connection."""

    dsn: Optional[str] = Field(None, description="PostgreSQL connection string")
    pool_min_size: int = Field(2, ge=1)
    pool_max_size: int = Field(10, ge=1)
    command_timeout: float = Field(60.0, gt=0)
    use_timescale: bool = True


class CollectionConfig(BaseModel):
    """What to collect and how often."""

    metrics: List[str] = Field(default_factory=lambda: list(DEFAULT_METRICS), min_length=1)
    period: str = Field("P7D", description="ISO-8601 look-back when no data is stored")
    granularity: str = "PT1M"
    projects: List[str] = Field(default_factory=list, description="Empty means all projects")
    collect_only: bool = False
    store_metrics: bool = True
    analyze_patterns: bool = True
    interval_seconds: int = Field(3600, ge=1)
    max_concurrency: int = Field(1, ge=1)
    backfill_threshold: int = Field(100, ge=0)

    @field_validator("period")
    @classmethod
    def _valid_period(cls, value: str) -> str:
        parse_iso_duration(value)
        return value

    @field_validator("granularity")
    @classmethod
    def _valid_granularity(cls, value: str) -> str:
        if value not in GRANULARITIES:
            raise ValueError(f"granularity must be one of {', '.join(GRANULARITIES)}")
        return value

    @property
    def period_delta(self) -> timedelta:
        return parse_iso_duration(self.period)


class LoggingConfig(BaseModel):
    """Logging destinations and levels."""

    log_dir: str = "logs"
    console_level: str = "INFO"
    file_level: str = "DEBUG"
    use_json: bool = False


class HarvesterConfig(BaseModel):
    """Root configuration."""

    atlas: AtlasApiConfig = Field(default_factory=AtlasApiConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    collection: CollectionConfig = Field(default_factory=CollectionConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_file(cls, path: str) -> "HarvesterConfig":
        """
        Load configuration from YAML, then apply environment overrides.

        Raises:
            ConfigurationError: if the file is missing or invalid
        """
        config_path = Path(path)
        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {path}")

        try:
            with open(config_path) as f:
                data = yaml.safe_load(f) or {}
            config = cls.model_validate(data)
        except (yaml.YAMLError, ValueError) as e:
            raise ConfigurationError(f"Invalid configuration in {path}: {e}", cause=e)

        return config.with_env_overrides()

    @classmethod
    def from_env(cls) -> "HarvesterConfig":
        """Defaults plus environment overrides."""
        return cls().with_env_overrides()

    def with_env_overrides(self) -> "HarvesterConfig":
        """Apply ATLAS_PUBLIC_KEY, ATLAS_PRIVATE_KEY and ATLAS_METRICS_DSN."""
        if os.environ.get("ATLAS_PUBLIC_KEY"):
            self.atlas.public_key = os.environ["ATLAS_PUBLIC_KEY"]
        if os.environ.get("ATLAS_PRIVATE_KEY"):
            self.atlas.private_key = os.environ["ATLAS_PRIVATE_KEY"]
        if os.environ.get("ATLAS_METRICS_DSN"):
            self.storage.dsn = os.environ["ATLAS_METRICS_DSN"]
        return self

    def save(self, path: str) -> None:
        """Write configuration as YAML, without secrets."""
        config_path = Path(path)
        config_path.parent.mkdir(parents=True, exist_ok=True)

        data = self.model_dump(mode="json")
        data["atlas"].pop("public_key", None)
        data["atlas"].pop("private_key", None)
        with open(config_path, "w") as f:
            yaml.dump(data, f, default_flow_style=False, sort_keys=False)

    def validate_for_collection(self) -> None:
        """Raises ConfigurationError when the API cannot be used."""
        if not self.atlas.public_key or not self.atlas.private_key:
            raise ConfigurationError(
                "Monitoring API credentials missing: set ATLAS_PUBLIC_KEY and ATLAS_PRIVATE_KEY"
            )
        if self.collection.store_metrics:
            self.validate_for_storage()

    def validate_for_storage(self) -> None:
        """Raises ConfigurationError when the store cannot be used."""
        if not self.storage.dsn:
            raise ConfigurationError("Storage DSN missing: set storage.dsn or ATLAS_METRICS_DSN")
        if self.storage.pool_min_size > self.storage.pool_max_size:
            raise ConfigurationError("storage.pool_min_size exceeds storage.pool_max_size")
