"""Harvester configuration."""

from atlas_metrics.config.settings import (
    AtlasApiConfig,
    CollectionConfig,
    HarvesterConfig,
    LoggingConfig,
    StorageConfig,
)

__all__ = [
    "AtlasApiConfig",
    "CollectionConfig",
    "HarvesterConfig",
    "LoggingConfig",
    "StorageConfig",
]
