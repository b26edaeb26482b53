"""Remote API clients."""

from atlas_metrics.clients.monitoring import AtlasMonitoringClient

__all__ = ["AtlasMonitoringClient"]
