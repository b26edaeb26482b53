"""Store maintenance utilities."""

from atlas_metrics.maintenance.duplicate_cleanup import DuplicateCleanupUtility

__all__ = ["DuplicateCleanupUtility"]
