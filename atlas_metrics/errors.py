"""
Error taxonomy for the metrics harvester.

Every error carries an ErrorKind so callers can distinguish
"skip this unit and continue" from "abort the whole run".
"""

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    """Classification of harvester failures."""

    PARSE = "parse"
    DUPLICATE = "duplicate"
    TRANSIENT_FETCH = "transient_fetch"
    STORAGE_WRITE = "storage_write"
    CONFIGURATION = "configuration"
    CANCELLED = "cancelled"


class HarvesterError(Exception):
    """Base class for all harvester errors."""

    kind: ErrorKind = ErrorKind.CONFIGURATION

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause

    @property
    def is_recoverable(self) -> bool:
        """True when the run should log, skip the unit and keep going."""
        return self.kind not in (ErrorKind.CONFIGURATION, ErrorKind.CANCELLED)


class PointParseError(HarvesterError):
    """A data point had an unparseable timestamp or value."""

    kind = ErrorKind.PARSE


class TransientFetchError(HarvesterError):
    """The monitoring API call for one unit failed."""

    kind = ErrorKind.TRANSIENT_FETCH

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message, cause)
        self.status_code = status_code


class StorageWriteError(HarvesterError):
    """The store rejected a write."""

    kind = ErrorKind.STORAGE_WRITE


class ConfigurationError(HarvesterError):
    """Missing credentials, unknown projects or an unusable store."""

    kind = ErrorKind.CONFIGURATION


class OperationCancelled(HarvesterError):
    """An operation was cancelled by the user or a cancellation token."""

    kind = ErrorKind.CANCELLED
