"""
Centralized logging configuration for the metrics harvester.

Console output plus rotating log files: the main harvester log, an
error-only log, and dedicated streams for collection runs and duplicate
cleanup operations.
"""
# mypy: ignore-errors

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import TYPE_CHECKING
import json
from datetime import datetime, timezone

if TYPE_CHECKING:
    from atlas_metrics.schemas import CleanupResult, CollectionStats

COLLECTION_LOGGER = "atlas_metrics.collection"
CLEANUP_LOGGER = "atlas_metrics.cleanup"

CONTEXT_FIELDS = ("project", "host", "series_key", "duration_ms")

LEVEL_COLORS = {
    "DEBUG": "\033[36m",
    "INFO": "\033[32m",
    "WARNING": "\033[33m",
    "ERROR": "\033[31m",
    "CRITICAL": "\033[35m",
}
RESET_COLOR = "\033[0m"


class StructuredFormatter(logging.Formatter):
    """One JSON object per record, including any harvester context fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        payload.update({name: getattr(record, name) for name in CONTEXT_FIELDS if hasattr(record, name)})

        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)

        return json.dumps(payload, default=str)


class HumanReadableFormatter(logging.Formatter):
    """Plain text formatter, coloured by level when writing to a terminal."""

    def __init__(self, use_colors: bool = False):
        self.use_colors = use_colors
        super().__init__(
            fmt="%(asctime)s - %(name)s - %(levelname)s - [%(funcName)s:%(lineno)d] - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    def format(self, record: logging.LogRecord) -> str:
        color = LEVEL_COLORS.get(record.levelname) if self.use_colors else None
        if color is None:
            return super().format(record)
        # Copy so file handlers sharing the record don't get escape codes
        colored = logging.makeLogRecord(record.__dict__)
        colored.levelname = f"{color}{record.levelname}{RESET_COLOR}"
        return super().format(colored)


def _rotating_handler(
    path: Path, level: int, formatter: logging.Formatter, max_bytes: int, backup_count: int
) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(path, maxBytes=max_bytes, backupCount=backup_count)
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(
    log_dir: str = "logs",
    console_level: str = "INFO",
    file_level: str = "DEBUG",
    use_json: bool = False,
    max_bytes: int = 10 * 1024 * 1024,
    backup_count: int = 10,
) -> None:
    """
    Configure logging for the harvester.

    Args:
        log_dir: Directory for log files
        console_level: Console logging level
        file_level: Level for harvester.log
        use_json: Write JSON lines to the log files
        max_bytes: Size at which a log file is rotated
        backup_count: Rotated files kept per log
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    file_formatter = StructuredFormatter() if use_json else HumanReadableFormatter()

    def rotating(filename: str, level: int) -> logging.Handler:
        return _rotating_handler(log_path / filename, level, file_formatter, max_bytes, backup_count)

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(getattr(logging, console_level.upper()))
    console.setFormatter(HumanReadableFormatter(use_colors=sys.stdout.isatty()))

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(logging.DEBUG)
    for handler in (
        console,
        rotating("harvester.log", getattr(logging, file_level.upper())),
        rotating("error.log", logging.ERROR),
    ):
        root.addHandler(handler)

    # Run summaries go only to their own files
    for name, filename in ((COLLECTION_LOGGER, "collection.log"), (CLEANUP_LOGGER, "cleanup.log")):
        stream_logger = logging.getLogger(name)
        stream_logger.handlers.clear()
        stream_logger.addHandler(rotating(filename, logging.INFO))
        stream_logger.setLevel(logging.INFO)
        stream_logger.propagate = False

    for noisy in ("httpx", "httpcore", "asyncpg"):
        logging.getLogger(noisy).setLevel(logging.WARNING)

    root.info(
        f"Logging initialized: console={console_level}, file={file_level}, "
        f"dir={log_dir}, json={use_json}"
    )


class LogContext:
    """Attach fields such as project or host to every record logged inside the block."""

    def __init__(self, logger: logging.Logger, **fields):
        self.logger = logger
        self.fields = fields
        self._previous_factory = None

    def __enter__(self) -> "LogContext":
        previous = logging.getLogRecordFactory()
        fields = self.fields

        def factory(*args, **kwargs):
            record = previous(*args, **kwargs)
            record.__dict__.update(fields)
            return record

        self._previous_factory = previous
        logging.setLogRecordFactory(factory)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self._previous_factory is not None:
            logging.setLogRecordFactory(self._previous_factory)
            self._previous_factory = None


def log_collection_run(stats: "CollectionStats", success: bool = True) -> None:
    """
    Write one summary line for a collection run.

    Args:
        stats: Counters for the finished run
        success: False when the run aborted
    """
    logger = logging.getLogger(COLLECTION_LOGGER)

    status = "CANCELLED" if stats.cancelled else ("SUCCESS" if success else "FAILED")
    message = (
        f"Collection run: {status} - "
        f"{json.dumps(stats.model_dump(exclude={'duration_ms'}))}"
    )
    log_method = logger.info if success and not stats.units_failed else logger.warning
    log_method(message, extra={"duration_ms": stats.duration_ms})


def log_cleanup_operation(result: "CleanupResult") -> None:
    """
    Write one summary line for a duplicate cleanup run.

    Args:
        result: Outcome of the cleanup
    """
    logger = logging.getLogger(CLEANUP_LOGGER)

    mode = "DRY RUN" if result.dry_run else "CLEANUP"
    message = (
        f"{mode}: {result.duplicate_groups} groups, {result.documents_removed} of "
        f"{result.duplicate_documents} documents removed"
    )
    if result.failed_groups:
        message += f", {result.failed_groups} groups failed"
    if result.cancelled:
        message += f" (cancelled after {result.groups_processed} of {result.duplicate_groups} groups)"

    log_method = logger.warning if result.failed_groups or result.cancelled else logger.info
    log_method(message, extra={"duration_ms": result.duration_ms})
