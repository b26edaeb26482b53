#!/usr/bin/env python3
"""
atlas-metrics CLI entry point.
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path
from typing import Dict, List, Optional

from tabulate import tabulate

from atlas_metrics.analysis.results import ProjectMetricsResult
from atlas_metrics.backfill import ConsoleBackfillPolicy, HeadlessBackfillPolicy
from atlas_metrics.base import CancellationToken
from atlas_metrics.config.settings import HarvesterConfig, LoggingConfig
from atlas_metrics.errors import ConfigurationError, OperationCancelled
from atlas_metrics.logging_config import setup_logging as setup_full_logging
from atlas_metrics.schemas import CollectionStats
from atlas_metrics.service import HarvesterService

DEFAULT_CONFIG_PATH = "atlas-metrics.yml"

logger = logging.getLogger(__name__)


def setup_logging(logging_config: LoggingConfig, verbose: bool = False) -> None:
    """Setup logging, falling back to console-only logging if the log dir is not writable."""
    console_level = "DEBUG" if verbose else logging_config.console_level

    try:
        setup_full_logging(
            log_dir=logging_config.log_dir,
            console_level=console_level,
            file_level=logging_config.file_level,
            use_json=logging_config.use_json,
        )
    except PermissionError:
        logging.basicConfig(
            level=getattr(logging, console_level.upper()),
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            handlers=[logging.StreamHandler(sys.stdout)],
        )


def load_config(path: str) -> HarvesterConfig:
    """Load the config file, or defaults plus environment when it does not exist."""
    if Path(path).exists():
        return HarvesterConfig.from_file(path)
    return HarvesterConfig.from_env()


def print_table(data: List[List], headers: List[str]) -> None:
    """Print data as a table."""
    print(tabulate(data, headers=headers, tablefmt="grid"))


def _format_value(value: Optional[float]) -> str:
    return "" if value is None else f"{value:.2f}"


def print_collection_report(results: Dict[str, ProjectMetricsResult], stats: Optional[CollectionStats]) -> None:
    if stats is not None:
        print_table(
            [
                ["Projects", stats.projects],
                ["Processes scanned", stats.processes_scanned],
                ["Data points collected", stats.points_collected],
                ["Data points stored", stats.points_stored],
                ["Data points skipped", stats.points_skipped],
                ["Units skipped (up to date)", stats.units_skipped],
                ["Units failed", stats.units_failed],
                ["Projects failed", stats.projects_failed],
                ["Cancelled", "Yes" if stats.cancelled else "No"],
                ["Duration (ms)", stats.duration_ms],
            ],
            headers=["Collection", "Value"],
        )

    rows = []
    for name, result in results.items():
        for metric in result.metrics:
            if result.get_max_value(metric) is None:
                continue
            dominant = result.get_dominant_pattern(metric) if result.has_pattern_data(metric) else None
            rows.append(
                [
                    name,
                    metric,
                    _format_value(result.get_max_value(metric)),
                    result.get_max_location(metric),
                    _format_value(result.get_avg_value(metric)),
                    dominant.value if dominant else "",
                ]
            )
    if rows:
        print()
        print_table(rows, headers=["Project", "Metric", "Max", "Location", "Average", "Pattern"])


def _install_cancel_handler(token: CancellationToken) -> None:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, token.cancel, "interrupted by user")
    except NotImplementedError:
        logger.debug("SIGINT handler unsupported on this platform")


async def run_collect(config: HarvesterConfig, args: argparse.Namespace) -> int:
    if args.collect_only:
        config.collection.collect_only = True
    if args.no_store:
        config.collection.store_metrics = False
    config.validate_for_collection()

    policy = ConsoleBackfillPolicy() if args.interactive_backfill else HeadlessBackfillPolicy()
    service = HarvesterService(config, backfill_policy=policy)

    if args.daemon:
        await service.start()
        return 0

    _install_cancel_handler(service.cancel_token)
    try:
        results = await service.collect_once(args.projects)
        print_collection_report(results, service.last_stats)
    finally:
        await service.close()

    if service.last_stats is not None and service.last_stats.cancelled:
        print("Collection cancelled; data stored before the interrupt is kept", file=sys.stderr)
        return 130
    return 0


async def run_duplicates(config: HarvesterConfig, args: argparse.Namespace) -> int:
    config.validate_for_storage()
    service = HarvesterService(config)
    try:
        utility = await service.open_cleanup()

        if args.duplicates_command == "stats":
            stats = await utility.get_duplicate_stats()
            print_table(
                [
                    ["Total documents", stats.total_documents],
                    ["Duplicate groups", stats.duplicate_groups],
                    ["Duplicate documents", stats.total_duplicate_documents],
                    ["Would be removed", stats.documents_that_would_be_removed],
                    ["Largest group", stats.worst_group_size],
                    ["Average group size", f"{stats.avg_group_size:.2f}"],
                    ["Duplicate percentage", f"{stats.duplicate_percentage:.2f}%"],
                ],
                headers=["Duplicates", "Value"],
            )

        elif args.duplicates_command == "sample":
            if args.detailed:
                for group in await utility.get_detailed_sample_duplicates(args.limit):
                    print(
                        f"\n{group.host} {group.metric} @ {group.timestamp.isoformat()} "
                        f"value={group.value} ({group.duplicate_count} copies)"
                    )
                    kept = group.kept_document
                    print_table(
                        [
                            [doc.id, doc.metadata.project_name, doc.metadata.partition or "", "keep" if doc is kept else "remove"]
                            for doc in group.documents
                        ],
                        headers=["Id", "Project", "Partition", "Action"],
                    )
            else:
                groups = await utility.get_sample_duplicates(args.limit)
                print_table(
                    [
                        [g.timestamp.isoformat(), g.host, g.metric, g.partition or "", g.value, g.duplicate_count, g.kept_id]
                        for g in groups
                    ],
                    headers=["Timestamp", "Host", "Metric", "Partition", "Value", "Count", "Kept id"],
                )

        elif args.duplicates_command == "cleanup":
            token = CancellationToken()
            _install_cancel_handler(token)
            result = await utility.cleanup_duplicates(dry_run=not args.execute, cancel_token=token)
            print_table(
                [
                    ["Mode", "dry run" if result.dry_run else "execute"],
                    ["Duplicate groups", result.duplicate_groups],
                    ["Groups processed", result.groups_processed],
                    ["Duplicate documents", result.duplicate_documents],
                    ["Would remove" if result.dry_run else "Removed", result.documents_removed],
                    ["Failed groups", result.failed_groups],
                    ["Cancelled", "Yes" if result.cancelled else "No"],
                    ["Duration (s)", f"{result.duration_seconds:.2f}"],
                ],
                headers=["Cleanup", "Value"],
            )
            if result.failed_groups:
                return 1
    finally:
        await service.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Atlas metrics harvester",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Generate a default config
  atlas-metrics --generate-config

  # Collect once for two projects
  atlas-metrics collect --projects prod staging

  # Preview duplicate cleanup, then run it
  atlas-metrics duplicates cleanup
  atlas-metrics duplicates cleanup --execute
        """,
    )
    parser.add_argument(
        "--config",
        "-c",
        type=str,
        default=DEFAULT_CONFIG_PATH,
        help=f"Path to configuration file (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose logging")
    parser.add_argument(
        "--generate-config",
        action="store_true",
        help="Generate default configuration file and exit",
    )
    parser.add_argument(
        "--validate-config", action="store_true", help="Validate configuration file and exit"
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    collect_parser = subparsers.add_parser("collect", help="Collect metrics from the monitoring API")
    collect_parser.add_argument("--projects", nargs="+", help="Project names (default: configured or all)")
    collect_parser.add_argument(
        "--collect-only", action="store_true", help="Store metrics without aggregation or analysis"
    )
    collect_parser.add_argument("--no-store", action="store_true", help="Analyze without storing")
    collect_parser.add_argument(
        "--daemon", action="store_true", help="Keep collecting on the configured interval"
    )
    collect_parser.add_argument(
        "--interactive-backfill",
        action="store_true",
        help="Ask how to handle a large tracker backfill on first run",
    )

    duplicates_parser = subparsers.add_parser("duplicates", help="Inspect and remove duplicate measurements")
    duplicates_sub = duplicates_parser.add_subparsers(dest="duplicates_command", help="Duplicate commands")
    duplicates_sub.add_parser("stats", help="Show duplicate statistics")
    sample_parser = duplicates_sub.add_parser("sample", help="Show the largest duplicate groups")
    sample_parser.add_argument("--limit", type=int, default=10, help="Number of groups (default: 10)")
    sample_parser.add_argument("--detailed", action="store_true", help="Show every member row")
    cleanup_parser = duplicates_sub.add_parser("cleanup", help="Remove duplicates (dry run by default)")
    cleanup_parser.add_argument("--execute", action="store_true", help="Actually delete duplicates")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.generate_config:
        HarvesterConfig().save(args.config)
        print(f"Generated default configuration at: {args.config}")
        return 0

    if args.validate_config:
        try:
            HarvesterConfig.from_file(args.config)
            print(f"Configuration valid: {args.config}")
            return 0
        except ConfigurationError as e:
            print(f"Configuration invalid: {e}")
            return 1

    if args.command is None or (args.command == "duplicates" and args.duplicates_command is None):
        parser.print_help()
        return 1

    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        print(f"Configuration invalid: {e}", file=sys.stderr)
        return 1

    setup_logging(config.logging, args.verbose)

    try:
        if args.command == "collect":
            return asyncio.run(run_collect(config, args))
        return asyncio.run(run_duplicates(config, args))
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        print(f"Error: {e}", file=sys.stderr)
        return 2
    except OperationCancelled as e:
        logger.warning(f"Operation cancelled: {e}")
        return 130
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        return 130
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
