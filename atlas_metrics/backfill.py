"""
Backfill policies for cold-start tracker builds.

The tracker decides *when* a large backfill is needed; a policy decides
*how* to handle it. Library code never prompts on its own: interactive
prompting is opt-in through ConsoleBackfillPolicy.
"""

import asyncio
import logging
from typing import Callable, Optional

from atlas_metrics.schemas import BackfillPlan, BackfillProgress, BackfillStrategy

logger = logging.getLogger(__name__)

_OPTIONS = {
    "1": BackfillStrategy.FOREGROUND,
    "2": BackfillStrategy.BACKGROUND,
    "3": BackfillStrategy.SKIP,
    "4": BackfillStrategy.ABORT,
}


class HeadlessBackfillPolicy:
    """Non-interactive policy: always build in the background."""

    def __init__(self, strategy: BackfillStrategy = BackfillStrategy.BACKGROUND):
        self.strategy = strategy

    async def choose_strategy(self, plan: BackfillPlan) -> BackfillStrategy:
        logger.info(
            f"Large tracker backfill ({plan.series_count} series across "
            f"{plan.host_count} hosts), using {self.strategy.value} strategy"
        )
        return self.strategy

    def report_progress(self, progress: BackfillProgress) -> None:
        logger.info(
            f"Backfill progress: {progress.processed}/{progress.total} series, "
            f"{progress.entries_created} checkpoints created"
        )


class ConsoleBackfillPolicy:
    """
    Interactive policy that asks the operator what to do.

    Input and output are injectable so the prompt can be driven from tests or
    another front end. Blocking input runs in a worker thread.
    """

    def __init__(
        self,
        input_fn: Callable[[str], str] = input,
        output_fn: Callable[[str], None] = print,
        default: BackfillStrategy = BackfillStrategy.BACKGROUND,
    ):
        self.input_fn = input_fn
        self.output_fn = output_fn
        self.default = default
        self._last_percent: Optional[int] = None

    async def choose_strategy(self, plan: BackfillPlan) -> BackfillStrategy:
        self.output_fn("")
        self.output_fn("Timestamp Tracker Initialization Required")
        self.output_fn("=========================================")
        self.output_fn(
            f"Found {plan.series_count} metrics across {plan.host_count} hosts "
            f"that need timestamp tracking."
        )
        self.output_fn(
            "This one-time process records the latest stored timestamp of every series "
            "to prevent duplicate data."
        )
        self.output_fn(
            f"Estimated time: {plan.estimated_minutes_min}-{plan.estimated_minutes_max} minutes"
        )
        self.output_fn("")
        self.output_fn("Options:")
        self.output_fn("  1. Build tracker with progress updates (recommended)")
        self.output_fn("  2. Build tracker silently in background")
        self.output_fn("  3. Skip tracker building (slower duplicate detection)")
        self.output_fn("  4. Cancel operation")

        try:
            answer = await asyncio.to_thread(self.input_fn, "Select option [1-4]: ")
        except (EOFError, OSError) as e:
            logger.warning(
                f"Failed to read backfill choice ({e}), defaulting to {self.default.value}"
            )
            return self.default

        strategy = _OPTIONS.get((answer or "").strip(), self.default)
        if strategy == BackfillStrategy.SKIP:
            self.output_fn("Tracker building skipped. Continuing with operation...")
        elif strategy == BackfillStrategy.ABORT:
            self.output_fn("Operation cancelled.")
        return strategy

    def report_progress(self, progress: BackfillProgress) -> None:
        percent = progress.percent
        if percent == self._last_percent:
            return
        self._last_percent = percent

        filled = percent // 5
        bar = "#" * filled + "-" * (20 - filled)
        self.output_fn(
            f"[{bar}] {percent}% - {progress.processed}/{progress.total} series "
            f"({progress.current_host}) - ETA: {progress.eta_seconds:.0f}s"
        )
