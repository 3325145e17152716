"""Periodic progress logging for long-running stages."""

import asyncio
import logging
import time
from collections.abc import Callable

from core.logging.utilities import format_progress

logger = logging.getLogger(__name__)


class ProgressLogger:
    """
    Logs throughput and ETA of a running stage at a fixed interval.

    The stage provides a callback returning (completed, total); the logger
    derives rate and ETA from the elapsed time since start().

    Usage:
        progress = ProgressLogger(30, lambda: (done, len(keys)), stage="fetch")
        progress.start()
        try:
            await download_everything()
        finally:
            await progress.stop()
    """

    def __init__(
        self,
        interval_seconds: float,
        get_progress: Callable[[], tuple[int, int]],
        stage: str,
        label: str = "Progress",
    ):
        """
        Args:
            interval_seconds: Logging interval in seconds
            get_progress: Callback returning (completed, total)
            stage: Stage name for logging context
            label: Message prefix
        """
        self.interval_seconds = interval_seconds
        self.get_progress = get_progress
        self.stage = stage
        self.label = label
        self._task: asyncio.Task | None = None
        self._started_at: float | None = None
        self._cycle_count = 0

    def start(self) -> None:
        """Start the periodic logging task."""
        if self._task is not None:
            logger.warning("Progress logger already running")
            return

        self._started_at = time.monotonic()
        self._task = asyncio.create_task(self._run())

    async def stop(self, log_final: bool = True) -> None:
        """Stop the periodic logging task, optionally logging a final line."""
        if self._task is None:
            return

        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

        if log_final:
            self.log_once(final=True)

    def log_once(self, final: bool = False) -> None:
        completed, total = self.get_progress()
        elapsed = time.monotonic() - (self._started_at or time.monotonic())
        message, rate, eta = format_progress(completed, total, elapsed)
        prefix = f"{self.label} complete" if final else self.label

        logger.info(
            "%s: %s",
            prefix,
            message,
            extra={
                "stage": self.stage,
                "objects_completed": completed,
                "objects_total": total,
                "rate_per_sec": round(rate, 2),
                "eta_seconds": round(eta, 1) if eta is not None else None,
                "duration_ms": round(elapsed * 1000, 2),
            },
        )

    async def _run(self) -> None:
        try:
            while True:
                await asyncio.sleep(self.interval_seconds)
                self._cycle_count += 1
                self.log_once()
        except asyncio.CancelledError:
            logger.debug("Progress logger task cancelled")
            raise
