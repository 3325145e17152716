"""Context managers for structured logging."""

import logging
import time
from contextlib import contextmanager
from typing import Any, Dict, Optional

from core.logging.context import get_log_context, set_log_context
from core.logging.utilities import log_with_context

logger = logging.getLogger(__name__)


class LogContext:
    """
    Context manager for temporary log context.

    Usage:
        with LogContext(group="main", partition="20240101"):
            # All logs in this block carry group and partition
            await process_partition(partition)
    """

    def __init__(
        self,
        cycle_id: Optional[str] = None,
        stage: Optional[str] = None,
        group: Optional[str] = None,
        partition: Optional[str] = None,
    ):
        self.new_context = {
            "cycle_id": cycle_id,
            "stage": stage,
            "group": group,
            "partition": partition,
        }
        self.old_context: Dict[str, str] = {}

    def __enter__(self) -> "LogContext":
        self.old_context = get_log_context()
        for key, value in self.new_context.items():
            if value is not None:
                set_log_context(**{key: value})
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        set_log_context(
            cycle_id=self.old_context.get("cycle_id", ""),
            stage=self.old_context.get("stage", ""),
            group=self.old_context.get("group", ""),
            partition=self.old_context.get("partition", ""),
        )
        return False


class StageLogContext(LogContext):
    """
    Context manager for stage execution with automatic timing.

    On a clean exit a DEBUG "Stage complete" record is written with the
    duration and whatever was passed to set_result(); failures are left to
    the caller to log.

    Usage:
        with StageLogContext("merge", partition="20240101") as ctx:
            artifact = await merge_stage.merge(...)
            ctx.set_result(lines_out=count)
    """

    def __init__(
        self,
        stage: str,
        cycle_id: Optional[str] = None,
        group: Optional[str] = None,
        partition: Optional[str] = None,
    ):
        super().__init__(stage=stage, cycle_id=cycle_id, group=group, partition=partition)
        self.stage = stage
        self.start_time: Optional[float] = None
        self.result_context: Dict[str, Any] = {}

    def __enter__(self) -> "StageLogContext":
        super().__enter__()
        self.start_time = time.perf_counter()
        return self

    def set_result(self, **kwargs: Any) -> None:
        """Set result context to be logged on exit."""
        self.result_context.update(kwargs)

    def __exit__(self, exc_type, exc_val, exc_tb):
        duration_ms = (time.perf_counter() - self.start_time) * 1000
        self.result_context["duration_ms"] = round(duration_ms, 2)
        if exc_val is None:
            log_with_context(logger, logging.DEBUG, f"Stage complete: {self.stage}", **self.result_context)
        super().__exit__(exc_type, exc_val, exc_tb)
        return False


@contextmanager
def log_phase(
    logger: logging.Logger,
    phase: str,
    level: int = logging.DEBUG,
    **context: Any,
):
    """
    Context manager for timing a phase within a stage.

    Example:
        with log_phase(logger, "list_prefixes", bucket=bucket):
            prefixes = store.list_prefixes()
    """
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())

    start = time.perf_counter()
    try:
        yield
    finally:
        duration_ms = (time.perf_counter() - start) * 1000
        log_with_context(
            logger,
            level,
            f"Phase complete: {phase}",
            duration_ms=round(duration_ms, 2),
            **context,
        )
