"""
Bounded waiting over a set of keyed tasks.

wait_with_deadline() runs every awaitable as a task, waits at most `timeout`
seconds and returns what finished, what raised and which keys were still
running. Stragglers are cancelled and given a short grace period to unwind;
the caller never blocks on them past that.
"""

import asyncio
import logging
from collections.abc import Awaitable, Hashable, Mapping
from dataclasses import dataclass, field
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

K = TypeVar("K", bound=Hashable)
T = TypeVar("T")

DEFAULT_CANCEL_GRACE_SECONDS = 5.0


@dataclass
class DeadlineResult(Generic[K, T]):
    """Outcome of a bounded wait."""

    done: dict[K, T] = field(default_factory=dict)
    errors: dict[K, BaseException] = field(default_factory=dict)
    pending: list[K] = field(default_factory=list)

    @property
    def timed_out(self) -> bool:
        return bool(self.pending)


async def wait_with_deadline(
    awaitables: Mapping[K, Awaitable[T]],
    timeout: float | None,
    cancel_pending: bool = True,
    cancel_grace: float = DEFAULT_CANCEL_GRACE_SECONDS,
) -> DeadlineResult[K, T]:
    """
    Wait for keyed awaitables until all finish or the deadline expires.

    Args:
        awaitables: Mapping of caller-chosen key to coroutine/awaitable
        timeout: Seconds to wait for the whole set (None waits for all)
        cancel_pending: Cancel tasks still running at the deadline
        cancel_grace: Seconds granted to cancelled tasks to unwind

    Returns:
        DeadlineResult with completed results, raised errors and pending keys
    """
    result: DeadlineResult[K, T] = DeadlineResult()
    if not awaitables:
        return result

    tasks: dict[asyncio.Future, K] = {
        asyncio.ensure_future(aw): key for key, aw in awaitables.items()
    }

    try:
        done, pending = await asyncio.wait(tasks.keys(), timeout=timeout)
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        raise

    for task in done:
        key = tasks[task]
        if task.cancelled():
            result.errors[key] = asyncio.CancelledError()
            continue
        exc = task.exception()
        if exc is not None:
            result.errors[key] = exc
        else:
            result.done[key] = task.result()

    result.pending = [tasks[task] for task in pending]

    if pending and cancel_pending:
        for task in pending:
            task.cancel()
        _, still_running = await asyncio.wait(pending, timeout=cancel_grace)
        if still_running:
            logger.warning(
                "Tasks did not unwind within cancel grace period",
                extra={"pending_tasks": len(still_running), "timeout_seconds": cancel_grace},
            )

    return result


__all__ = ["DeadlineResult", "wait_with_deadline"]
