"""
Deadline-bounded batch processing.

``ScanBudget`` covers both ways a scan can be cut short: a total wall-clock
budget and a stall window (no completed batch for too long). Either limit is
optional. ``run_in_batches`` drives a worker over items in fixed-size
concurrent batches and stops as soon as the budget is exhausted.
"""

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Optional, Sequence, TypeVar

from data.errors import UpstreamTimeoutError
from utils.helpers import chunked

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ScanBudget:
    """Wall-clock limits for one scan run."""

    def __init__(
        self,
        total_seconds: Optional[float] = None,
        stall_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.total_seconds = total_seconds
        self.stall_seconds = stall_seconds
        self._clock = clock
        self._started: Optional[float] = None
        self._last_progress: Optional[float] = None

    def start(self) -> None:
        self._started = self._last_progress = self._clock()

    @property
    def started(self) -> bool:
        return self._started is not None

    def record_progress(self) -> None:
        self._last_progress = self._clock()

    @property
    def elapsed(self) -> float:
        if self._started is None:
            return 0.0
        return self._clock() - self._started

    def remaining(self) -> Optional[float]:
        """Seconds until the first limit is hit, or None when unbounded."""
        if self._started is None:
            self.start()
        now = self._clock()
        limits = []
        if self.total_seconds is not None:
            limits.append(self.total_seconds - (now - self._started))
        if self.stall_seconds is not None:
            limits.append(self.stall_seconds - (now - self._last_progress))
        return min(limits) if limits else None

    def exhausted_reason(self) -> Optional[str]:
        """Why the run must stop now, or None while within budget."""
        if self._started is None:
            return None
        now = self._clock()
        if self.total_seconds is not None and now - self._started >= self.total_seconds:
            return f"Time budget of {self.total_seconds:.0f}s exhausted"
        if self.stall_seconds is not None and now - self._last_progress >= self.stall_seconds:
            return f"No progress for {self.stall_seconds:.0f}s"
        return None


async def run_in_batches(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[Any]],
    budget: ScanBudget,
    batch_size: int,
    on_result: Callable[[T, Any], Awaitable[None]],
    on_batch_done: Optional[Callable[[], Awaitable[None]]] = None,
    pause_seconds: float = 0.0,
) -> Optional[str]:
    """
    Run ``worker`` over ``items`` a batch at a time.

    Each batch runs concurrently and is waited on for at most the remaining
    budget. Every item of a started batch is handed to ``on_result`` in item
    order: its result, the exception its worker raised, or an
    ``UpstreamTimeoutError`` when the budget ran out before it finished.

    Returns:
        The reason processing stopped early, or None when every item ran.
    """
    if not budget.started:
        budget.start()

    for batch in chunked(items, batch_size):
        reason = budget.exhausted_reason()
        if reason:
            logger.warning(f"Stopping early: {reason}")
            return reason

        tasks = [asyncio.ensure_future(worker(item)) for item in batch]
        timeout = budget.remaining()
        _, pending = await asyncio.wait(
            tasks, timeout=max(timeout, 0.0) if timeout is not None else None
        )

        if pending:
            reason = budget.exhausted_reason() or "Batch exceeded the remaining time budget"
            logger.warning(f"Stopping early mid-batch: {reason} ({len(pending)} unfinished)")
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        for item, task in zip(batch, tasks):
            if task in pending:
                result: Any = UpstreamTimeoutError(f"Cut off: {reason}")
            elif task.exception() is not None:
                result = task.exception()
            else:
                result = task.result()
            await on_result(item, result)

        budget.record_progress()
        if on_batch_done is not None:
            await on_batch_done()
        if pending:
            return reason
        if pause_seconds:
            await asyncio.sleep(pause_seconds)

    return None
