"""
Tests for time budgets and batch processing.
"""

import asyncio

from data.errors import UpstreamTimeoutError
from scanner.budget import ScanBudget, run_in_batches


class FakeClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self) -> float:
        return self.now


class TestScanBudget:
    """Tests for ScanBudget."""

    def test_unbounded_budget(self):
        budget = ScanBudget(clock=FakeClock())
        budget.start()

        assert budget.remaining() is None
        assert budget.exhausted_reason() is None

    def test_total_budget(self):
        clock = FakeClock()
        budget = ScanBudget(total_seconds=100, clock=clock)
        budget.start()

        clock.now = 40
        assert budget.remaining() == 60

        clock.now = 100
        assert "Time budget of 100s" in budget.exhausted_reason()

    def test_stall_window_resets_on_progress(self):
        clock = FakeClock()
        budget = ScanBudget(total_seconds=300, stall_seconds=90, clock=clock)
        budget.start()

        clock.now = 80
        budget.record_progress()
        clock.now = 150
        assert budget.exhausted_reason() is None
        assert budget.remaining() == 20

        clock.now = 170
        assert "No progress for 90s" in budget.exhausted_reason()

    def test_not_started_is_not_exhausted(self):
        assert ScanBudget(total_seconds=0).exhausted_reason() is None


class TestRunInBatches:
    """Tests for run_in_batches."""

    def test_all_items_in_order(self):
        seen = []
        batches = []

        async def worker(n):
            return n * 10

        async def on_result(item, result):
            seen.append((item, result))

        async def on_batch_done():
            batches.append(len(seen))

        reason = asyncio.run(
            run_in_batches([1, 2, 3, 4, 5], worker, ScanBudget(), 2, on_result, on_batch_done)
        )

        assert reason is None
        assert seen == [(1, 10), (2, 20), (3, 30), (4, 40), (5, 50)]
        assert batches == [2, 4, 5]

    def test_worker_exceptions_are_passed_to_on_result(self):
        seen = []

        async def worker(n):
            if n == 2:
                raise ValueError("bad item")
            return n

        async def on_result(item, result):
            seen.append(result)

        asyncio.run(run_in_batches([1, 2, 3], worker, ScanBudget(), 3, on_result))

        assert seen[0] == 1
        assert isinstance(seen[1], ValueError)
        assert seen[2] == 3

    def test_stops_when_budget_is_exhausted(self):
        clock = FakeClock()
        budget = ScanBudget(total_seconds=10, clock=clock)
        seen = []

        async def worker(n):
            return n

        async def on_result(item, result):
            seen.append(item)
            clock.now += 6

        reason = asyncio.run(run_in_batches(list(range(6)), worker, budget, 1, on_result))

        assert seen == [0, 1]
        assert "Time budget" in reason

    def test_cut_off_batch_still_reports_every_item(self):
        """A fast item in a batch that runs out of time keeps its result; the slow one times out."""
        seen = []
        batches = []

        async def worker(n):
            if n == "slow":
                await asyncio.sleep(5)
            return n.upper()

        async def on_result(item, result):
            seen.append((item, result))

        async def on_batch_done():
            batches.append(len(seen))

        reason = asyncio.run(
            run_in_batches(
                ["fast", "slow", "never"], worker, ScanBudget(total_seconds=0.2), 2, on_result, on_batch_done
            )
        )

        assert reason is not None
        assert [item for item, _ in seen] == ["fast", "slow"]
        assert seen[0][1] == "FAST"
        assert isinstance(seen[1][1], UpstreamTimeoutError)
        assert batches == [2]
