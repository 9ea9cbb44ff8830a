"""Tests for bounded concurrent batches."""

from __future__ import annotations

import asyncio

import pytest

from litestar_agentflow.engine.batch import run_in_batches


@pytest.mark.unit
@pytest.mark.asyncio
class TestRunInBatches:
    """Tests for run_in_batches."""

    async def test_results_in_input_order(self) -> None:
        async def double(value: int) -> int:
            await asyncio.sleep(0.001 * (5 - value))
            return value * 2

        results = await run_in_batches([1, 2, 3, 4], double, batch_size=2)

        assert [result.item for result in results] == [1, 2, 3, 4]
        assert [result.result for result in results] == [2, 4, 6, 8]

    async def test_failure_does_not_abort_batch(self) -> None:
        async def worker(value: int) -> int:
            if value == 2:
                msg = "bad item"
                raise ValueError(msg)
            return value

        results = await run_in_batches([1, 2, 3], worker, batch_size=3)

        assert [result.success for result in results] == [True, False, True]
        assert isinstance(results[1].error, ValueError)

    async def test_concurrency_is_bounded(self) -> None:
        running = 0
        peak = 0

        async def worker(value: int) -> int:
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.001)
            running -= 1
            return value

        await run_in_batches(list(range(7)), worker, batch_size=3)

        assert peak == 3

    async def test_empty_items(self) -> None:
        async def worker(value: int) -> int:
            return value

        assert await run_in_batches([], worker) == []

    async def test_invalid_batch_size(self) -> None:
        async def worker(value: int) -> int:
            return value

        with pytest.raises(ValueError, match="batch_size"):
            await run_in_batches([1], worker, batch_size=0)
