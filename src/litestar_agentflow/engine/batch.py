"""Bounded concurrent batches."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

__all__ = ["BatchItemResult", "run_in_batches"]

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BATCH_SIZE = 5


@dataclass(frozen=True)
class BatchItemResult(Generic[T]):
    """Per-item outcome of a batch run.

    Attributes:
        item: The input item.
        success: Whether the worker returned without raising.
        result: The worker's return value.
        error: The exception the worker raised.
    """

    item: T
    success: bool
    result: Any = None
    error: BaseException | None = None


async def run_in_batches(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[Any]],
    batch_size: int = DEFAULT_BATCH_SIZE,
) -> list[BatchItemResult[T]]:
    """Run a worker over items, at most ``batch_size`` at a time.

    Items are partitioned into consecutive batches; each batch runs
    concurrently and completes before the next one starts. A failing item
    never aborts its batch.

    Args:
        items: Independent inputs.
        worker: Coroutine function applied to each item.
        batch_size: Maximum concurrent workers.

    Returns:
        One result per item, in input order.

    Example:
        >>> results = await run_in_batches(workflow_ids, engine.cancel, batch_size=5)
        >>> [result.success for result in results]
        [True, True, False]
    """
    if batch_size < 1:
        msg = "batch_size must be at least 1"
        raise ValueError(msg)

    results: list[BatchItemResult[T]] = []
    for start in range(0, len(items), batch_size):
        batch = items[start : start + batch_size]
        outcomes = await asyncio.gather(*(worker(item) for item in batch), return_exceptions=True)
        for item, outcome in zip(batch, outcomes, strict=True):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, BaseException):
                results.append(BatchItemResult(item=item, success=False, error=outcome))
            else:
                results.append(BatchItemResult(item=item, success=True, result=outcome))
        logger.debug("Batch %d finished (%d items)", start // batch_size + 1, len(batch))
    return results
