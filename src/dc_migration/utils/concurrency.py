"""Bounded parallel fan-out used within an import or rollback tier."""

import asyncio
from collections.abc import Awaitable, Callable, Iterable
from typing import TypeVar

from dc_migration.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


async def gather_bounded(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[R]],
    max_concurrent: int,
    raise_first: bool = True,
) -> list[R | BaseException]:
    """Run worker over every item, at most max_concurrent at a time.

    Every worker runs to completion even when a sibling fails, so each
    committed resource gets recorded before the tier gives up.

    Args:
        items: Items to process
        worker: Coroutine function called once per item
        max_concurrent: Semaphore bound
        raise_first: Re-raise the first failure once all workers are done

    Returns:
        Results in item order; failures appear as exception objects when
        raise_first is False
    """
    semaphore = asyncio.Semaphore(max_concurrent)

    async def run_with_semaphore(item: T) -> R:
        async with semaphore:
            return await worker(item)

    results = await asyncio.gather(
        *(run_with_semaphore(item) for item in items), return_exceptions=True
    )

    if raise_first:
        failures = [result for result in results if isinstance(result, BaseException)]
        if failures:
            if len(failures) > 1:
                logger.warning("parallel_failures", count=len(failures), first=str(failures[0]))
            raise failures[0]
    return results
