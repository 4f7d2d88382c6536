"""Bounded fan-out and cooperative cancellation."""

from __future__ import annotations

import asyncio
import logging
from typing import Awaitable, Callable, Iterable, TypeVar

from ..config import MAX_CONCURRENCY
from ..errors import AbortedError

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")


class AbortSignal:
    """A one-shot cancellation flag threaded through every model call.

    Aborting does not interrupt calls already in flight. It stops new work from
    starting, and callers discard the results of calls that finish afterwards.
    """

    def __init__(self) -> None:
        self._reason: str | None = None
        self._aborted = False

    @property
    def aborted(self) -> bool:
        return self._aborted

    @property
    def reason(self) -> str | None:
        return self._reason

    def abort(self, reason: str | None = None) -> None:
        if self._aborted:
            return
        self._aborted = True
        self._reason = reason
        logger.info("Abort requested%s", f": {reason}" if reason else "")

    def raise_if_aborted(self) -> None:
        if self._aborted:
            raise AbortedError(self._reason)


def raise_if_aborted(signal: AbortSignal | None) -> None:
    if signal is not None:
        signal.raise_if_aborted()


async def gather_bounded(
    items: Iterable[T],
    worker: Callable[[T], Awaitable[R]],
    *,
    limit: int = MAX_CONCURRENCY,
    abort_signal: AbortSignal | None = None,
) -> list[R]:
    """Run ``worker`` over ``items`` with at most ``limit`` in flight.

    Results come back in input order regardless of completion order. The abort
    signal is checked as each task acquires its slot, so nothing new starts
    once it has fired. If any worker raises, the remaining tasks are cancelled
    and awaited before the exception propagates.
    """
    semaphore = asyncio.Semaphore(limit)

    async def _run(item: T) -> R:
        async with semaphore:
            raise_if_aborted(abort_signal)
            return await worker(item)

    tasks = [asyncio.ensure_future(_run(item)) for item in items]
    try:
        results = await asyncio.gather(*tasks)
    except BaseException:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        raise
    raise_if_aborted(abort_signal)
    return list(results)
