"""Coalesce concurrent computations for the same key."""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class SingleFlight(Generic[T]):
    """Run at most one in-flight computation per key.

    Callers arriving while a computation for their key is running await the
    same result instead of starting another one. The computation runs in its
    own task: cancelling any caller, the first one included, leaves it
    running for the others.
    """

    def __init__(self) -> None:
        self._inflight: dict[str, asyncio.Future[T]] = {}

    async def do(self, key: str, func: Callable[[], Awaitable[T]]) -> T:
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.ensure_future(func())
            self._inflight[key] = task
            task.add_done_callback(lambda done: self._finished(key, done))
        else:
            logger.debug("Joining in-flight computation for %s", key)
        return await asyncio.shield(task)

    def _finished(self, key: str, task: asyncio.Future[T]) -> None:
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled():
            # retrieve it so a failure nobody awaited is not reported as unretrieved
            task.exception()

    def __len__(self) -> int:
        return len(self._inflight)
