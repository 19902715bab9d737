import asyncio
from typing import Awaitable, TypeVar

from .errors import GenerationCancelled

T = TypeVar("T")


class CancellationToken:
    """
    Shared cancel signal for every dispatch of one batch.
    Calls registered against it stop at their next guarded await and raise
    GenerationCancelled. A token fires at most once; a new batch gets a new token.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise GenerationCancelled()

    async def guard(self, aw: Awaitable[T]) -> T:
        """Await `aw` unless the token fires first, in which case `aw` is cancelled."""
        if self._event.is_set():
            if asyncio.iscoroutine(aw):
                aw.close()
            raise GenerationCancelled()
        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            waiter.cancel()
            if not task.done():
                task.cancel()
        if not task.done() or task.cancelled():
            raise GenerationCancelled()
        return task.result()

    async def sleep(self, delay: float) -> None:
        await self.guard(asyncio.sleep(delay))
