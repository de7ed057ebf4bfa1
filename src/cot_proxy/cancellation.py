from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Awaitable, Callable
from typing import Any, TypeVar

from .errors import RelayCancelledError

T = TypeVar("T")


async def _next_item(iterator: AsyncIterator[T]) -> T:
    return await iterator.__anext__()


class CancellationContext:
    """
    Request-scoped cancellation signal.

    Two trigger points feed it: the caller disconnecting, and a forced abort raised
    once the caller's response has been fully sent. Children derived with `child()`
    fire whenever their parent does, and can also be triggered on their own.
    """

    DISCONNECT = "client_disconnect"
    FORCE_ABORT = "force_abort"

    def __init__(self, parent: CancellationContext | None = None):
        self._event = asyncio.Event()
        self._children: list[CancellationContext] = []
        self.reason: str | None = None
        if parent is not None:
            parent._children.append(self)
            if parent.reason is not None:
                self._cancel(parent.reason)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def _cancel(self, reason: str) -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        for child in self._children:
            child._cancel(reason)

    def trigger_disconnect(self) -> None:
        self._cancel(self.DISCONNECT)

    def trigger_force_abort(self) -> None:
        self._cancel(self.FORCE_ABORT)

    def child(self) -> CancellationContext:
        return CancellationContext(parent=self)

    async def wait(self) -> str:
        await self._event.wait()
        return self.reason or self.FORCE_ABORT

    async def run(self, awaitable: Awaitable[T]) -> T:
        """Await `awaitable`, abandoning it with `RelayCancelledError` if this context fires first."""
        if self.reason is not None:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise RelayCancelledError(self.reason)
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            waiter.cancel()
            raise
        if task.done():
            waiter.cancel()
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise RelayCancelledError(self.reason or self.FORCE_ABORT)

    async def guard(self, iterator: AsyncIterator[T]) -> AsyncIterator[T]:
        it = iterator.__aiter__()
        while True:
            try:
                item = await self.run(_next_item(it))
            except StopAsyncIteration:
                return
            yield item

    async def watch_disconnect(self, is_disconnected: Callable[[], Awaitable[Any]], *, interval: float) -> None:
        while not self.cancelled:
            if await is_disconnected():
                self.trigger_disconnect()
                return
            try:
                await asyncio.wait_for(self._event.wait(), timeout=max(0.01, interval))
            except asyncio.TimeoutError:
                continue
