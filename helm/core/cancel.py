import asyncio
from collections.abc import AsyncIterator, Awaitable
from contextlib import suppress


class Cancelled(Exception):
    def __init__(self, reason: str = "cancelled"):
        self.reason = reason
        super().__init__(reason)


class CancellationToken:
    """Cooperative cancellation passed down every call boundary.

    Every suspension point (stream events, tool calls, permission prompts, backoff sleeps)
    goes through race() or sleep(), so cancel() unblocks them immediately.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise Cancelled(self.reason or "cancelled")

    async def wait(self) -> None:
        await self._event.wait()

    async def sleep(self, seconds: float) -> None:
        self.raise_if_cancelled()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except TimeoutError:
            return
        self.raise_if_cancelled()

    async def race[T](self, awaitable: Awaitable[T]) -> T:
        self.raise_if_cancelled()
        task = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task.done():
            return task.result()

        task.cancel()
        with suppress(asyncio.CancelledError, Exception):
            await task
        raise Cancelled(self.reason or "cancelled")

    async def iterate[T](self, source: AsyncIterator[T]) -> AsyncIterator[T]:
        """Yield from source until it ends or the token is cancelled; closes source either way."""
        try:
            while True:
                try:
                    item = await self.race(anext(source))
                except StopAsyncIteration:
                    return
                yield item
        finally:
            aclose = getattr(source, "aclose", None)
            if aclose is not None:
                with suppress(Exception):
                    await aclose()
