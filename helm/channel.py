import asyncio
from collections import defaultdict
from collections.abc import AsyncIterator, Callable, Coroutine
from contextlib import asynccontextmanager
from typing import Any

from helm.logging import get_logger

type Handler[T] = Callable[[T], Coroutine[Any, Any, None]]

_logger = get_logger(__name__)


class Channel:
    """Update feed for presentation layers.

    - subscribe(EventType, handler): async handler run as a background task per event.
      No ordering guarantees between events. Errors are logged, never propagated.
    - listen(*EventTypes): ordered async iterator over published events, for consumers
      that need arrival order (e.g. rendering text deltas).
    """

    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler]] = defaultdict(list)
        self._listeners: list[tuple[tuple[type, ...], asyncio.Queue]] = []

    def subscribe[T](self, event_type: type[T], handler: Handler[T]) -> None:
        self._handlers[event_type].append(handler)

    def unsubscribe[T](self, event_type: type[T], handler: Handler[T]) -> None:
        handlers = self._handlers.get(event_type)
        if handlers:
            try:
                handlers.remove(handler)
            except ValueError:
                pass

    def publish[T](self, event: T) -> None:
        for handler in self._handlers.get(type(event), []):
            asyncio.create_task(self._run(handler, event))
        for types, queue in self._listeners:
            if not types or isinstance(event, types):
                queue.put_nowait(event)

    @asynccontextmanager
    async def listen(self, *event_types: type) -> AsyncIterator[AsyncIterator[Any]]:
        queue: asyncio.Queue = asyncio.Queue()
        entry = (event_types, queue)
        self._listeners.append(entry)

        async def events() -> AsyncIterator[Any]:
            while True:
                yield await queue.get()

        try:
            yield events()
        finally:
            self._listeners.remove(entry)

    async def _run[T](self, handler: Handler[T], event: T) -> None:
        try:
            await handler(event)
        except Exception:
            _logger.exception(
                "Event handler %s failed for %s",
                handler.__qualname__,
                type(event).__name__,
            )
