"""
Event Feed
==========

Observer registry owned by an emitter (the Reconciler for change events,
the SyncEngine for connection-state events).

Each subscriber gets its own bounded asyncio.Queue. ``publish`` never
blocks: when a subscriber's queue is full its oldest event is dropped and
a warning is logged. A subscriber registered with a handler has a pump task
that feeds the handler one event at a time with error isolation; a
subscriber without a handler pulls events with ``get()`` or ``async for``.

Teardown is deterministic: ``unsubscribe()`` cancels the pump immediately
and ``close()`` awaits every pump.
"""

import asyncio
import inspect
import logging
from typing import Any, Awaitable, Callable, List, Optional, Union

logger = logging.getLogger(__name__)

# Sync or async callable receiving one event
EventHandler = Callable[[Any], Union[None, Awaitable[None]]]

DEFAULT_QUEUE_SIZE = 256

_CLOSED = object()


class Subscription:
    """One subscriber's queue (and pump task when it has a handler)."""

    def __init__(
        self,
        feed: "EventFeed",
        handler: Optional[EventHandler],
        maxsize: int,
    ) -> None:
        self._feed = feed
        self._handler = handler
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._pump: Optional[asyncio.Task] = None
        self.closed = False
        self.dropped = 0
        self.delivered = 0

    def _put(self, event: Any) -> None:
        if self.closed:
            return
        if self._queue.full():
            self._queue.get_nowait()
            self._queue.task_done()
            self.dropped += 1
            logger.warning(
                "Subscriber queue full on %s feed, dropped oldest event (%d dropped so far)",
                self._feed.name, self.dropped,
            )
        self._queue.put_nowait(event)
        self._ensure_pump()

    def _ensure_pump(self) -> None:
        if self._handler is None or self._pump is not None or self.closed:
            return
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            # Started on the first publish from inside the loop
            return
        self._pump = asyncio.create_task(self._run_pump())

    async def _run_pump(self) -> None:
        while True:
            event = await self._queue.get()
            try:
                result = self._handler(event)
                if inspect.isawaitable(result):
                    await result
                self.delivered += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(
                    "Subscriber on %s feed raised: %s", self._feed.name, e, exc_info=True
                )
            finally:
                self._queue.task_done()

    async def get(self) -> Optional[Any]:
        """Next event, or None once the subscription is closed."""
        if self._handler is not None:
            raise RuntimeError("Subscription has a handler; events are pushed to it")
        if self.closed and self._queue.empty():
            return None
        event = await self._queue.get()
        self._queue.task_done()
        if event is _CLOSED:
            return None
        self.delivered += 1
        return event

    def get_nowait(self) -> Optional[Any]:
        try:
            event = self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return None
        self._queue.task_done()
        return None if event is _CLOSED else event

    def __aiter__(self) -> "Subscription":
        return self

    async def __anext__(self) -> Any:
        event = await self.get()
        if event is None:
            raise StopAsyncIteration
        return event

    async def join(self) -> None:
        """Wait until every queued event has been handled."""
        await self._queue.join()

    def pending(self) -> int:
        return self._queue.qsize()

    def unsubscribe(self) -> None:
        """Detach from the feed. Takes effect before the caller's next await."""
        if self.closed:
            return
        self.closed = True
        self._feed._remove(self)
        if self._pump is not None:
            self._pump.cancel()
        elif self._handler is None:
            # Wake a consumer blocked in get()
            while self._queue.full():
                self._queue.get_nowait()
                self._queue.task_done()
            self._queue.put_nowait(_CLOSED)

    async def aclose(self) -> None:
        self.unsubscribe()
        if self._pump is not None:
            try:
                await self._pump
            except asyncio.CancelledError:
                pass
            self._pump = None


class EventFeed:
    """Fan-out of events to independently buffered subscribers."""

    def __init__(self, name: str, maxsize: int = DEFAULT_QUEUE_SIZE) -> None:
        if maxsize < 1:
            raise ValueError("maxsize must be >= 1")
        self.name = name
        self._maxsize = maxsize
        self._subscriptions: List[Subscription] = []

    def subscribe(
        self,
        handler: Optional[EventHandler] = None,
        *,
        maxsize: Optional[int] = None,
    ) -> Subscription:
        sub = Subscription(self, handler, maxsize or self._maxsize)
        self._subscriptions.append(sub)
        sub._ensure_pump()
        logger.debug("Subscriber added to %s feed (%d total)", self.name, len(self._subscriptions))
        return sub

    def _remove(self, sub: Subscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    def publish(self, event: Any) -> int:
        """Queue ``event`` for every subscriber. Returns the subscriber count."""
        subs = list(self._subscriptions)
        for sub in subs:
            sub._put(event)
        return len(subs)

    async def join(self) -> None:
        for sub in list(self._subscriptions):
            await sub.join()

    async def close(self) -> None:
        subs = list(self._subscriptions)
        for sub in subs:
            await sub.aclose()
        self._subscriptions = []

    def __len__(self) -> int:
        return len(self._subscriptions)
