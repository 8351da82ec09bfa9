"""
Sync Engine
===========

Maintains one logical connection to the backend's order-update stream and
hands validated updates to the Reconciler.

Connection lifecycle (ConnectionState is mutated only here):
  disconnected --start()--> connecting --ok--> connected
                                       --fail--> error (retry scheduled)
  error --after next_delay(retry_count - 1)--> connecting ...
  error with retries exhausted: stays put, indicator reads "degraded";
  PollFallback keeps the order view correct in the meantime.

A connection lost while running goes through the same retry path.
stop() cancels the retry timer and detaches from the channel before its
first await, so no reconnect fires after it returns. Connect attempts never
overlap: reconnect() during an attempt joins it instead of starting another.

Receive path:
  raw frame -> parse_update() -> dedup on (order_id, update_type)
            -> Reconciler.apply() -> outcome
Malformed frames are counted, logged and dropped.
"""

import asyncio
import json
import logging
from collections import OrderedDict
from dataclasses import asdict, dataclass, replace
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError

from ordersync.core.errors import MalformedMessage, TransportError
from ordersync.core.structured_logging import connection_id_var
from ordersync.models.order import OrderStatus, utcnow
from ordersync.models.sync import (
    MESSAGE_TYPES,
    ApplyOutcome,
    ConnectionState,
    ConnectionStatus,
    PendingUpdate,
    PushMessage,
    UpdateType,
)
from ordersync.services.event_feed import EventFeed, EventHandler, Subscription
from ordersync.services.reconciler import Reconciler
from ordersync.services.reconnect_policy import ReconnectPolicy
from ordersync.services.update_channel import ConnectionChange, UpdateChannel

logger = logging.getLogger(__name__)

DEFAULT_DEDUP_CACHE_SIZE = 10_000

Sleep = Callable[[float], Awaitable[Any]]


def parse_update(raw: Union[str, bytes, Dict[str, Any]]) -> PendingUpdate:
    """Turn one push frame into a PendingUpdate. Raises MalformedMessage."""
    if isinstance(raw, (str, bytes, bytearray)):
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise MalformedMessage(detail=f"not JSON: {e}") from e
    else:
        data = raw
    if not isinstance(data, dict):
        raise MalformedMessage(detail=f"expected an object, got {type(data).__name__}")

    try:
        message = PushMessage.model_validate(data)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise MalformedMessage(detail=f"invalid fields: {fields}") from e

    update_type = MESSAGE_TYPES.get(message.type)
    if update_type is None:
        raise MalformedMessage(
            detail=f"unknown message type {message.type!r}",
            context={"order_id": message.order_id},
        )
    if update_type is UpdateType.STATUS:
        status = message.data.get("status")
        if status not in {s.value for s in OrderStatus}:
            raise MalformedMessage(
                detail=f"unknown order status {status!r}",
                context={"order_id": message.order_id},
            )

    return PendingUpdate(
        order_id=message.order_id,
        update_type=update_type,
        payload=message.data,
        timestamp=message.timestamp or utcnow(),
        sequence=message.sequence,
    )


@dataclass
class SyncStats:
    received: int = 0
    malformed: int = 0
    duplicate: int = 0
    forwarded: int = 0
    connect_failures: int = 0
    connections: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class SyncEngine:
    """Owns one UpdateChannel and the ConnectionState."""

    def __init__(
        self,
        channel: UpdateChannel,
        reconciler: Reconciler,
        policy: Optional[ReconnectPolicy] = None,
        *,
        dedup_cache_size: int = DEFAULT_DEDUP_CACHE_SIZE,
        event_queue_size: int = 256,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._channel = channel
        self._reconciler = reconciler
        self._policy = policy or ReconnectPolicy()
        self._sleep = sleep
        self._state = ConnectionState()
        self._running = False
        self._retry_task: Optional[asyncio.Task] = None
        # At most one connect attempt runs; concurrent callers join it
        self._attempt_task: Optional[asyncio.Task] = None
        self._unsubscribers: List[Callable[[], None]] = []
        self._connection_seq = 0
        # LRU of the newest processed ordering key per (order_id, update_type)
        self._seen: "OrderedDict[Tuple[str, UpdateType], Tuple[Any, int]]" = OrderedDict()
        self._dedup_cache_size = dedup_cache_size
        self.feed = EventFeed("connection", maxsize=event_queue_size)
        self.stats = SyncStats()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def running(self) -> bool:
        return self._running

    def subscribe(
        self, handler: Optional[EventHandler] = None, *, maxsize: Optional[int] = None
    ) -> Subscription:
        """Register a ConnectionState observer."""
        return self.feed.subscribe(handler, maxsize=maxsize)

    def _set_state(self, **changes: Any) -> None:
        self._state = replace(self._state, **changes)
        self.feed.publish(self._state)

    # -- lifecycle ------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._unsubscribers = [
            self._channel.on_message(self.handle_message),
            self._channel.on_connection_change(self._on_connection_change),
        ]
        logger.info("Sync engine starting")
        await self._attempt_connect()

    async def stop(self) -> None:
        self._running = False
        current = asyncio.current_task()
        tasks = [
            t for t in (self._retry_task, self._attempt_task)
            if t is not None and t is not current
        ]
        self._retry_task = None
        self._attempt_task = None
        for task in tasks:
            task.cancel()
        for unsubscribe in self._unsubscribers:
            unsubscribe()
        self._unsubscribers = []

        await self._channel.disconnect()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._set_state(
            status=ConnectionStatus.DISCONNECTED,
            retry_count=0,
            last_error=None,
            retries_exhausted=False,
        )
        logger.info("Sync engine stopped")

    async def reconnect(self) -> None:
        """Manual retry: reset the retry budget and connect again."""
        if not self._running:
            await self.start()
            return
        if self._attempt_in_flight():
            # Already connecting: wait for that attempt instead of starting a second
            await asyncio.shield(self._attempt_task)
            return
        task, self._retry_task = self._retry_task, None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._set_state(retry_count=0, retries_exhausted=False)
        await self._attempt_connect()

    async def wait_idle(self) -> None:
        """Wait until no reconnect attempt is scheduled or running."""
        while True:
            pending = {
                t for t in (self._retry_task, self._attempt_task)
                if t is not None and not t.done()
            }
            if not pending:
                return
            await asyncio.wait(pending)

    async def send(self, message: Dict[str, Any]) -> None:
        if not self._channel.connected:
            raise TransportError(detail="push channel is not connected")
        await self._channel.send(message)

    # -- connection handling --------------------------------------------------

    def _attempt_in_flight(self) -> bool:
        return self._attempt_task is not None and not self._attempt_task.done()

    def _start_attempt(self) -> asyncio.Task:
        if not self._attempt_in_flight():
            self._attempt_task = asyncio.create_task(self._connect_once())
        return self._attempt_task

    async def _attempt_connect(self) -> None:
        """Run one connect attempt, or join the one already running."""
        task = self._start_attempt()
        try:
            await asyncio.shield(task)
        except asyncio.CancelledError:
            # The attempt itself was cancelled by stop()
            if task.cancelled() and not self._running:
                return
            raise

    async def _connect_once(self) -> None:
        self._connection_seq += 1
        token = connection_id_var.set(f"push-{self._connection_seq}")
        try:
            self._set_state(status=ConnectionStatus.CONNECTING)
            try:
                await self._channel.connect()
            except asyncio.CancelledError:
                if self._running:
                    raise
                return
            except Exception as e:
                if self._running:
                    self._on_failure(e)
                return
            if not self._running:
                return
            self.stats.connections += 1
            self._set_state(
                status=ConnectionStatus.CONNECTED,
                retry_count=0,
                last_error=None,
                retries_exhausted=False,
                last_sync_time=utcnow(),
            )
            logger.info("Push channel connected")
        finally:
            connection_id_var.reset(token)

    def _on_failure(self, exc: BaseException) -> None:
        self.stats.connect_failures += 1
        retry_count = self._state.retry_count + 1
        error = str(exc) or type(exc).__name__

        if self._policy.should_retry(retry_count):
            delay = self._policy.next_delay(retry_count - 1)
            self._set_state(
                status=ConnectionStatus.ERROR,
                retry_count=retry_count,
                last_error=error,
                retries_exhausted=False,
            )
            logger.warning(
                "Push connection failed (attempt %d): %s; retrying in %.1fs",
                retry_count, error, delay,
            )
            previous = self._retry_task
            if previous is not None and not previous.done() and previous is not asyncio.current_task():
                previous.cancel()
            self._retry_task = asyncio.create_task(self._retry_after(delay))
        else:
            self._set_state(
                status=ConnectionStatus.ERROR,
                retry_count=retry_count,
                last_error=error,
                retries_exhausted=True,
            )
            logger.error(
                "Push connection failed %d times, giving up; relying on polling: %s",
                retry_count, error,
            )

    async def _retry_after(self, delay: float) -> None:
        await self._sleep(delay)
        if self._running:
            # Not awaited: a failure here schedules the next retry task itself
            self._start_attempt()

    async def _on_connection_change(self, change: ConnectionChange) -> None:
        if change.connected or not self._running:
            return
        if self._state.status != ConnectionStatus.CONNECTED:
            # Failures during connect are handled by _attempt_connect
            return
        logger.warning("Push connection lost: %s", change.error)
        self._on_failure(TransportError(detail=change.error or "connection lost"))

    # -- receive path ---------------------------------------------------------

    async def handle_message(
        self, raw: Union[str, bytes, Dict[str, Any]]
    ) -> Optional[ApplyOutcome]:
        """Parse, dedup and forward one frame. Returns None when it was malformed."""
        self.stats.received += 1
        try:
            update = parse_update(raw)
        except MalformedMessage as e:
            self.stats.malformed += 1
            logger.warning("Dropping malformed push message: %s", e.detail)
            return None

        self._state = replace(self._state, last_sync_time=utcnow())

        last = self._seen.get(update.key)
        if last is not None and update.ordering_key <= last:
            self.stats.duplicate += 1
            logger.debug(
                "Dropping duplicate %s update for order %s",
                update.update_type.value, update.order_id,
            )
            return ApplyOutcome.DUPLICATE

        self.stats.forwarded += 1
        outcome = await self._reconciler.apply(update)
        if outcome in (ApplyOutcome.APPLIED, ApplyOutcome.UNCHANGED):
            self._remember(update)
        return outcome

    def _remember(self, update: PendingUpdate) -> None:
        self._seen[update.key] = update.ordering_key
        self._seen.move_to_end(update.key)
        while len(self._seen) > self._dedup_cache_size:
            self._seen.popitem(last=False)
