"""
Shared fixtures: in-memory UpdateChannel and order client, a recording no-wait
sleep, factories for orders and push updates, and a runtime wired to the
in-memory fakes.
"""

import asyncio
import os
from datetime import datetime, timedelta, timezone

import pytest

# Log to stderr only while testing
os.environ.setdefault("ORDERSYNC_LOG_DIR", "")

from ordersync.core.errors import FetchError, TransportError  # noqa: E402
from ordersync.models.order import Order, OrderStatus, StatusHistoryEntry  # noqa: E402
from ordersync.models.sync import PendingUpdate, UpdateType  # noqa: E402
from ordersync.services.poll_fallback import PollFallback  # noqa: E402
from ordersync.services.reconciler import Reconciler  # noqa: E402
from ordersync.services.reconnect_policy import ReconnectPolicy  # noqa: E402
from ordersync.services.runtime import OrderSyncRuntime  # noqa: E402
from ordersync.services.sync_engine import SyncEngine  # noqa: E402
from ordersync.services.update_channel import ConnectionChange, UpdateChannel  # noqa: E402

T0 = datetime(2024, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeUpdateChannel(UpdateChannel):
    """UpdateChannel that fails the first ``fail_times`` connects."""

    def __init__(self, fail_times: int = 0) -> None:
        super().__init__()
        self.fail_times = fail_times
        self.connect_calls = 0
        self.close_calls = 0
        self.sent = []
        self._connected = False

    @property
    def connected(self) -> bool:
        return self._connected

    async def _open(self) -> None:
        self.connect_calls += 1
        await asyncio.sleep(0)
        if self.connect_calls <= self.fail_times:
            raise TransportError(detail=f"connection refused (attempt {self.connect_calls})")
        self._connected = True
        await self._notify_connection(ConnectionChange(connected=True))

    async def _close(self) -> None:
        self._connected = False
        self.close_calls += 1

    async def _send(self, message) -> None:
        self.sent.append(message)

    async def deliver(self, raw) -> None:
        """Simulate a frame arriving from the backend."""
        await self._dispatch_message(raw)

    async def drop(self, error: str = "connection reset by peer") -> None:
        """Simulate the server going away."""
        self._connected = False
        await self._notify_connection(ConnectionChange(connected=False, error=error))

    @property
    def listener_count(self) -> int:
        return len(self._message_handlers) + len(self._connection_handlers)


class FakeOrderClient:
    """In-memory OrderApiClient stand-in. ``gate`` holds fetches until set."""

    def __init__(self, orders=None):
        self.orders = {o.id: o for o in (orders or [])}
        self.fail = False
        self.gate = None
        self.closed = False
        self.fetch_all_calls = 0
        self.fetch_order_calls = []

    async def _wait_gate(self):
        if self.gate is not None:
            await self.gate.wait()

    async def fetch_all_orders(self, filter=None):
        self.fetch_all_calls += 1
        await self._wait_gate()
        if self.fail:
            raise FetchError(detail="GET /orders: HTTP 503", context={"status_code": 503})
        return list(self.orders.values())

    async def fetch_order(self, order_id):
        self.fetch_order_calls.append(order_id)
        await self._wait_gate()
        if self.fail:
            raise FetchError(detail=f"GET /orders/{order_id}: HTTP 503", context={"status_code": 503})
        if order_id not in self.orders:
            raise FetchError(detail=f"GET /orders/{order_id}: HTTP 404", context={"status_code": 404})
        return self.orders[order_id]

    async def aclose(self):
        self.closed = True


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays and returns at once."""

    def __init__(self) -> None:
        self.delays = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def t0():
    return T0


@pytest.fixture
def at():
    """at(seconds) -> T0 + seconds."""
    def _at(seconds: float = 0) -> datetime:
        return T0 + timedelta(seconds=seconds)
    return _at


@pytest.fixture
def make_order():
    def _make(order_id="ord-1", status=OrderStatus.PENDING, updated=T0, **fields) -> Order:
        history = fields.pop("status_history", None)
        if history is None:
            history = (StatusHistoryEntry(status=status, timestamp=updated),)
        return Order(
            id=order_id,
            status=status,
            status_history=history,
            last_updated=updated,
            **fields,
        )
    return _make


@pytest.fixture
def make_update():
    def _make(order_id="ord-1", update_type=UpdateType.STATUS, payload=None, timestamp=T0,
              sequence=None) -> PendingUpdate:
        return PendingUpdate(
            order_id=order_id,
            update_type=update_type,
            payload=payload or {},
            timestamp=timestamp,
            sequence=sequence,
        )
    return _make


@pytest.fixture
def push_frame():
    """push_frame(type, order_id, data, timestamp) -> dict as sent by the backend."""
    def _frame(msg_type="order_status_update", order_id="ord-1", data=None, timestamp=T0, **extra):
        frame = {"type": msg_type, "orderId": order_id, "data": data or {}}
        if timestamp is not None:
            frame["timestamp"] = timestamp.isoformat()
        frame.update(extra)
        return frame
    return _frame


@pytest.fixture
def channel():
    return FakeUpdateChannel()


@pytest.fixture
def recorded_sleep():
    return RecordingSleep()


@pytest.fixture
def reconciler():
    return Reconciler()


@pytest.fixture
def engine(channel, reconciler, recorded_sleep):
    return SyncEngine(
        channel,
        reconciler,
        ReconnectPolicy(base=1.0, cap=30.0, max_retries=5),
        sleep=recorded_sleep,
    )


@pytest.fixture
def order_client():
    return FakeOrderClient()


@pytest.fixture
def runtime(channel, order_client, recorded_sleep):
    """Runtime for API tests. Polling is off so state changes only when a test says so."""
    reconciler = Reconciler()
    engine = SyncEngine(
        channel,
        reconciler,
        ReconnectPolicy(base=1.0, cap=30.0, max_retries=2),
        sleep=recorded_sleep,
    )
    poller = PollFallback(order_client, reconciler, interval=30.0, sleep=recorded_sleep)
    return OrderSyncRuntime(reconciler, engine, poller, order_client, poll_enabled=False)
