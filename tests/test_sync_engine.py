"""
Tests for SyncEngine — connect/retry lifecycle, receive path, dedup, stop.
"""

import asyncio
import json

import pytest

from ordersync.core.errors import MalformedMessage, TransportError
from ordersync.models.order import OrderStatus
from ordersync.models.sync import ApplyOutcome, ConnectionStatus, UpdateType
from ordersync.services.reconnect_policy import ReconnectPolicy
from ordersync.services.sync_engine import SyncEngine, parse_update


# ═══════════════════════════════════════════════════════════════════
# Connection lifecycle
# ═══════════════════════════════════════════════════════════════════

class TestConnect:
    @pytest.mark.asyncio
    async def test_successful_start(self, engine, channel):
        await engine.start()

        state = engine.state
        assert state.status == ConnectionStatus.CONNECTED
        assert state.retry_count == 0
        assert state.last_sync_time is not None
        assert state.indicator == "connected"
        assert channel.connect_calls == 1
        await engine.stop()

    @pytest.mark.asyncio
    async def test_start_is_idempotent(self, engine, channel):
        await engine.start()
        await engine.start()
        assert channel.connect_calls == 1
        await engine.stop()

    @pytest.mark.asyncio
    async def test_three_failures_then_success(self, engine, channel, recorded_sleep):
        channel.fail_times = 3

        await engine.start()
        assert engine.state.status == ConnectionStatus.ERROR
        assert engine.state.retry_count == 1
        assert engine.state.indicator == "connecting"

        await engine.wait_idle()

        assert recorded_sleep.delays == [1.0, 2.0, 4.0]
        assert channel.connect_calls == 4
        assert engine.state.status == ConnectionStatus.CONNECTED
        assert engine.state.retry_count == 0
        assert engine.state.last_error is None
        await engine.stop()

    @pytest.mark.asyncio
    async def test_retries_exhausted_reports_degraded(self, engine, channel, recorded_sleep):
        channel.fail_times = 100

        await engine.start()
        await engine.wait_idle()

        state = engine.state
        assert state.status == ConnectionStatus.ERROR
        assert state.retries_exhausted is True
        assert state.retry_count == 5
        assert state.indicator == "degraded"
        assert "connection refused" in state.last_error
        assert channel.connect_calls == 5
        assert recorded_sleep.delays == [1.0, 2.0, 4.0, 8.0]
        assert engine.stats.connect_failures == 5
        await engine.stop()

    @pytest.mark.asyncio
    async def test_manual_reconnect_resets_budget(self, engine, channel):
        channel.fail_times = 5
        await engine.start()
        await engine.wait_idle()
        assert engine.state.indicator == "degraded"

        await engine.reconnect()

        assert engine.state.status == ConnectionStatus.CONNECTED
        assert engine.state.retry_count == 0
        assert engine.state.retries_exhausted is False
        await engine.stop()

    @pytest.mark.asyncio
    async def test_reconnect_during_connect_joins_attempt(self, engine, channel, recorded_sleep):
        channel.fail_times = 1

        await asyncio.gather(engine.start(), engine.reconnect())
        await engine.wait_idle()

        # One failed attempt: counted once, one retry chain
        assert engine.stats.connect_failures == 1
        assert recorded_sleep.delays == [1.0]
        assert channel.connect_calls == 2
        assert engine.state.status == ConnectionStatus.CONNECTED
        assert engine.state.retry_count == 0
        await engine.stop()

    @pytest.mark.asyncio
    async def test_concurrent_reconnects_share_one_attempt(self, channel, reconciler):
        never = asyncio.Event()

        async def blocking_sleep(delay):
            await never.wait()

        engine = SyncEngine(channel, reconciler, ReconnectPolicy(), sleep=blocking_sleep)
        channel.fail_times = 1
        await engine.start()
        assert engine.state.retry_count == 1

        await asyncio.gather(engine.reconnect(), engine.reconnect())

        assert channel.connect_calls == 2
        assert engine.stats.connect_failures == 1
        assert engine.state.status == ConnectionStatus.CONNECTED
        await engine.stop()
        assert channel.connect_calls == 2

    @pytest.mark.asyncio
    async def test_connection_lost_goes_through_retry(self, engine, channel, recorded_sleep):
        await engine.start()

        await channel.drop("server restarting")
        assert engine.state.status == ConnectionStatus.ERROR
        assert engine.state.last_error is not None

        await engine.wait_idle()

        assert engine.state.status == ConnectionStatus.CONNECTED
        assert recorded_sleep.delays == [1.0]
        assert channel.connect_calls == 2
        await engine.stop()

    @pytest.mark.asyncio
    async def test_state_events_published(self, engine, channel):
        channel.fail_times = 1
        seen = []
        engine.subscribe(seen.append)

        await engine.start()
        await engine.wait_idle()
        await engine.feed.join()

        statuses = [s.status for s in seen]
        assert statuses == [
            ConnectionStatus.CONNECTING,
            ConnectionStatus.ERROR,
            ConnectionStatus.CONNECTING,
            ConnectionStatus.CONNECTED,
        ]
        await engine.stop()


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_cancels_scheduled_retry(self, channel, reconciler):
        never = asyncio.Event()

        async def blocking_sleep(delay):
            await never.wait()

        engine = SyncEngine(channel, reconciler, ReconnectPolicy(), sleep=blocking_sleep)
        channel.fail_times = 1
        await engine.start()
        assert engine.state.status == ConnectionStatus.ERROR

        await engine.stop()
        # Let anything that might still be scheduled run
        for _ in range(5):
            await asyncio.sleep(0)

        assert channel.connect_calls == 1
        assert engine.state.status == ConnectionStatus.DISCONNECTED
        assert engine.running is False

    @pytest.mark.asyncio
    async def test_stop_detaches_listeners(self, engine, channel, reconciler, make_order, push_frame, at):
        await reconciler.apply_snapshot(make_order())
        await engine.start()
        assert channel.listener_count == 2

        await engine.stop()

        assert channel.listener_count == 0
        assert channel.close_calls == 1
        await channel.deliver(json.dumps(push_frame(data={"status": "confirmed"}, timestamp=at(5))))
        assert reconciler.get("ord-1").status == OrderStatus.PENDING

    @pytest.mark.asyncio
    async def test_restart_after_stop(self, engine, channel):
        await engine.start()
        await engine.stop()
        await engine.start()
        assert engine.state.status == ConnectionStatus.CONNECTED
        assert channel.listener_count == 2
        await engine.stop()


class TestSend:
    @pytest.mark.asyncio
    async def test_send_when_connected(self, engine, channel):
        await engine.start()
        await engine.send({"type": "ping"})
        assert channel.sent == [{"type": "ping"}]
        await engine.stop()

    @pytest.mark.asyncio
    async def test_send_when_disconnected_raises(self, engine):
        with pytest.raises(TransportError):
            await engine.send({"type": "ping"})


# ═══════════════════════════════════════════════════════════════════
# Receive path
# ═══════════════════════════════════════════════════════════════════

class TestParseUpdate:
    def test_parses_status_update(self, push_frame, at):
        update = parse_update(json.dumps(push_frame(data={"status": "packed"}, timestamp=at(3), sequence=7)))
        assert update.order_id == "ord-1"
        assert update.update_type is UpdateType.STATUS
        assert update.timestamp == at(3)
        assert update.sequence == 7
        assert update.payload == {"status": "packed"}

    def test_accepts_bytes_and_numeric_ids(self, push_frame):
        frame = push_frame(msg_type="order_delivery_update", order_id=42, data={"deliveryStatus": "assigned"})
        update = parse_update(json.dumps(frame).encode("utf-8"))
        assert update.order_id == "42"
        assert update.update_type is UpdateType.DELIVERY

    def test_missing_timestamp_uses_receive_time(self, push_frame):
        update = parse_update(push_frame(msg_type="order_payment_verified", timestamp=None))
        assert update.timestamp is not None
        assert update.timestamp.tzinfo is not None

    @pytest.mark.parametrize("raw", [
        "not json",
        "[1, 2, 3]",
        json.dumps({"type": "order_status_update", "data": {"status": "packed"}}),
        json.dumps({"orderId": "ord-1", "data": {}}),
        json.dumps({"type": "order_refunded", "orderId": "ord-1", "data": {}}),
        json.dumps({"type": "order_status_update", "orderId": "ord-1", "data": {"status": "lost"}}),
        json.dumps({"type": "order_status_update", "orderId": "", "data": {"status": "packed"}}),
    ])
    def test_malformed(self, raw):
        with pytest.raises(MalformedMessage):
            parse_update(raw)


class TestHandleMessage:
    @pytest.mark.asyncio
    async def test_forwards_to_reconciler(self, engine, channel, reconciler, make_order, push_frame, at):
        await reconciler.apply_snapshot(make_order())
        await engine.start()

        await channel.deliver(json.dumps(push_frame(data={"status": "confirmed"}, timestamp=at(5))))

        assert reconciler.get("ord-1").status == OrderStatus.CONFIRMED
        assert engine.stats.forwarded == 1
        await engine.stop()

    @pytest.mark.asyncio
    async def test_malformed_dropped_not_fatal(self, engine, reconciler):
        outcome = await engine.handle_message("{broken")
        assert outcome is None
        assert engine.stats.malformed == 1
        assert engine.stats.forwarded == 0

    @pytest.mark.asyncio
    async def test_duplicate_frame_dropped_before_reconciler(self, engine, reconciler, make_order, push_frame, at):
        await reconciler.apply_snapshot(make_order())
        frame = push_frame(data={"status": "confirmed"}, timestamp=at(5))

        assert await engine.handle_message(frame) is ApplyOutcome.APPLIED
        assert await engine.handle_message(frame) is ApplyOutcome.DUPLICATE
        assert engine.stats.duplicate == 1
        assert engine.stats.forwarded == 1

    @pytest.mark.asyncio
    async def test_older_frame_for_same_key_dropped(self, engine, reconciler, make_order, push_frame, at):
        await reconciler.apply_snapshot(make_order())
        newer = push_frame(msg_type="order_delivery_update", data={"deliveryStatus": "in_transit"}, timestamp=at(20))
        older = push_frame(msg_type="order_delivery_update", data={"deliveryStatus": "assigned"}, timestamp=at(10))

        await engine.handle_message(newer)
        assert await engine.handle_message(older) is ApplyOutcome.DUPLICATE
        assert reconciler.get("ord-1").delivery["deliveryStatus"] == "in_transit"

    @pytest.mark.asyncio
    async def test_different_update_types_are_independent_keys(self, engine, reconciler, make_order, push_frame, at):
        await reconciler.apply_snapshot(make_order())
        await engine.handle_message(push_frame(msg_type="order_delivery_update",
                                               data={"deliveryStatus": "assigned"}, timestamp=at(10)))
        outcome = await engine.handle_message(push_frame(msg_type="order_payment_verified",
                                                         data={"transactionId": "tx"}, timestamp=at(10)))
        assert outcome is ApplyOutcome.APPLIED

    @pytest.mark.asyncio
    async def test_dedup_cache_bounded(self, channel, reconciler, make_order, push_frame, at):
        engine = SyncEngine(channel, reconciler, dedup_cache_size=2)
        for i in range(3):
            await reconciler.apply_snapshot(make_order(order_id=f"o{i}"))
            await engine.handle_message(push_frame(order_id=f"o{i}", data={"status": "confirmed"},
                                                   timestamp=at(5)))
        assert len(engine._seen) == 2

    @pytest.mark.asyncio
    async def test_accepted_frame_refreshes_last_sync_time(self, engine, reconciler, make_order, push_frame, at):
        await reconciler.apply_snapshot(make_order())
        assert engine.state.last_sync_time is None
        await engine.handle_message(push_frame(data={"status": "confirmed"}, timestamp=at(5)))
        assert engine.state.last_sync_time is not None
