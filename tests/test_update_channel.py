"""
Tests for UpdateChannel — listener bookkeeping on the base class and the
WebSocket transport against a local websockets server.
"""

import asyncio
import json

import pytest
import websockets

from ordersync.config import Settings
from ordersync.core.errors import TransportError
from ordersync.services.update_channel import WebSocketUpdateChannel


class TestBaseChannel:
    @pytest.mark.asyncio
    async def test_connect_is_idempotent(self, channel):
        await channel.connect()
        await channel.connect()
        assert channel.connect_calls == 1

    @pytest.mark.asyncio
    async def test_concurrent_connects_share_one_attempt(self, channel):
        await asyncio.gather(channel.connect(), channel.connect(), channel.connect())
        assert channel.connect_calls == 1
        assert channel.connected

    @pytest.mark.asyncio
    async def test_handlers_run_in_arrival_order_with_isolation(self, channel):
        received = []

        async def broken(raw):
            raise ValueError("handler bug")

        async def record(raw):
            received.append(raw)

        channel.on_message(broken)
        channel.on_message(record)
        for frame in ("a", "b", "c"):
            await channel.deliver(frame)

        assert received == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_unsubscribe_function(self, channel):
        received = []

        async def record(raw):
            received.append(raw)

        unsubscribe = channel.on_message(record)
        await channel.deliver("one")
        unsubscribe()
        await channel.deliver("two")

        assert received == ["one"]

    @pytest.mark.asyncio
    async def test_disconnect_detaches_everything(self, channel):
        async def noop(_):
            return None

        channel.on_message(noop)
        channel.on_connection_change(noop)
        await channel.connect()

        await channel.disconnect()

        assert channel.listener_count == 0
        assert not channel.connected


# ═══════════════════════════════════════════════════════════════════
# WebSocket transport
# ═══════════════════════════════════════════════════════════════════

def _url(server) -> str:
    port = list(server.sockets)[0].getsockname()[1]
    return f"ws://127.0.0.1:{port}/ws/orders"


class TestWebSocketUpdateChannel:
    @pytest.mark.asyncio
    async def test_receives_frames_and_sends_auth_header(self):
        headers_seen = []

        async def handler(ws):
            headers_seen.append(ws.request.headers.get("X-API-Key"))
            await ws.send(json.dumps({"type": "order_created", "orderId": "1", "data": {}}))
            await ws.wait_closed()

        async with websockets.serve(handler, "127.0.0.1", 0) as server:
            channel = WebSocketUpdateChannel(_url(server), api_key="secret-key")
            frames = []
            got_frame = asyncio.Event()

            async def on_frame(raw):
                frames.append(json.loads(raw))
                got_frame.set()

            channel.on_message(on_frame)
            await channel.connect()
            await asyncio.wait_for(got_frame.wait(), timeout=5)

            assert channel.connected
            assert frames[0]["orderId"] == "1"
            assert headers_seen == ["secret-key"]

            await channel.disconnect()
            assert not channel.connected

    @pytest.mark.asyncio
    async def test_send_reaches_server(self):
        inbox = asyncio.Queue()

        async def handler(ws):
            async for message in ws:
                await inbox.put(json.loads(message))

        async with websockets.serve(handler, "127.0.0.1", 0) as server:
            channel = WebSocketUpdateChannel(_url(server))
            await channel.connect()

            await channel.send({"type": "order_status_update", "orderId": "7"})

            message = await asyncio.wait_for(inbox.get(), timeout=5)
            assert message == {"type": "order_status_update", "orderId": "7"}
            await channel.disconnect()

    @pytest.mark.asyncio
    async def test_server_close_reported_as_connection_change(self):
        async def handler(ws):
            await ws.close()

        async with websockets.serve(handler, "127.0.0.1", 0) as server:
            channel = WebSocketUpdateChannel(_url(server))
            changes = []
            lost = asyncio.Event()

            async def on_change(change):
                changes.append(change)
                if not change.connected:
                    lost.set()

            channel.on_connection_change(on_change)
            await channel.connect()
            await asyncio.wait_for(lost.wait(), timeout=5)

            assert changes[0].connected is True
            assert changes[-1].connected is False
            assert changes[-1].error
            assert not channel.connected
            await channel.disconnect()

    @pytest.mark.asyncio
    async def test_connect_failure_raises_transport_error(self):
        async def handler(ws):
            return None

        async with websockets.serve(handler, "127.0.0.1", 0) as server:
            url = _url(server)

        channel = WebSocketUpdateChannel(url)
        with pytest.raises(TransportError):
            await channel.connect()
        assert not channel.connected

    @pytest.mark.asyncio
    async def test_send_without_connection(self):
        channel = WebSocketUpdateChannel("ws://127.0.0.1:9/ws/orders")
        with pytest.raises(TransportError):
            await channel.send({"type": "ping"})

    def test_from_settings(self):
        settings = Settings(push_url="ws://backend:9000/ws/orders", api_key="k", ws_max_size=2048)
        channel = WebSocketUpdateChannel.from_settings(settings)
        assert channel.url == "ws://backend:9000/ws/orders"
        assert channel._api_key == "k"
        assert channel._max_size == 2048


class _BrokenSocket:
    """Connection whose iterator dies with a non-websockets error."""

    def __init__(self) -> None:
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        raise RuntimeError("decoder crashed")

    async def close(self) -> None:
        self.closed = True


class TestReaderFailure:
    @pytest.mark.asyncio
    async def test_unexpected_reader_error_reported_as_connection_change(self):
        channel = WebSocketUpdateChannel("ws://127.0.0.1:9/ws/orders")
        changes = []

        async def on_change(change):
            changes.append(change)

        channel.on_connection_change(on_change)
        ws = _BrokenSocket()
        channel._ws = ws

        await channel._read_loop(ws)

        assert len(changes) == 1
        assert changes[0].connected is False
        assert "RuntimeError" in changes[0].error
        assert not channel.connected
        assert ws.closed

    @pytest.mark.asyncio
    async def test_reader_error_after_disconnect_not_reported(self):
        channel = WebSocketUpdateChannel("ws://127.0.0.1:9/ws/orders")
        changes = []

        async def on_change(change):
            changes.append(change)

        channel.on_connection_change(on_change)

        await channel._read_loop(_BrokenSocket())

        assert changes == []
