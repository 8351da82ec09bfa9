"""
Runtime wiring.

Builds the sync components once at process start and owns their lifecycle.
The FastAPI app keeps the instance on ``app.state.runtime``; nothing here is
a module-level singleton.
"""

from __future__ import annotations

import logging
from typing import Optional

from ordersync.config import Settings
from ordersync.services.order_client import OrderApiClient
from ordersync.services.poll_fallback import PollFallback
from ordersync.services.reconciler import Reconciler
from ordersync.services.reconnect_policy import ReconnectPolicy
from ordersync.services.sync_engine import SyncEngine
from ordersync.services.update_channel import UpdateChannel, WebSocketUpdateChannel

logger = logging.getLogger(__name__)


class OrderSyncRuntime:
    """Reconciler + SyncEngine + PollFallback with explicit start/stop."""

    def __init__(
        self,
        reconciler: Reconciler,
        engine: SyncEngine,
        poller: PollFallback,
        order_client: OrderApiClient,
        *,
        push_enabled: bool = True,
        poll_enabled: bool = True,
    ) -> None:
        self.reconciler = reconciler
        self.engine = engine
        self.poller = poller
        self.order_client = order_client
        self.push_enabled = push_enabled
        self.poll_enabled = poll_enabled
        self._started = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        channel: Optional[UpdateChannel] = None,
        order_client: Optional[OrderApiClient] = None,
    ) -> "OrderSyncRuntime":
        reconciler = Reconciler(
            pending_max=settings.pending_max,
            event_queue_size=settings.event_queue_size,
        )
        engine = SyncEngine(
            channel or WebSocketUpdateChannel.from_settings(settings),
            reconciler,
            ReconnectPolicy.from_settings(settings),
            dedup_cache_size=settings.dedup_cache_size,
            event_queue_size=settings.event_queue_size,
        )
        client = order_client or OrderApiClient.from_settings(settings)
        poller = PollFallback(client, reconciler, interval=settings.poll_interval_s)
        return cls(
            reconciler,
            engine,
            poller,
            client,
            push_enabled=settings.push_enabled,
            poll_enabled=settings.poll_enabled,
        )

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        self._started = True
        # Polling starts first so it covers a slow or failing push connect
        if self.poll_enabled:
            self.poller.start()
        if self.push_enabled:
            await self.engine.start()
        else:
            logger.info("Push disabled, relying on polling only")

    async def stop(self) -> None:
        if not self._started:
            return
        self._started = False
        await self.engine.stop()
        await self.poller.stop()
        await self.poller.wait_idle()
        await self.engine.feed.close()
        await self.reconciler.feed.close()
        await self.order_client.aclose()
        logger.info("Order sync runtime stopped")
