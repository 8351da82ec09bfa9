"""
Poll Fallback
=============

Timer-driven snapshot refresh feeding Reconciler.apply_snapshot.

Runs unconditionally alongside the SyncEngine as a consistency backstop,
not only while push is down. Each tick starts one fetch cycle as its own
task; a tick that finds a cycle still in flight is skipped, not queued.
Every cycle fetches the filtered order list. Watched orders (the tracking
view) are fetched individually on top of it, never instead of it.

stop() cancels the timer only. A cycle in flight is allowed to finish, but
its snapshots are discarded once stop has been requested.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from ordersync.core.errors import FetchError
from ordersync.models.order import Order
from ordersync.models.sync import ApplyOutcome
from ordersync.services.order_client import OrderApiClient, OrderFilter
from ordersync.services.reconciler import Reconciler

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL_S = 30.0

Sleep = Callable[[float], Awaitable[Any]]


@dataclass
class PollStats:
    ticks: int = 0
    skipped: int = 0
    cycles: int = 0
    failures: int = 0
    snapshots_applied: int = 0
    discarded: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class PollFallback:
    """Periodically fetches order snapshots into the Reconciler."""

    def __init__(
        self,
        client: OrderApiClient,
        reconciler: Reconciler,
        *,
        interval: float = DEFAULT_POLL_INTERVAL_S,
        order_filter: Optional[OrderFilter] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        if interval <= 0:
            raise ValueError("interval must be positive")
        self._client = client
        self._reconciler = reconciler
        self._interval = interval
        self._filter = order_filter
        self._sleep = sleep
        self._watched: Set[str] = set()
        self._timer: Optional[asyncio.Task] = None
        self._in_flight: Optional[asyncio.Task] = None
        self._running = False
        # Bumped by stop(); a cycle started under an older generation is discarded
        self._generation = 0
        self.stats = PollStats()

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> bool:
        return self._in_flight is not None and not self._in_flight.done()

    @property
    def watched(self) -> Set[str]:
        return set(self._watched)

    def watch(self, order_id: str) -> None:
        """Poll this order individually (the order tracking view)."""
        self._watched.add(str(order_id))

    def unwatch(self, order_id: str) -> None:
        self._watched.discard(str(order_id))

    # -- lifecycle ------------------------------------------------------------

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._timer = asyncio.create_task(self._timer_loop())
        logger.info("Poll fallback started (every %.0fs)", self._interval)

    async def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._generation += 1
        if self._timer is not None:
            self._timer.cancel()
            try:
                await self._timer
            except asyncio.CancelledError:
                pass
            self._timer = None
        logger.info("Poll fallback stopped")

    async def wait_idle(self) -> None:
        """Wait for the cycle in flight (if any) to finish."""
        task = self._in_flight
        if task is not None and not task.done():
            await asyncio.wait({task})

    async def _timer_loop(self) -> None:
        try:
            while True:
                self.tick()
                await self._sleep(self._interval)
        except asyncio.CancelledError:
            logger.debug("Poll timer cancelled")
            raise

    def tick(self) -> bool:
        """Start a cycle unless one is in flight. Returns True when started."""
        self.stats.ticks += 1
        if self.in_flight:
            self.stats.skipped += 1
            logger.debug("Poll tick skipped: previous fetch still in flight")
            return False
        self._in_flight = asyncio.create_task(self._cycle(self._generation))
        return True

    # -- fetch cycle ----------------------------------------------------------

    async def poll_once(self) -> int:
        """Run one cycle now. Returns the number of snapshots that changed state."""
        if self.in_flight:
            await self.wait_idle()
        task = asyncio.create_task(self._cycle(self._generation))
        self._in_flight = task
        return await task

    async def _cycle(self, generation: int) -> int:
        self.stats.cycles += 1
        try:
            snapshots = await self._fetch()
        except FetchError as e:
            self.stats.failures += 1
            logger.warning("Order poll failed, retrying next tick: %s", e)
            return 0

        if generation != self._generation:
            self.stats.discarded += len(snapshots)
            logger.info("Discarding %d polled snapshots: poller stopped", len(snapshots))
            return 0

        applied = 0
        for snapshot in snapshots:
            if await self._reconciler.apply_snapshot(snapshot) is ApplyOutcome.APPLIED:
                applied += 1
        self.stats.snapshots_applied += applied
        logger.debug("Poll cycle: %d snapshots, %d applied", len(snapshots), applied)
        return applied

    async def _fetch(self) -> List[Order]:
        """The filtered list every cycle, plus each watched order on its own."""
        if not self._watched:
            return await self._client.fetch_all_orders(self._filter)

        snapshots: List[Order] = []
        failed = 0
        try:
            snapshots.extend(await self._client.fetch_all_orders(self._filter))
        except FetchError as e:
            failed += 1
            logger.warning("Order list poll failed: %s", e)
        for order_id in sorted(self._watched):
            try:
                snapshots.append(await self._client.fetch_order(order_id))
            except FetchError as e:
                failed += 1
                logger.warning("Fetching order %s failed: %s", order_id, e)
        if failed and not snapshots:
            raise FetchError(detail=f"{failed} order fetches failed, nothing refreshed")
        return snapshots

    async def refresh(self, order_id: str) -> Optional[Order]:
        """Load one order on demand. FetchError propagates to the caller."""
        snapshot = await self._client.fetch_order(order_id)
        await self._reconciler.apply_snapshot(snapshot)
        return self._reconciler.get(snapshot.id)
