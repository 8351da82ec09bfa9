"""
Reconciler
==========

Single writer of authoritative order state. Push updates (via SyncEngine),
poll snapshots (via PollFallback) and local commands all land here and are
serialised by one asyncio.Lock.

apply(update):
    1. the update joins the pending queue
    2. the order's pending updates are drained in (timestamp, sequence) order
    3. each one is: deferred (order unknown, or a status not yet reachable
       by a legal edge), duplicate (not newer than the last processed update
       for its key), stale (older than the order's last_updated), rejected
       (status unreachable from the current one), unchanged, or applied

A change event is published only when an order's observable state (every
field except last_updated) actually changes. Readers and subscribers get deep
copies of the held Order and can never mutate held state.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError

from ordersync.core.errors import InvalidTransition, MalformedMessage, OrderNotFound, StaleUpdate
from ordersync.core.structured_logging import order_id_var
from ordersync.models.order import (
    DELIVERY_FIELDS,
    VERIFICATION_VERIFIED,
    FulfillmentStage,
    Order,
    OrderStatus,
    StatusHistoryEntry,
    utcnow,
)
from ordersync.models.sync import (
    CHANGE_FULFILLMENT,
    CHANGE_SNAPSHOT,
    ApplyOutcome,
    ChangeEvent,
    PendingUpdate,
    UpdateType,
)
from ordersync.services import state_machine
from ordersync.services.event_feed import EventFeed, EventHandler, Subscription

logger = logging.getLogger(__name__)

DEFAULT_PENDING_MAX = 1000

OrderingKey = Tuple[datetime, int]


@dataclass
class ReconcilerStats:
    applied: int = 0
    unchanged: int = 0
    duplicate: int = 0
    stale: int = 0
    rejected: int = 0
    deferred: int = 0
    evicted: int = 0
    snapshots_applied: int = 0
    snapshots_stale: int = 0
    events_published: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class Reconciler:
    """Owns every Order and the PendingUpdate queue."""

    def __init__(
        self,
        *,
        pending_max: int = DEFAULT_PENDING_MAX,
        event_queue_size: int = 256,
    ) -> None:
        self._orders: Dict[str, Order] = {}
        self._pending: List[PendingUpdate] = []
        self._pending_max = pending_max
        # Last processed ordering key per (order_id, update_type)
        self._processed: Dict[Tuple[str, UpdateType], OrderingKey] = {}
        self._lock = asyncio.Lock()
        self.feed = EventFeed("changes", maxsize=event_queue_size)
        self.stats = ReconcilerStats()

    # ═══════════════════════════════════════════════════════════════════
    # Reads
    # ═══════════════════════════════════════════════════════════════════

    def get(self, order_id: str) -> Optional[Order]:
        order = self._orders.get(str(order_id))
        return _detached(order) if order is not None else None

    def orders(self) -> List[Order]:
        return [_detached(o) for o in self._orders.values()]

    def pending_updates(self, order_id: Optional[str] = None) -> List[PendingUpdate]:
        return [
            p.model_copy(deep=True) for p in self._pending
            if order_id is None or p.order_id == str(order_id)
        ]

    def last_processed(self, order_id: str, update_type: UpdateType) -> Optional[OrderingKey]:
        return self._processed.get((str(order_id), UpdateType(update_type)))

    def subscribe(
        self, handler: Optional[EventHandler] = None, *, maxsize: Optional[int] = None
    ) -> Subscription:
        """Register a change-event subscriber (``handler`` or pull via ``get()``)."""
        return self.feed.subscribe(handler, maxsize=maxsize)

    # ═══════════════════════════════════════════════════════════════════
    # Push updates
    # ═══════════════════════════════════════════════════════════════════

    async def apply(self, update: PendingUpdate) -> ApplyOutcome:
        # The queue owns its own copy; the caller's payload is never held
        update = update.model_copy(deep=True)
        async with self._lock:
            token = order_id_var.set(update.order_id)
            try:
                self._enqueue(update)
                outcomes = self._drain(update.order_id)
            finally:
                order_id_var.reset(token)
        outcome = outcomes.get(id(update), ApplyOutcome.DEFERRED)
        if outcome is ApplyOutcome.DEFERRED:
            self.stats.deferred += 1
            logger.debug(
                "Deferred %s update for order %s", update.update_type.value, update.order_id
            )
        return outcome

    def clear_pending(self, order_id: Optional[str] = None) -> int:
        """Drop pending updates (all, or one order's). Returns how many were dropped."""
        before = len(self._pending)
        if order_id is None:
            self._pending = []
        else:
            self._pending = [p for p in self._pending if p.order_id != str(order_id)]
        dropped = before - len(self._pending)
        if dropped:
            logger.info("Cleared %d pending updates", dropped)
        return dropped

    def _enqueue(self, update: PendingUpdate) -> None:
        if len(self._pending) >= self._pending_max:
            evicted = self._pending.pop(0)
            self.stats.evicted += 1
            logger.warning(
                "Pending queue full (%d), evicted %s update for order %s",
                self._pending_max, evicted.update_type.value, evicted.order_id,
            )
        self._pending.append(update)

    def _drain(self, order_id: str) -> Dict[int, ApplyOutcome]:
        """Process the order's pending updates until a full pass applies nothing."""
        outcomes: Dict[int, ApplyOutcome] = {}
        progressed = True
        while progressed:
            progressed = False
            queued = sorted(
                (p for p in self._pending if p.order_id == order_id),
                key=lambda p: p.ordering_key,
            )
            for pending in queued:
                if not any(p is pending for p in self._pending):
                    continue  # superseded earlier in this pass
                outcome = self._process(pending)
                outcomes[id(pending)] = outcome
                if outcome is ApplyOutcome.DEFERRED:
                    continue
                pending.processed = True
                self._discard(pending)
                if outcome in (ApplyOutcome.APPLIED, ApplyOutcome.UNCHANGED):
                    self._processed[pending.key] = pending.ordering_key
                    self._supersede(pending, outcomes)
                if outcome is ApplyOutcome.APPLIED:
                    progressed = True
        return outcomes

    def _supersede(self, applied: PendingUpdate, outcomes: Dict[int, ApplyOutcome]) -> None:
        for pending in list(self._pending):
            if pending.key == applied.key and pending.ordering_key <= applied.ordering_key:
                self._discard(pending)
                outcomes[id(pending)] = ApplyOutcome.DUPLICATE
                self.stats.duplicate += 1

    def _discard(self, pending: PendingUpdate) -> None:
        # Identity, not equality: a redelivered update compares equal to the original
        self._pending = [p for p in self._pending if p is not pending]

    def _process(self, pending: PendingUpdate) -> ApplyOutcome:
        order = self._orders.get(pending.order_id)

        if pending.update_type is UpdateType.NEW_ORDER:
            return self._process_new_order(pending, order)
        if order is None:
            return ApplyOutcome.DEFERRED

        last = self._processed.get(pending.key)
        if last is not None and pending.ordering_key <= last:
            self.stats.duplicate += 1
            return ApplyOutcome.DUPLICATE

        if pending.timestamp < order.last_updated:
            self.stats.stale += 1
            err = StaleUpdate(
                detail=f"{pending.timestamp.isoformat()} < {order.last_updated.isoformat()}",
                context={"order_id": order.id, "update_type": pending.update_type.value},
            )
            logger.debug("Discarding stale %s update: %s", pending.update_type.value, err)
            return ApplyOutcome.STALE

        if pending.update_type is UpdateType.STATUS:
            updated = self._merge_status(order, pending)
            if isinstance(updated, ApplyOutcome):
                return updated
        elif pending.update_type is UpdateType.PAYMENT:
            updated = self._merge_payment(order, pending)
        else:
            updated = self._merge_delivery(order, pending)

        if updated.observable_state() == order.observable_state():
            self.stats.unchanged += 1
            return ApplyOutcome.UNCHANGED
        self._commit(updated, pending.update_type.value, pending.timestamp)
        self.stats.applied += 1
        return ApplyOutcome.APPLIED

    def _process_new_order(self, pending: PendingUpdate, existing: Optional[Order]) -> ApplyOutcome:
        doc: Dict[str, Any] = dict(pending.payload)
        doc["id"] = pending.order_id
        if not any(k in doc for k in ("lastUpdated", "last_updated", "updatedAt")):
            doc["lastUpdated"] = pending.timestamp
        try:
            order = Order.model_validate(doc)
        except ValidationError as e:
            self.stats.rejected += 1
            err = MalformedMessage(detail=str(e), context={"order_id": pending.order_id})
            logger.warning("Rejected order_created for %s: %s", pending.order_id, err)
            return ApplyOutcome.REJECTED

        if existing is None:
            order = _with_consistent_history(order, order.last_updated)
            self._commit(order, pending.update_type.value, pending.timestamp)
            self.stats.applied += 1
            logger.info("Order %s created (%s)", order.id, order.status.value)
            return ApplyOutcome.APPLIED

        # Re-announcement of a known order behaves like a snapshot
        if order.last_updated <= existing.last_updated:
            self.stats.duplicate += 1
            return ApplyOutcome.DUPLICATE
        merged = _merge_snapshot(existing, order)
        if merged.observable_state() == existing.observable_state():
            self._orders[existing.id] = merged
            self.stats.unchanged += 1
            return ApplyOutcome.UNCHANGED
        self._commit(merged, pending.update_type.value, pending.timestamp)
        self.stats.applied += 1
        return ApplyOutcome.APPLIED

    def _merge_status(self, order: Order, pending: PendingUpdate):
        raw = pending.payload.get("status")
        try:
            target = OrderStatus(raw)
        except ValueError:
            self.stats.rejected += 1
            logger.warning("Rejected status update for order %s: unknown status %r", order.id, raw)
            return ApplyOutcome.REJECTED

        if target == order.status:
            updated = order
        elif state_machine.can_transition(order.status, target):
            updated = state_machine.apply_transition(
                order,
                target,
                note=pending.payload.get("note") or pending.payload.get("notes"),
                at=pending.timestamp,
                updated_by=pending.payload.get("updatedBy"),
            )
        elif state_machine.is_reachable(order.status, target):
            # A missing intermediate update may still arrive
            return ApplyOutcome.DEFERRED
        else:
            self.stats.rejected += 1
            err = InvalidTransition(
                detail=f"{order.status.value} -> {target.value}",
                context={"order_id": order.id, "timestamp": pending.timestamp.isoformat()},
            )
            logger.warning("Rejected push update for order %s: %s", order.id, err)
            return ApplyOutcome.REJECTED

        verification = pending.payload.get("verificationStatus")
        if verification:
            update = {"verification_status": verification}
            update.update(state_machine.verification_side_effects(verification))
            updated = updated.model_copy(update=update)
        return updated.model_copy(update={"last_updated": max(pending.timestamp, updated.last_updated)})

    def _merge_payment(self, order: Order, pending: PendingUpdate) -> Order:
        data = pending.payload
        # order_payment_verified without an explicit result means verified
        verification = data.get("verificationStatus") or VERIFICATION_VERIFIED
        update: Dict[str, Any] = {
            "verification_status": verification,
            "payment_method": data.get("paymentMethod"),
            "transaction_id": data.get("transactionId"),
            "last_updated": pending.timestamp,
        }
        update.update(state_machine.verification_side_effects(verification))
        return order.model_copy(update=update)

    def _merge_delivery(self, order: Order, pending: PendingUpdate) -> Order:
        delivery = {field: pending.payload.get(field) for field in DELIVERY_FIELDS}
        return order.model_copy(update={"delivery": delivery, "last_updated": pending.timestamp})

    def _commit(self, order: Order, update_type: str, timestamp: datetime) -> None:
        self._orders[order.id] = order
        event = ChangeEvent(
            order_id=order.id,
            update_type=update_type,
            new_state=_detached(order),
            timestamp=timestamp,
        )
        self.feed.publish(event)
        self.stats.events_published += 1

    # ═══════════════════════════════════════════════════════════════════
    # Snapshots
    # ═══════════════════════════════════════════════════════════════════

    async def apply_snapshot(self, snapshot: Order) -> ApplyOutcome:
        """Insert or replace an order with a full fetched document.

        Replaces only when the snapshot is strictly newer than the held order.
        """
        snapshot = snapshot.model_copy(deep=True)
        async with self._lock:
            token = order_id_var.set(snapshot.id)
            try:
                outcome = self._apply_snapshot(snapshot)
                if outcome is ApplyOutcome.APPLIED or outcome is ApplyOutcome.UNCHANGED:
                    self._drain(snapshot.id)
            finally:
                order_id_var.reset(token)
        return outcome

    def _apply_snapshot(self, snapshot: Order) -> ApplyOutcome:
        existing = self._orders.get(snapshot.id)
        if existing is None:
            order = _with_consistent_history(snapshot, snapshot.last_updated)
            self._commit(order, CHANGE_SNAPSHOT, order.last_updated)
            self.stats.snapshots_applied += 1
            return ApplyOutcome.APPLIED

        if snapshot.last_updated <= existing.last_updated:
            self.stats.snapshots_stale += 1
            logger.debug(
                "Ignoring snapshot of order %s: %s is not newer than %s",
                snapshot.id, snapshot.last_updated.isoformat(), existing.last_updated.isoformat(),
            )
            return ApplyOutcome.STALE

        merged = _merge_snapshot(existing, snapshot)
        if merged.observable_state() == existing.observable_state():
            self._orders[merged.id] = merged
            return ApplyOutcome.UNCHANGED
        self._commit(merged, CHANGE_SNAPSHOT, merged.last_updated)
        self.stats.snapshots_applied += 1
        return ApplyOutcome.APPLIED

    # ═══════════════════════════════════════════════════════════════════
    # Commands
    # ═══════════════════════════════════════════════════════════════════

    async def request_transition(
        self,
        order_id: str,
        next_status: OrderStatus,
        note: Optional[str] = None,
        updated_by: Optional[str] = None,
    ) -> Order:
        """Validate and apply a locally requested status change.

        Raises OrderNotFound or InvalidTransition; state is untouched on error.
        """
        async with self._lock:
            order = self._require(order_id)
            at = max(utcnow(), order.last_updated)
            updated = state_machine.apply_transition(
                order, next_status, note, at=at, updated_by=updated_by
            )
            self._commit(updated, UpdateType.STATUS.value, at)
            self._drain(order.id)
            logger.info(
                "Order %s moved %s -> %s", order.id, order.status.value, updated.status.value
            )
            return _detached(self._orders[order.id])

    async def request_stage_advance(
        self,
        order_id: str,
        vendor_id: str,
        next_stage: FulfillmentStage,
    ) -> Order:
        """Record the next fulfillment stage for one vendor. Raises InvalidStage when out of order."""
        async with self._lock:
            order = self._require(order_id)
            at = max(utcnow(), order.last_updated)
            updated = state_machine.apply_stage_advance(order, vendor_id, next_stage, at=at)
            self._commit(updated, CHANGE_FULFILLMENT, at)
            self._drain(order.id)
            logger.info(
                "Order %s vendor %s reached stage %s",
                order.id, vendor_id, FulfillmentStage(next_stage).value,
            )
            return _detached(self._orders[order.id])

    def _require(self, order_id: str) -> Order:
        order = self._orders.get(str(order_id))
        if order is None:
            raise OrderNotFound(detail=f"order {order_id} is not held", context={"order_id": order_id})
        return order


def _detached(order: Order) -> Order:
    """Deep copy handed to callers and subscribers.

    Order is frozen but its dict fields are not; held instances never leave
    the Reconciler.
    """
    return order.model_copy(deep=True)


def _with_consistent_history(order: Order, at: datetime) -> Order:
    """Append a synthetic entry when the history is empty or its tail disagrees with ``status``."""
    history = order.status_history
    tail = history[-1] if history else None
    if tail is not None and tail.status == order.status:
        return order
    entry = StatusHistoryEntry(
        status=order.status,
        timestamp=max(at, tail.timestamp) if tail is not None else at,
        note="Recorded from order snapshot",
        previous_status=tail.status if tail is not None else None,
    )
    return order.model_copy(update={"status_history": history + (entry,)})


def _merge_snapshot(existing: Order, snapshot: Order) -> Order:
    """Snapshot fields win; local history is kept and only extended."""
    history = existing.status_history
    if history:
        tail_ts = history[-1].timestamp
        history = history + tuple(e for e in snapshot.status_history if e.timestamp > tail_ts)
    else:
        history = snapshot.status_history
    merged = snapshot.model_copy(update={"status_history": history})
    return _with_consistent_history(merged, snapshot.last_updated)
