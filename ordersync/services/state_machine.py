"""
Order State Machine
===================

Stateless validator for order-status and fulfillment-stage changes.

STATUS GRAPH (no back-edges except to cancelled):
    pending   → confirmed | cancelled
    confirmed → packed    | cancelled
    packed    → shipped   | cancelled
    shipped   → delivered | cancelled
    delivered → (terminal)
    cancelled → (terminal)

FULFILLMENT STAGES (per vendor, strictly forward, no skipping):
    availability_confirmed → packed → payment_processed → admin_paid → handed_over

Side effects are declared in tables below rather than coded per transition.
Functions return new Order instances; nothing here mutates its input.
"""

from __future__ import annotations

from datetime import datetime
from typing import Dict, FrozenSet, Optional

from ordersync.core.errors import InvalidStage, InvalidTransition
from ordersync.models.order import (
    FULFILLMENT_STAGES,
    PAYMENT_PAID,
    PAYMENT_PENDING_VERIFICATION,
    PAYMENT_REFUNDED,
    PAYMENT_VERIFICATION_FAILED,
    VERIFICATION_PENDING,
    VERIFICATION_REJECTED,
    VERIFICATION_VERIFIED,
    FulfillmentRecord,
    FulfillmentStage,
    Order,
    OrderStatus,
    StatusHistoryEntry,
    utcnow,
)

ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PACKED, OrderStatus.CANCELLED}),
    OrderStatus.PACKED: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

# Fields set on the order when it enters a status
STATUS_SIDE_EFFECTS: Dict[OrderStatus, Dict[str, str]] = {
    OrderStatus.DELIVERED: {"payment_status": PAYMENT_PAID},
    OrderStatus.CANCELLED: {"payment_status": PAYMENT_REFUNDED},
}

# Fields set on the order when a payment verification result arrives
VERIFICATION_SIDE_EFFECTS: Dict[str, Dict[str, str]] = {
    VERIFICATION_PENDING: {"payment_status": PAYMENT_PENDING_VERIFICATION},
    VERIFICATION_VERIFIED: {"payment_status": PAYMENT_PAID},
    VERIFICATION_REJECTED: {"payment_status": PAYMENT_VERIFICATION_FAILED},
}

# Order status a fulfillment stage implies, applied only when it is a legal move
STAGE_STATUS_MAP: Dict[FulfillmentStage, OrderStatus] = {
    FulfillmentStage.AVAILABILITY_CONFIRMED: OrderStatus.CONFIRMED,
    FulfillmentStage.PACKED: OrderStatus.PACKED,
    FulfillmentStage.HANDED_OVER: OrderStatus.SHIPPED,
}


def allowed_transitions(current: OrderStatus) -> FrozenSet[OrderStatus]:
    return ORDER_TRANSITIONS.get(OrderStatus(current), frozenset())


def can_transition(current: OrderStatus, next_status: OrderStatus) -> bool:
    return OrderStatus(next_status) in allowed_transitions(current)


def is_terminal(status: OrderStatus) -> bool:
    return not allowed_transitions(status)


def is_reachable(current: OrderStatus, target: OrderStatus) -> bool:
    """True when ``target`` can be reached from ``current`` by one or more legal moves."""
    target = OrderStatus(target)
    seen = set()
    frontier = list(allowed_transitions(current))
    while frontier:
        status = frontier.pop()
        if status == target:
            return True
        if status in seen:
            continue
        seen.add(status)
        frontier.extend(allowed_transitions(status))
    return False


def apply_transition(
    order: Order,
    next_status: OrderStatus,
    note: Optional[str] = None,
    *,
    at: Optional[datetime] = None,
    updated_by: Optional[str] = None,
) -> Order:
    """Return ``order`` moved to ``next_status`` with one new history entry.

    Raises InvalidTransition when the edge is not in the graph.
    """
    next_status = OrderStatus(next_status)
    if not can_transition(order.status, next_status):
        raise InvalidTransition(
            detail=f"{order.status.value} -> {next_status.value}",
            context={
                "order_id": order.id,
                "allowed": sorted(s.value for s in allowed_transitions(order.status)),
            },
        )

    at = at or utcnow()
    # History stays in timestamp order even if the caller's clock lags
    if order.status_history and at < order.status_history[-1].timestamp:
        at = order.status_history[-1].timestamp

    entry = StatusHistoryEntry(
        status=next_status,
        timestamp=at,
        note=note,
        previous_status=order.status,
        updated_by=updated_by,
    )
    update = {
        "status": next_status,
        "status_history": order.status_history + (entry,),
        "last_updated": max(at, order.last_updated),
    }
    update.update(STATUS_SIDE_EFFECTS.get(next_status, {}))
    return order.model_copy(update=update)


def verification_side_effects(verification_status: Optional[str]) -> Dict[str, str]:
    if not verification_status:
        return {}
    return dict(VERIFICATION_SIDE_EFFECTS.get(verification_status, {}))


# ---------------------------------------------------------------------------
# Fulfillment stages
# ---------------------------------------------------------------------------

def next_stage(current: Optional[FulfillmentStage]) -> Optional[FulfillmentStage]:
    """The only stage that may follow ``current`` (None after handed_over)."""
    if current is None:
        return FULFILLMENT_STAGES[0]
    idx = FULFILLMENT_STAGES.index(FulfillmentStage(current))
    if idx + 1 >= len(FULFILLMENT_STAGES):
        return None
    return FULFILLMENT_STAGES[idx + 1]


def can_advance_stage(current: Optional[FulfillmentStage], target: FulfillmentStage) -> bool:
    expected = next_stage(current)
    return expected is not None and FulfillmentStage(target) == expected


def apply_stage_advance(
    order: Order,
    vendor_id: str,
    target: FulfillmentStage,
    *,
    at: Optional[datetime] = None,
) -> Order:
    """Record ``target`` for the vendor's share of ``order``.

    Raises InvalidStage when ``target`` is not the stage right after the
    vendor's current one. When the stage implies an order status that is a
    legal move from the current status, the order status follows.
    """
    target = FulfillmentStage(target)
    vendor_id = str(vendor_id)
    record = order.fulfillment.get(vendor_id) or FulfillmentRecord(vendor_id=vendor_id)

    if not can_advance_stage(record.stage, target):
        expected = next_stage(record.stage)
        raise InvalidStage(
            detail=(
                f"{record.stage.value if record.stage else 'none'} -> {target.value}"
                f" (expected {expected.value if expected else 'nothing, already handed over'})"
            ),
            context={"order_id": order.id, "vendor_id": vendor_id},
        )

    at = at or utcnow()
    new_record = record.model_copy(update={
        "stage": target,
        "stage_timestamps": {**record.stage_timestamps, target: at},
    })
    updated = order.model_copy(update={
        "fulfillment": {**order.fulfillment, vendor_id: new_record},
        "last_updated": max(at, order.last_updated),
    })

    implied = STAGE_STATUS_MAP.get(target)
    if implied is not None and can_transition(updated.status, implied):
        updated = apply_transition(
            updated,
            implied,
            note=f"Fulfillment stage {target.value} recorded by vendor {vendor_id}",
            at=at,
            updated_by=f"vendor:{vendor_id}",
        )
    return updated
