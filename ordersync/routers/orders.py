"""
Order view and command API.

- GET  /api/v1/orders                                    — reconciled orders held locally
- GET  /api/v1/orders/{order_id}                         — one order, loaded on demand when not held
- POST /api/v1/orders/{order_id}/transitions             — request a status change
- POST /api/v1/orders/{order_id}/vendors/{vendor_id}/stage — record the next fulfillment stage
- DELETE /api/v1/orders/{order_id}/watch                 — stop polling an order individually

Commands are validated by the state machine before any state changes, then
forwarded to the backend over the push channel when it is connected.
"""

import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from ordersync.core.errors import FetchError, OrderNotFound, TransportError
from ordersync.models.order import FulfillmentStage, Order, OrderStatus, utcnow
from ordersync.models.sync import ConnectionStatus
from ordersync.routers.deps import get_runtime
from ordersync.services.runtime import OrderSyncRuntime

logger = logging.getLogger(__name__)

router = APIRouter()


class TransitionRequest(BaseModel):
    status: OrderStatus
    note: Optional[str] = Field(default=None, max_length=500)
    updated_by: Optional[str] = Field(default=None, max_length=100)


class StageRequest(BaseModel):
    stage: FulfillmentStage


@router.get("")
async def list_orders(
    status: Optional[OrderStatus] = Query(None, description="Only orders in this status"),
    runtime: OrderSyncRuntime = Depends(get_runtime),
):
    orders = runtime.reconciler.orders()
    if status is not None:
        orders = [o for o in orders if o.status == status]
    orders.sort(key=lambda o: o.last_updated, reverse=True)
    return {"orders": [o.to_wire() for o in orders], "count": len(orders)}


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    watch: bool = Query(False, description="Keep polling this order individually"),
    runtime: OrderSyncRuntime = Depends(get_runtime),
):
    order = runtime.reconciler.get(order_id)
    if order is None:
        try:
            order = await runtime.poller.refresh(order_id)
        except FetchError as e:
            if e.context.get("status_code") == 404:
                raise OrderNotFound(detail=f"order {order_id} not found", context={"order_id": order_id})
            raise
        if order is None:
            raise OrderNotFound(detail=f"order {order_id} not found", context={"order_id": order_id})
    if watch:
        runtime.poller.watch(order_id)
    return order.to_wire()


@router.delete("/{order_id}/watch")
async def unwatch_order(order_id: str, runtime: OrderSyncRuntime = Depends(get_runtime)):
    runtime.poller.unwatch(order_id)
    return {"order_id": order_id, "watched": False}


@router.post("/{order_id}/transitions")
async def request_transition(
    order_id: str,
    body: TransitionRequest,
    runtime: OrderSyncRuntime = Depends(get_runtime),
):
    order = await runtime.reconciler.request_transition(
        order_id, body.status, note=body.note, updated_by=body.updated_by
    )
    forwarded = await _forward(runtime, {
        "type": "order_status_update",
        "orderId": order.id,
        "data": {"status": body.status.value, "note": body.note, "updatedBy": body.updated_by},
        "timestamp": order.last_updated.isoformat(),
    })
    return _command_response(order, forwarded)


@router.post("/{order_id}/vendors/{vendor_id}/stage")
async def request_stage_advance(
    order_id: str,
    vendor_id: str,
    body: StageRequest,
    runtime: OrderSyncRuntime = Depends(get_runtime),
):
    order = await runtime.reconciler.request_stage_advance(order_id, vendor_id, body.stage)
    forwarded = await _forward(runtime, {
        "type": "fulfillment_stage_update",
        "orderId": order.id,
        "data": {"vendorId": vendor_id, "stage": body.stage.value},
        "timestamp": order.last_updated.isoformat(),
    })
    return _command_response(order, forwarded)


async def _forward(runtime: OrderSyncRuntime, message: Dict[str, Any]) -> bool:
    """Send an accepted command upstream. The local change stands either way."""
    if runtime.engine.state.status != ConnectionStatus.CONNECTED:
        return False
    try:
        await runtime.engine.send(message)
    except TransportError as e:
        logger.warning("Could not forward %s for order %s: %s", message["type"], message["orderId"], e)
        return False
    return True


def _command_response(order: Order, forwarded: bool) -> Dict[str, Any]:
    return {"order": order.to_wire(), "forwarded": forwarded, "accepted_at": utcnow().isoformat()}
