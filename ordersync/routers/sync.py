"""
Sync status endpoints.

- GET  /api/v1/sync/status     — connection indicator with label and description
- POST /api/v1/sync/reconnect  — manual retry (resets the retry budget)
- GET  /api/v1/sync/pending    — updates parked in the reconciler queue
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query

from ordersync.models.sync import ConnectionState
from ordersync.routers.deps import get_runtime
from ordersync.services.runtime import OrderSyncRuntime

logger = logging.getLogger(__name__)

router = APIRouter()

# indicator -> (label, description)
INDICATOR_DISPLAY = {
    "connected": ("Live", "Real-time sync active"),
    "connecting": ("Connecting", "Establishing connection"),
    "degraded": ("Offline", "Connection failed; orders refresh by polling"),
    "disconnected": ("Disconnected", "No connection"),
}


def describe_state(state: ConnectionState) -> dict:
    label, description = INDICATOR_DISPLAY[state.indicator]
    return {
        "indicator": state.indicator,
        "label": label,
        "description": description,
        "connection": state.to_dict(),
    }


@router.get("/status")
async def sync_status(runtime: OrderSyncRuntime = Depends(get_runtime)):
    result = describe_state(runtime.engine.state)
    result["push_enabled"] = runtime.push_enabled
    result["poll"] = {
        "enabled": runtime.poll_enabled,
        "running": runtime.poller.running,
        "watched": sorted(runtime.poller.watched),
        "stats": runtime.poller.stats.to_dict(),
    }
    result["engine_stats"] = runtime.engine.stats.to_dict()
    result["reconciler_stats"] = runtime.reconciler.stats.to_dict()
    return result


@router.post("/reconnect")
async def reconnect(runtime: OrderSyncRuntime = Depends(get_runtime)):
    logger.info("Manual reconnect requested")
    await runtime.engine.reconnect()
    return describe_state(runtime.engine.state)


@router.get("/pending")
async def pending_updates(
    order_id: Optional[str] = Query(None),
    runtime: OrderSyncRuntime = Depends(get_runtime),
):
    pending = runtime.reconciler.pending_updates(order_id)
    return {
        "pending": [p.model_dump(mode="json") for p in pending],
        "count": len(pending),
    }
