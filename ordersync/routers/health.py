"""
Health check endpoint.

GET /api/health — liveness plus a one-word sync indicator. No auth.
"""

from fastapi import APIRouter, Depends

from ordersync.core.structured_logging import APP_VERSION, SERVICE_NAME
from ordersync.routers.deps import get_runtime
from ordersync.services.runtime import OrderSyncRuntime

router = APIRouter()


@router.get("/health")
async def health_check(runtime: OrderSyncRuntime = Depends(get_runtime)):
    # Degraded push is not unhealthy: polling keeps the view correct
    return {
        "status": "ok",
        "service": SERVICE_NAME,
        "version": APP_VERSION,
        "sync": runtime.engine.state.indicator,
        "orders_held": len(runtime.reconciler.orders()),
    }
