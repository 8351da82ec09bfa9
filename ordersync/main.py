from contextlib import asynccontextmanager
from typing import Optional
import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ordersync.config import settings
from ordersync.core.errors import OrderSyncError
from ordersync.core.errors.middleware import ordersync_error_handler
from ordersync.core.errors.registry import error_registry
from ordersync.core.structured_logging import APP_VERSION, setup_logging
from ordersync.routers import changes, health, orders, sync
from ordersync.services.runtime import OrderSyncRuntime

logger = logging.getLogger(__name__)

# API metadata
API_TITLE = "ordersync API"
API_VERSION = APP_VERSION

API_DESCRIPTION = """
## ordersync - Real-time Order Sync

Keeps the local view of orders consistent with the backend by merging a
push update stream with periodic polling.

### Endpoints
- Orders: read the reconciled order view, request status transitions and
  fulfillment stage advances
- Sync: connection indicator, manual reconnect, pending updates
- `/ws/changes`: live change-event stream
"""

TAGS_METADATA = [
    {
        "name": "health",
        "description": "Liveness check. No authentication required.",
    },
    {
        "name": "orders",
        "description": "Reconciled order view and the order command API.",
    },
    {
        "name": "sync",
        "description": "Push connection state and sync diagnostics.",
    },
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown events."""
    # Startup
    setup_logging(
        log_dir=settings.log_dir,
        log_file=settings.log_file,
        log_level=settings.log_level.upper(),
    )
    error_registry.load()
    logger.info("Starting %s v%s", API_TITLE, API_VERSION)

    runtime: Optional[OrderSyncRuntime] = getattr(app.state, "runtime", None)
    if runtime is None:
        runtime = OrderSyncRuntime.from_settings(settings)
        app.state.runtime = runtime
    await runtime.start()

    yield

    # Shutdown
    logger.info("Shutting down %s", API_TITLE)
    await runtime.stop()


def create_app(runtime: Optional[OrderSyncRuntime] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    ``runtime`` replaces the one built from settings (tests pass one wired to
    an in-memory channel).
    """
    app = FastAPI(
        title=API_TITLE,
        description=API_DESCRIPTION,
        version=API_VERSION,
        openapi_tags=TAGS_METADATA,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )
    if runtime is not None:
        app.state.runtime = runtime

    # Structured error handler for OrderSyncError
    app.add_exception_handler(OrderSyncError, ordersync_error_handler)

    # Catch-all handler so unhandled exceptions return JSON (not bare text)
    @app.exception_handler(Exception)
    async def _unhandled_exception_handler(request: Request, exc: Exception):
        logger.error("Unhandled exception on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal Server Error"},
        )

    app.include_router(health.router, prefix="/api", tags=["health"])
    app.include_router(orders.router, prefix="/api/v1/orders", tags=["orders"])
    app.include_router(sync.router, prefix="/api/v1/sync", tags=["sync"])
    app.include_router(changes.router)  # WebSocket at /ws/changes (no prefix)

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("ordersync.main:app", host="0.0.0.0", port=8000, reload=settings.debug)
