"""
Shared router dependencies.
"""

from fastapi import Request

from ordersync.services.runtime import OrderSyncRuntime


def get_runtime(request: Request) -> OrderSyncRuntime:
    """The runtime built at startup (see ordersync.main.lifespan)."""
    return request.app.state.runtime
