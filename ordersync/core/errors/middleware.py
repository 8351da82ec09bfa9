"""
FastAPI exception handler for OrderSyncError.

Catches OrderSyncError, looks up the registry, and returns a structured
JSON error response. Unknown codes get a safe fallback.
"""

import logging

from fastapi import Request
from fastapi.responses import JSONResponse

from ordersync.core.errors import OrderSyncError
from ordersync.core.errors.registry import error_registry

logger = logging.getLogger(__name__)


async def ordersync_error_handler(request: Request, exc: OrderSyncError) -> JSONResponse:
    """Convert OrderSyncError into a structured JSON response."""
    entry = error_registry.get(exc.code)

    if entry is None:
        logger.error("Unregistered error code %s: %s", exc.code, exc.detail)
        return JSONResponse(
            status_code=500,
            content={
                "error": {
                    "code": exc.code,
                    "title": "Internal error",
                    "message": "An unexpected error occurred.",
                    "retryable": False,
                    "remediation": [],
                }
            },
        )

    log_fn = _severity_to_log_fn(entry.severity)
    log_fn(
        "%s [%s] %s %s",
        entry.title, exc.code, exc.detail or "", exc.context or "",
    )

    return JSONResponse(
        status_code=entry.http_status,
        content={
            "error": {
                "code": entry.code,
                "title": entry.title,
                "message": entry.safe_message,
                "retryable": entry.retryable,
                "remediation": entry.remediation,
            }
        },
    )


def _severity_to_log_fn(severity: str):
    """Map registry severity to logger method."""
    return {
        "DEBUG": logger.debug,
        "INFO": logger.info,
        "WARN": logger.warning,
        "ERROR": logger.error,
        "CRITICAL": logger.critical,
    }.get(severity, logger.error)
