"""
Error code system.

OrderSyncError is the base exception for all structured errors. Each
subclass carries a default code from the registry, so callers can raise
``InvalidTransition(detail=...)`` without repeating the code, and the error
middleware will produce a structured JSON response.

Usage:
    from ordersync.core.errors import InvalidTransition
    raise InvalidTransition(detail="delivered -> pending", context={"order_id": "42"})
"""

from __future__ import annotations

import re

CODE_PATTERN = re.compile(r"^OSY-[A-Z]{2,6}-\d{3}$")


class OrderSyncError(Exception):
    """Structured application error tied to the error registry.

    Args:
        code: Registry error code, e.g. "OSY-SM-001".
        detail: Internal-only detail message (never exposed to users).
        context: Arbitrary key-value context for structured logging.
    """

    default_code = "OSY-SYS-001"

    def __init__(
        self,
        code: str | None = None,
        detail: str | None = None,
        context: dict | None = None,
    ) -> None:
        code = code or self.default_code
        if not CODE_PATTERN.match(code):
            raise ValueError(f"Invalid error code format: {code!r}")
        self.code = code
        self.detail = detail
        self.context = context or {}
        super().__init__(f"{code}: {detail}" if detail else code)


class InvalidTransition(OrderSyncError):
    """An order-status change that is not an edge of the status graph."""

    default_code = "OSY-SM-001"

    def __init__(self, detail: str | None = None, context: dict | None = None) -> None:
        super().__init__(detail=detail, context=context)


class InvalidStage(OrderSyncError):
    """A fulfillment stage attempted out of order."""

    default_code = "OSY-SM-002"

    def __init__(self, detail: str | None = None, context: dict | None = None) -> None:
        super().__init__(detail=detail, context=context)


class OrderNotFound(OrderSyncError):
    default_code = "OSY-API-001"

    def __init__(self, detail: str | None = None, context: dict | None = None) -> None:
        super().__init__(detail=detail, context=context)


class StaleUpdate(OrderSyncError):
    """Superseded by a later state. Counted for diagnostics, never raised to users."""

    default_code = "OSY-SYNC-001"

    def __init__(self, detail: str | None = None, context: dict | None = None) -> None:
        super().__init__(detail=detail, context=context)


class MalformedMessage(OrderSyncError):
    """Unparseable push payload. Dropped and logged."""

    default_code = "OSY-SYNC-002"

    def __init__(self, detail: str | None = None, context: dict | None = None) -> None:
        super().__init__(detail=detail, context=context)


class TransportError(OrderSyncError):
    """Push connection failure. Retried per the reconnect policy."""

    default_code = "OSY-NET-001"

    def __init__(self, detail: str | None = None, context: dict | None = None) -> None:
        super().__init__(detail=detail, context=context)


class FetchError(OrderSyncError):
    """Snapshot fetch failed. The next poll tick retries."""

    default_code = "OSY-NET-002"

    def __init__(self, detail: str | None = None, context: dict | None = None) -> None:
        super().__init__(detail=detail, context=context)
