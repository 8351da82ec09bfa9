"""
Order Client — HTTP client for the backend order fetch API.
===========================================================

Wraps GET /orders/{id} and GET /orders. Used by PollFallback and by the
on-demand order detail load.

No retry loop here: a failed fetch raises FetchError and the poll timer
already rate-limits the next attempt.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

import httpx
from pydantic import ValidationError

from ordersync.config import Settings
from ordersync.core.errors import FetchError
from ordersync.models.order import Order, OrderStatus

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 10.0


@dataclass(frozen=True)
class OrderFilter:
    """Query for fetch_all_orders. Unset fields are not sent."""
    status: Optional[OrderStatus] = None
    vendor_id: Optional[str] = None
    customer_id: Optional[str] = None
    updated_since: Optional[datetime] = None

    def to_params(self) -> Dict[str, str]:
        params: Dict[str, str] = {}
        if self.status is not None:
            params["status"] = OrderStatus(self.status).value
        if self.vendor_id is not None:
            params["vendorId"] = str(self.vendor_id)
        if self.customer_id is not None:
            params["customerId"] = str(self.customer_id)
        if self.updated_since is not None:
            params["updatedSince"] = self.updated_since.isoformat()
        return params


class OrderApiClient:
    """Async HTTP client for the order fetch API."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._headers = {"X-API-Key": api_key} if api_key else {}
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None

    @classmethod
    def from_settings(cls, settings: Settings) -> "OrderApiClient":
        return cls(
            settings.api_base_url,
            api_key=settings.api_key,
            timeout=settings.fetch_timeout_s,
        )

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _get(self, path: str, params: Optional[Dict[str, str]] = None) -> Any:
        url = f"{self._base_url}{path}"
        try:
            resp = await self._get_client().get(url, params=params, headers=self._headers)
        except httpx.HTTPError as e:
            raise FetchError(
                detail=f"GET {path}: {type(e).__name__}: {e}", context={"url": url}
            ) from e

        if resp.status_code != 200:
            raise FetchError(
                detail=f"GET {path}: HTTP {resp.status_code}",
                context={"url": url, "status_code": resp.status_code},
            )
        try:
            return resp.json()
        except ValueError as e:
            raise FetchError(detail=f"GET {path}: body is not JSON", context={"url": url}) from e

    async def fetch_order(self, order_id: str) -> Order:
        """GET /orders/{id}"""
        data = await self._get(f"/orders/{order_id}")
        # Some deployments wrap the document as {"order": {...}}
        if isinstance(data, dict) and isinstance(data.get("order"), dict):
            data = data["order"]
        try:
            return Order.model_validate(data)
        except ValidationError as e:
            raise FetchError(
                detail=f"GET /orders/{order_id}: invalid order document",
                context={"order_id": order_id, "errors": e.error_count()},
            ) from e

    async def fetch_all_orders(self, filter: Optional[OrderFilter] = None) -> List[Order]:
        """GET /orders — body is a list, or {"orders": [...]}."""
        data = await self._get("/orders", params=filter.to_params() if filter else None)
        if isinstance(data, dict):
            data = data.get("orders")
        if not isinstance(data, list):
            raise FetchError(detail="GET /orders: expected a list of orders")

        orders: List[Order] = []
        for doc in data:
            try:
                orders.append(Order.model_validate(doc))
            except ValidationError as e:
                doc_id = doc.get("id") if isinstance(doc, dict) else None
                logger.warning("Skipping invalid order document %s: %d errors", doc_id, e.error_count())
        return orders
