"""
Sync Models
===========

Types that flow through the real-time sync path:

- PushMessage: raw frame from the push transport
- PendingUpdate: a parsed update awaiting reconciliation
- ChangeEvent: what subscribers receive after an applied change
- ConnectionState: the SyncEngine's connection snapshot
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from ordersync.models.order import Order, ensure_utc, utcnow


class UpdateType(str, Enum):
    STATUS = "status"
    PAYMENT = "payment"
    DELIVERY = "delivery"
    NEW_ORDER = "new_order"


# Push message type -> update type
MESSAGE_TYPES: Dict[str, UpdateType] = {
    "order_status_update": UpdateType.STATUS,
    "order_payment_verified": UpdateType.PAYMENT,
    "order_delivery_update": UpdateType.DELIVERY,
    "order_created": UpdateType.NEW_ORDER,
}

# Change events also report changes that did not come from a push update
CHANGE_SNAPSHOT = "snapshot"
CHANGE_FULFILLMENT = "fulfillment"


class ApplyOutcome(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"    # accepted, but the order already looked like that
    DUPLICATE = "duplicate"    # same or older than the last processed update for the key
    STALE = "stale"            # older than the order's last_updated
    REJECTED = "rejected"      # illegal transition, never applied
    DEFERRED = "deferred"      # parked in the pending queue


class PushMessage(BaseModel):
    """``{type, orderId, data, timestamp, sequence?}`` as sent by the backend."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    type: str
    order_id: str
    data: Dict[str, Any] = Field(default_factory=dict)
    timestamp: Optional[datetime] = None
    sequence: Optional[int] = None

    @field_validator("order_id", mode="before")
    @classmethod
    def _str_id(cls, v: Any) -> Any:
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @field_validator("order_id")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("orderId must not be empty")
        return v

    @field_validator("data", mode="before")
    @classmethod
    def _data_default(cls, v: Any) -> Any:
        return {} if v is None else v

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v) if v is not None else None


class PendingUpdate(BaseModel):
    """An update received for an order, owned by the Reconciler until processed."""

    order_id: str
    update_type: UpdateType
    payload: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime
    sequence: Optional[int] = None
    processed: bool = False
    received_at: datetime = Field(default_factory=utcnow)

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @property
    def key(self) -> Tuple[str, UpdateType]:
        return (self.order_id, self.update_type)

    @property
    def ordering_key(self) -> Tuple[datetime, int]:
        """Server timestamp first; the optional sequence number breaks ties."""
        return (self.timestamp, self.sequence or 0)


class ChangeEvent(BaseModel):
    """Published once per applied change whose observable state differs."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    order_id: str
    update_type: str
    new_state: Order
    timestamp: datetime

    def to_wire(self) -> Dict[str, Any]:
        return {
            "orderId": self.order_id,
            "updateType": self.update_type,
            "newState": self.new_state.to_wire(),
            "timestamp": self.timestamp.isoformat(),
        }


class ConnectionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    ERROR = "error"


@dataclass(frozen=True)
class ConnectionState:
    status: ConnectionStatus = ConnectionStatus.DISCONNECTED
    retry_count: int = 0
    last_error: Optional[str] = None
    last_sync_time: Optional[datetime] = None
    retries_exhausted: bool = False

    @property
    def indicator(self) -> str:
        """User-visible reading: connected / connecting / degraded / disconnected."""
        if self.status == ConnectionStatus.CONNECTED:
            return "connected"
        if self.status == ConnectionStatus.CONNECTING:
            return "connecting"
        if self.status == ConnectionStatus.ERROR:
            # A retry is scheduled unless the budget is spent
            return "degraded" if self.retries_exhausted else "connecting"
        return "disconnected"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "indicator": self.indicator,
            "retry_count": self.retry_count,
            "last_error": self.last_error,
            "last_sync_time": self.last_sync_time.isoformat() if self.last_sync_time else None,
            "retries_exhausted": self.retries_exhausted,
        }
