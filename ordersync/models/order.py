"""
Order Models
============

Pydantic models for the authoritative per-order record held by the
Reconciler and for the documents returned by the order fetch API.

The backend speaks camelCase JSON; attributes are snake_case with camelCase
aliases. Every model here is frozen: a change produces a new instance via
``model_copy(update=...)`` so subscribers can never mutate held state.

Business fields the sync core does not interpret (items, totals,
addresses, ...) are collected into ``payload`` and carried unchanged.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class OrderStatus(str, Enum):
    """Customer-facing order lifecycle (closed set)."""
    PENDING = "pending"
    CONFIRMED = "confirmed"
    PACKED = "packed"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class FulfillmentStage(str, Enum):
    """Vendor-side fulfillment sub-lifecycle, strictly linear in this order."""
    AVAILABILITY_CONFIRMED = "availability_confirmed"
    PACKED = "packed"
    PAYMENT_PROCESSED = "payment_processed"
    ADMIN_PAID = "admin_paid"
    HANDED_OVER = "handed_over"


FULFILLMENT_STAGES: Tuple[FulfillmentStage, ...] = tuple(FulfillmentStage)

# Payment / verification vocabularies are open: values the backend adds later
# are carried through rather than rejected.
PAYMENT_PENDING = "pending"
PAYMENT_PENDING_VERIFICATION = "pending_verification"
PAYMENT_PAID = "paid"
PAYMENT_REFUNDED = "refunded"
PAYMENT_VERIFICATION_FAILED = "verification_failed"

VERIFICATION_PENDING = "pending"
VERIFICATION_VERIFIED = "verified"
VERIFICATION_REJECTED = "rejected"

# Fields of an order_delivery_update; a delivery update replaces all of them.
DELIVERY_FIELDS = (
    "deliveryStatus",
    "deliveryPersonId",
    "estimatedDelivery",
    "actualDelivery",
    "location",
)


class _WireModel(BaseModel):
    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )


class StatusHistoryEntry(_WireModel):
    """One accepted status transition. Never mutated after creation."""

    status: OrderStatus
    timestamp: datetime
    note: Optional[str] = Field(default=None, validation_alias=AliasChoices("note", "notes"))
    previous_status: Optional[OrderStatus] = None
    updated_by: Optional[str] = None

    @field_validator("timestamp")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)


class FulfillmentRecord(_WireModel):
    """Fulfillment progress of one vendor's share of an order."""

    vendor_id: str
    stage: Optional[FulfillmentStage] = None
    stage_timestamps: Dict[FulfillmentStage, datetime] = Field(default_factory=dict)

    @field_validator("vendor_id", mode="before")
    @classmethod
    def _str_id(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v


class Order(_WireModel):
    """Authoritative client-side view of one order.

    Invariant (maintained by the state machine and reconciler): ``status``
    equals the status of the last ``status_history`` entry, and the history
    is append-only in timestamp order.
    """

    id: str
    status: OrderStatus = OrderStatus.PENDING
    payment_status: str = PAYMENT_PENDING
    verification_status: str = VERIFICATION_PENDING
    payment_method: Optional[str] = None
    transaction_id: Optional[str] = None
    status_history: Tuple[StatusHistoryEntry, ...] = ()
    fulfillment: Dict[str, FulfillmentRecord] = Field(default_factory=dict)
    delivery: Dict[str, Any] = Field(default_factory=dict)
    last_updated: datetime = Field(
        validation_alias=AliasChoices("lastUpdated", "last_updated", "updatedAt"),
    )
    payload: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _collect_payload(cls, data: Any) -> Any:
        """Move every field the core does not interpret into ``payload``."""
        if not isinstance(data, dict):
            return data
        known = _known_keys(cls)
        payload = dict(data.get("payload") or {})
        out: Dict[str, Any] = {}
        for key, value in data.items():
            if key == "payload":
                continue
            if key in known:
                out[key] = value
            else:
                payload[key] = value
        out["payload"] = payload
        return out

    @field_validator("id", mode="before")
    @classmethod
    def _str_id(cls, v: Any) -> Any:
        return str(v) if isinstance(v, int) else v

    @field_validator("last_updated")
    @classmethod
    def _utc(cls, v: datetime) -> datetime:
        return ensure_utc(v)

    @property
    def fulfillment_stage(self) -> Optional[FulfillmentStage]:
        """Least advanced stage across vendors (None until any vendor records one)."""
        stages = [r.stage for r in self.fulfillment.values() if r.stage is not None]
        if not stages:
            return None
        return min(stages, key=FULFILLMENT_STAGES.index)

    def observable_state(self) -> Dict[str, Any]:
        """Everything a subscriber can see, minus the bookkeeping timestamp."""
        return self.model_dump(exclude={"last_updated"})

    def to_wire(self) -> Dict[str, Any]:
        data = self.model_dump(by_alias=True, mode="json")
        data["fulfillmentStage"] = self.fulfillment_stage.value if self.fulfillment_stage else None
        return data


def _known_keys(model: type) -> set:
    keys = set()
    for name, info in model.model_fields.items():
        keys.add(name)
        if info.alias:
            keys.add(info.alias)
        va = info.validation_alias
        if isinstance(va, AliasChoices):
            keys.update(c for c in va.choices if isinstance(c, str))
        elif isinstance(va, str):
            keys.add(va)
    # Derived on output, never read back
    keys.add("fulfillmentStage")
    return keys
