"""
Canteen Core — Order schemas

Snapshot models are what the ``orders.items`` / ``orders.meta`` JSON columns
hold; they are dumped with ``mode="json"`` so Decimals survive as strings.
"""
from datetime import datetime
from decimal import Decimal
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from canteen.models.order import OrderStatus


# ─── Stored snapshots ─────────────────────────────────────────────────────────

class OrderLine(BaseModel):
    product_id: str
    name: str
    price: Decimal
    qty: int
    notes: str = ""
    category: str | None = None
    allergens: list[str] = []
    prepared_count: int = 0

    @property
    def subtotal(self) -> Decimal:
        return self.price * self.qty


class InventoryChange(BaseModel):
    """One conditional decrement applied on behalf of an order (provenance)."""
    inventory_id: str
    product_id: str
    qty_taken: int
    before: int
    after: int


class RestoredInventory(BaseModel):
    inventory_id: str | None
    product_id: str
    qty_restored: int
    ok: bool
    heuristic: bool = False


class AutoPreparedItem(BaseModel):
    product_id: str
    name: str
    qty: int


# ─── Requests ─────────────────────────────────────────────────────────────────

class OrderItemRequest(BaseModel):
    """One requested line as the placement engine takes it; quantity is checked there."""
    product_id: str
    qty: int = 1
    notes: str = ""


class OrderItemIn(OrderItemRequest):
    """HTTP form of a line, with per-request limits."""
    product_id: str = Field(..., examples=["3f1c2d..."])
    qty: int = Field(1, ge=1, le=50)
    notes: str = Field("", max_length=500)


class PlaceOrderRequest(BaseModel):
    items: list[OrderItemIn] = Field(..., min_length=1, max_length=50)
    prep_station_id: str | None = None
    ordering_window_id: str | None = None


class ExternalOrderRequest(BaseModel):
    items: list[OrderItemIn] = Field(..., min_length=1, max_length=50)
    prep_station_id: str | None = None
    ordering_window_id: str | None = None
    issued_to_name: str | None = Field(None, max_length=255)
    expires_in_minutes: int | None = Field(None, ge=0)
    note: str = ""


class CollectRequest(BaseModel):
    order_id: str | None = None
    code: str | None = None
    reg_number: str | None = None

    @model_validator(mode="after")
    def _one_reference(self):
        if not self.order_id and not self.code:
            raise ValueError("order_id or code is required")
        return self


class CancelRequest(BaseModel):
    order_id: str | None = None
    code: str | None = None
    reason: str = Field("", max_length=500)

    @model_validator(mode="after")
    def _one_reference(self):
        if not self.order_id and not self.code:
            raise ValueError("order_id or code is required")
        return self


class PrepareRequest(BaseModel):
    product_name: str = Field(..., min_length=1, max_length=255)
    action: Literal["prepare", "unprepare"] = "prepare"


# ─── Responses ────────────────────────────────────────────────────────────────

class OrderOut(BaseModel):
    id: str
    code: str
    user_id: str | None
    reg_number: str | None
    items: list[OrderLine]
    total: Decimal
    status: OrderStatus
    external: bool
    prep_by_id: str | None = None
    expires_at: datetime | None = None
    collected_at: datetime | None = None
    meta: dict = {}

    model_config = {"from_attributes": True}


class ExternalCodeOut(BaseModel):
    id: str
    code: str
    order_id: str | None
    issued_to_name: str | None
    issued_by_id: str | None
    expires_at: datetime | None
    used: bool

    model_config = {"from_attributes": True}
