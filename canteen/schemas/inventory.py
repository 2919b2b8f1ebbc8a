"""
Canteen Core — Inventory schemas
"""
from decimal import Decimal

from pydantic import BaseModel, Field


class InventoryUpsertRequest(BaseModel):
    product_id: str
    location: str = Field("Main", min_length=1, max_length=100)
    quantity: int = Field(..., ge=0)
    low_stock_threshold: int = Field(0, ge=0)
    active: bool = True


class InventoryOut(BaseModel):
    id: str
    product_id: str
    location: str
    quantity: int
    active: bool
    low_stock_threshold: int
    meta: dict = {}

    model_config = {"from_attributes": True}


class ProductStockOut(BaseModel):
    id: str
    name: str
    sku: str | None
    category: str | None
    price: Decimal
    available: bool
    total_inventory: int


class StockTotalOut(BaseModel):
    product_id: str
    total_quantity: int
    cached: bool = False
