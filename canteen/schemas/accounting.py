"""
Canteen Core — Accounting schemas
"""
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


class TopUpRequest(BaseModel):
    user_id_or_reg: str = Field(..., min_length=1, examples=["STU-2021-001"])
    amount: Decimal
    note: str = ""


class WithdrawRequest(TopUpRequest):
    allow_negative: bool = False


class RefundRequest(TopUpRequest):
    related_order_id: str | None = Field(None, description="Order id or pickup code")


class ReconcileRequest(BaseModel):
    transaction_ids: list[str] = Field(..., min_length=1)
    note: str = ""


class UserBalanceOut(BaseModel):
    id: str
    name: str
    reg_number: str | None
    balance: Decimal

    model_config = {"from_attributes": True}


class TransactionOut(BaseModel):
    id: str
    user_id: str | None
    type: str
    amount: Decimal
    balance_before: Decimal | None
    balance_after: Decimal | None
    related_order_id: str | None
    created_by_id: str | None
    note: str | None
    meta: dict = {}
    created_at: datetime | None = None

    model_config = {"from_attributes": True}
