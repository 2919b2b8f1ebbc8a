"""
Canteen Core — Accounting API (admin / IT only)
"""
from fastapi import APIRouter, Depends

from canteen.api.deps import CanteenServices, get_services
from canteen.api.orders import order_body
from canteen.core.security import ADMIN_ROLES, require_roles
from canteen.schemas.accounting import (
    ReconcileRequest,
    RefundRequest,
    TopUpRequest,
    TransactionOut,
    UserBalanceOut,
    WithdrawRequest,
)

router = APIRouter(prefix="/accounting", tags=["accounting"])
admin_only = require_roles(*ADMIN_ROLES)


def _balance_body(user, transaction, warnings) -> dict:
    return {
        "ok": True,
        "user": UserBalanceOut.model_validate(user).model_dump(mode="json"),
        "transaction": (
            TransactionOut.model_validate(transaction).model_dump(mode="json") if transaction is not None else None
        ),
        "warnings": [w.to_dict() for w in warnings],
    }


@router.post("/topup")
async def top_up(
    payload: TopUpRequest,
    claims: dict = Depends(admin_only),
    services: CanteenServices = Depends(get_services),
):
    result = await services.accounting.top_up(claims["sub"], payload.user_id_or_reg, payload.amount, payload.note)
    return _balance_body(result.user, result.transaction, result.warnings)


@router.post("/withdraw")
async def withdraw(
    payload: WithdrawRequest,
    claims: dict = Depends(admin_only),
    services: CanteenServices = Depends(get_services),
):
    result = await services.accounting.withdraw(
        claims["sub"], payload.user_id_or_reg, payload.amount,
        allow_negative=payload.allow_negative, note=payload.note,
    )
    return _balance_body(result.user, result.transaction, result.warnings)


@router.post("/refund")
async def refund(
    payload: RefundRequest,
    claims: dict = Depends(admin_only),
    services: CanteenServices = Depends(get_services),
):
    result = await services.refunds.refund(
        claims["sub"], payload.user_id_or_reg, payload.amount,
        note=payload.note, related_order_id=payload.related_order_id,
    )
    body = _balance_body(result.user, result.transaction, result.warnings)
    body["inventory_restored"] = [r.model_dump(mode="json") for r in result.inventory_restored]
    body["order"] = order_body(result.order) if result.order is not None else None
    return body


@router.post("/reconcile")
async def reconcile(
    payload: ReconcileRequest,
    claims: dict = Depends(admin_only),
    services: CanteenServices = Depends(get_services),
):
    result = await services.accounting.reconcile_transactions(claims["sub"], payload.transaction_ids, payload.note)
    return {
        "ok": True,
        "applied": result.applied,
        "unknown": result.unknown,
        "warnings": [w.to_dict() for w in result.warnings],
    }
