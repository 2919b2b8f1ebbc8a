"""
Canteen Core — Orders API

Thin HTTP layer over the placement engine and fulfilment service. Failures
are CanteenError subclasses rendered by the handler registered in main.py.
"""
from fastapi import APIRouter, Depends, status

from canteen.api.deps import CanteenServices, get_services
from canteen.core.security import ADMIN_ROLES, KITCHEN_ROLES, current_user, require_roles
from canteen.schemas.accounting import TransactionOut
from canteen.schemas.order import (
    CancelRequest,
    CollectRequest,
    ExternalCodeOut,
    ExternalOrderRequest,
    OrderOut,
    PlaceOrderRequest,
    PrepareRequest,
)
from canteen.services.ordering import PlacementResult

router = APIRouter(prefix="/orders", tags=["orders"])
kitchen_router = APIRouter(prefix="/kitchen", tags=["kitchen"])


def order_body(order) -> dict:
    return OrderOut.model_validate(order).model_dump(mode="json")


def _placement_body(result: PlacementResult) -> dict:
    body = {
        "ok": True,
        "order": order_body(result.order),
        "transaction": (
            TransactionOut.model_validate(result.transaction).model_dump(mode="json")
            if result.transaction is not None else None
        ),
        "warnings": [w.to_dict() for w in result.warnings],
    }
    if result.external_code is not None:
        body["external_code"] = ExternalCodeOut.model_validate(result.external_code).model_dump(mode="json")
    return body


@router.post("", status_code=status.HTTP_201_CREATED)
async def place_order(
    payload: PlaceOrderRequest,
    claims: dict = Depends(current_user),
    services: CanteenServices = Depends(get_services),
):
    """Place an order for the caller, charged against their balance."""
    result = await services.placement.place_order(
        claims["sub"],
        payload.items,
        prep_station_id=payload.prep_station_id,
        ordering_window_id=payload.ordering_window_id,
        trust_balance_check=True,
    )
    return _placement_body(result)


@router.post("/external", status_code=status.HTTP_201_CREATED)
async def issue_external_order(
    payload: ExternalOrderRequest,
    claims: dict = Depends(require_roles(*ADMIN_ROLES)),
    services: CanteenServices = Depends(get_services),
):
    """Walk-up order paid outside the ledger; returns the pickup code."""
    result = await services.placement.issue_external_order(
        claims["sub"],
        payload.items,
        issued_to_name=payload.issued_to_name,
        expires_in_minutes=payload.expires_in_minutes,
        note=payload.note,
        prep_station_id=payload.prep_station_id,
        ordering_window_id=payload.ordering_window_id,
    )
    return _placement_body(result)


@router.get("/code/{code}")
async def get_order_by_code(
    code: str,
    claims: dict = Depends(current_user),
    services: CanteenServices = Depends(get_services),
):
    lookup = await services.fulfilment.find_order_by_code(code)
    return {
        "ok": True,
        "order": order_body(lookup.order),
        "expired": lookup.expired,
        "issued_to_name": lookup.issued_to_name,
    }


@router.post("/collect")
async def collect_order(
    payload: CollectRequest,
    claims: dict = Depends(require_roles(*KITCHEN_ROLES)),
    services: CanteenServices = Depends(get_services),
):
    order = await services.fulfilment.collect_order(
        claims["sub"], order_id=payload.order_id, code=payload.code, reg_number=payload.reg_number
    )
    return {"ok": True, "order": order_body(order)}


@kitchen_router.post("/prepare")
async def prepare(
    payload: PrepareRequest,
    claims: dict = Depends(require_roles(*KITCHEN_ROLES)),
    services: CanteenServices = Depends(get_services),
):
    """Mark (or revert) one prepared unit of a product on the kitchen board."""
    if payload.action == "prepare":
        order = await services.fulfilment.prepare_product(claims["sub"], payload.product_name)
    else:
        order = await services.fulfilment.unprepare_product(claims["sub"], payload.product_name)
    return {"ok": True, "order": order_body(order)}


@kitchen_router.post("/cancel")
async def cancel(
    payload: CancelRequest,
    claims: dict = Depends(require_roles(*KITCHEN_ROLES)),
    services: CanteenServices = Depends(get_services),
):
    order = await services.fulfilment.cancel_order(
        claims["sub"], order_id=payload.order_id, code=payload.code, reason=payload.reason
    )
    return {"ok": True, "order": order_body(order)}
