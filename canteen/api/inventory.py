"""
Canteen Core — Inventory API
"""
from fastapi import APIRouter, Depends

from canteen.api.deps import CanteenServices, get_services
from canteen.core.security import INVENTORY_ROLES, current_user, require_roles
from canteen.db.unit_of_work import UnitOfWork
from canteen.schemas.inventory import InventoryOut, InventoryUpsertRequest, ProductStockOut, StockTotalOut

router = APIRouter(prefix="/inventory", tags=["inventory"])


@router.get("", response_model=list[ProductStockOut])
async def list_inventory(
    claims: dict = Depends(require_roles(*INVENTORY_ROLES)),
    services: CanteenServices = Depends(get_services),
):
    """Per-product totals. Products seen for the first time get an empty Main record."""

    async def op(uow: UnitOfWork):
        return await services.inventory.list_inventory(uow)

    return await services.uow_factory.run(op)


@router.post("", response_model=InventoryOut)
async def set_inventory(
    payload: InventoryUpsertRequest,
    claims: dict = Depends(require_roles(*INVENTORY_ROLES)),
    services: CanteenServices = Depends(get_services),
):
    async def op(uow: UnitOfWork):
        return await services.inventory.set_inventory(
            uow,
            claims["sub"],
            payload.product_id,
            location=payload.location,
            quantity=payload.quantity,
            low_stock_threshold=payload.low_stock_threshold,
            active=payload.active,
        )

    return await services.uow_factory.run(op)


@router.get("/{product_id}/total", response_model=StockTotalOut)
async def get_total_inventory(
    product_id: str,
    claims: dict = Depends(current_user),
    services: CanteenServices = Depends(get_services),
):
    async def op(uow: UnitOfWork):
        return await services.inventory.get_total_inventory(uow, product_id)

    total, cached = await services.uow_factory.run(op)
    return StockTotalOut(product_id=product_id, total_quantity=total, cached=cached)
