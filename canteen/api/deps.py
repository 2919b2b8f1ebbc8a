"""
Canteen Core — Service wiring shared by the routers

The engine is owned by the process entry point (``main.py``); everything the
routes need is built from it once and parked on ``app.state.services``.
"""
from dataclasses import dataclass

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine

from canteen.core.config import get_settings
from canteen.core.redis_client import StockCache
from canteen.db.unit_of_work import UnitOfWorkFactory
from canteen.services.accounting import AccountingService
from canteen.services.fulfilment import FulfilmentService
from canteen.services.inventory import InventoryLedger
from canteen.services.ordering import OrderPlacementEngine
from canteen.services.refunds import RefundEngine

settings = get_settings()


@dataclass
class CanteenServices:
    uow_factory: UnitOfWorkFactory
    inventory: InventoryLedger
    placement: OrderPlacementEngine
    refunds: RefundEngine
    accounting: AccountingService
    fulfilment: FulfilmentService


def build_services(engine: AsyncEngine, transaction_mode: str | None = None) -> CanteenServices:
    uow_factory = UnitOfWorkFactory(engine, mode=transaction_mode or settings.TRANSACTION_MODE)
    inventory = InventoryLedger(StockCache())
    return CanteenServices(
        uow_factory=uow_factory,
        inventory=inventory,
        placement=OrderPlacementEngine(uow_factory, inventory),
        refunds=RefundEngine(uow_factory, inventory),
        accounting=AccountingService(uow_factory),
        fulfilment=FulfilmentService(uow_factory),
    )


def get_services(request: Request) -> CanteenServices:
    return request.app.state.services
