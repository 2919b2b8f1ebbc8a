"""
Inventory ledger tests
"""
from decimal import Decimal

import pytest
from sqlalchemy import select

from canteen.core.errors import InsufficientStockError, ProductNotFoundError
from canteen.core.optimistic_lock import StaleDataError
from canteen.db.unit_of_work import UnitOfWork
from canteen.models.inventory import Inventory
from canteen.models.ledger import AuditLogEntry
from canteen.schemas.order import OrderLine

from conftest import stock_of


def _line(product_id: str, qty: int, name: str = "Chips") -> OrderLine:
    return OrderLine(product_id=product_id, name=name, price=Decimal("2.50"), qty=qty)


@pytest.mark.asyncio
async def test_total_counts_active_records_only(uow_factory, inventory_ledger, seed, session_factory):
    async with session_factory() as session:
        annex = await session.get(Inventory, seed.burger_annex_id)
        annex.active = False
        await session.commit()

    total = await uow_factory.run(lambda uow: inventory_ledger.get_total_quantity(uow, seed.burger_id))
    assert total == 5

    missing = await uow_factory.run(lambda uow: inventory_ledger.get_total_quantity(uow, seed.juice_id))
    assert missing == 0


@pytest.mark.asyncio
async def test_total_inventory_without_cache(uow_factory, inventory_ledger, seed):
    total, cached = await uow_factory.run(lambda uow: inventory_ledger.get_total_inventory(uow, seed.burger_id))
    assert (total, cached) == (8, False)


@pytest.mark.asyncio
async def test_ensure_inventory_creates_one_empty_record(uow_factory, inventory_ledger, seed, session_factory):
    created = await uow_factory.run(lambda uow: inventory_ledger.ensure_inventory(uow, seed.juice_id))
    again = await uow_factory.run(lambda uow: inventory_ledger.ensure_inventory(uow, seed.juice_id))

    assert created is not None
    assert again is None
    async with session_factory() as session:
        records = (await session.execute(
            select(Inventory).where(Inventory.product_id == seed.juice_id)
        )).scalars().all()
    assert len(records) == 1
    assert records[0].location == "Main"
    assert records[0].quantity == 0
    assert records[0].meta == {"auto_created": True}


@pytest.mark.asyncio
async def test_ensure_inventory_unknown_product(uow_factory, inventory_ledger, seed):
    with pytest.raises(ProductNotFoundError):
        await uow_factory.run(lambda uow: inventory_ledger.ensure_inventory(uow, "nope"))


@pytest.mark.asyncio
async def test_list_inventory_reports_totals_and_provisions_records(uow_factory, inventory_ledger, seed):
    rows = await uow_factory.run(inventory_ledger.list_inventory)

    totals = {row["name"]: row["total_inventory"] for row in rows}
    assert totals == {"Burger": 8, "Chips": 10, "Ice cream": 10, "Juice": 0}

    count = await uow_factory.run(lambda uow: inventory_ledger.count_records(uow, seed.juice_id))
    assert count == 1


@pytest.mark.asyncio
async def test_set_inventory_updates_and_creates_with_audit(uow_factory, inventory_ledger, seed, session_factory):
    updated = await uow_factory.run(
        lambda uow: inventory_ledger.set_inventory(uow, seed.admin_id, seed.burger_id, location="Main", quantity=7)
    )
    created = await uow_factory.run(
        lambda uow: inventory_ledger.set_inventory(uow, seed.admin_id, seed.burger_id, location="Kiosk", quantity=2)
    )

    assert updated.id == seed.burger_main_id
    assert created.id not in (seed.burger_main_id, seed.burger_annex_id)
    assert await stock_of(session_factory, seed.burger_id) == 12

    async with session_factory() as session:
        actions = (await session.execute(
            select(AuditLogEntry.action).order_by(AuditLogEntry.created_at)
        )).scalars().all()
    assert actions == ["inventory_update", "inventory_create"]


@pytest.mark.asyncio
async def test_deduct_retries_after_lost_race(uow_factory, inventory_ledger, seed, session_factory, monkeypatch):
    original = UnitOfWork.atomic_update
    calls = []

    async def flaky(self, model, ident, values, *conditions):
        calls.append(ident)
        if len(calls) == 1:
            return False
        return await original(self, model, ident, values, *conditions)

    monkeypatch.setattr(UnitOfWork, "atomic_update", flaky)

    changes = await uow_factory.run(lambda uow: inventory_ledger.deduct(uow, [_line(seed.chips_id, 4)]))

    assert len(calls) == 2
    assert [(c.qty_taken, c.before, c.after) for c in changes] == [(4, 10, 6)]
    assert await stock_of(session_factory, seed.chips_id) == 6


@pytest.mark.asyncio
async def test_deduct_gives_up_when_always_contended(uow_factory, inventory_ledger, seed, session_factory, monkeypatch):
    async def always_stale(self, model, ident, values, *conditions):
        return False

    monkeypatch.setattr(UnitOfWork, "atomic_update", always_stale)

    with pytest.raises(InsufficientStockError) as exc_info:
        await uow_factory.run(lambda uow: inventory_ledger.deduct(uow, [_line(seed.chips_id, 1)]))
    assert exc_info.value.product_id == seed.chips_id
    assert "Chips" in exc_info.value.message
    assert isinstance(exc_info.value.__cause__, StaleDataError)
    assert await stock_of(session_factory, seed.chips_id) == 10


@pytest.mark.asyncio
async def test_deduct_precheck_names_the_product(uow_factory, inventory_ledger, seed):
    with pytest.raises(InsufficientStockError) as exc_info:
        await uow_factory.run(
            lambda uow: inventory_ledger.deduct(uow, [_line(seed.icecream_id, 11, name="Ice cream")])
        )
    assert "Ice cream" in exc_info.value.message
    assert exc_info.value.available == 10
