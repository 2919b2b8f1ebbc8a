"""
Refund / reversal engine tests
"""
from decimal import Decimal

import pytest
from sqlalchemy import select

from canteen.core.errors import UserNotFoundError, ValidationError
from canteen.models.inventory import Inventory
from canteen.models.ledger import AuditLogEntry
from canteen.models.order import Order, OrderStatus

from conftest import balance_of, record_quantity, stock_of


@pytest.mark.asyncio
async def test_refund_restores_exact_records_and_balance(placement, refunds, seed, session_factory):
    """Place 6 burgers over Main 5 / Annex 3, refund: both records and the balance come back exactly."""
    placed = await placement.place_order("STU-001", [{"product_id": seed.burger_id, "qty": 6}])

    result = await refunds.refund(seed.admin_id, "STU-001", placed.order.total, related_order_id=placed.order.id)

    assert await record_quantity(session_factory, seed.burger_main_id) == 5
    assert await record_quantity(session_factory, seed.burger_annex_id) == 3
    assert await balance_of(session_factory, seed.student_id) == Decimal("100.00")
    assert result.user.balance == Decimal("100.00")
    assert [(r.inventory_id, r.qty_restored, r.heuristic) for r in result.inventory_restored] == [
        (seed.burger_main_id, 5, False),
        (seed.burger_annex_id, 1, False),
    ]
    assert result.warnings == []

    tx = result.transaction
    assert tx.type == "refund"
    assert tx.amount == Decimal("75.00")
    assert tx.balance_before == Decimal("25.00")
    assert tx.balance_after == Decimal("100.00")
    assert tx.related_order_id == placed.order.id

    async with session_factory() as session:
        order = await session.get(Order, placed.order.id)
        audit = await session.scalar(select(AuditLogEntry).where(AuditLogEntry.action == "refund_user"))
    assert order.status == OrderStatus.REFUNDED
    assert order.meta["inventory_restored"] is True
    assert audit.changes["related_order"] == placed.order.id


@pytest.mark.asyncio
async def test_second_refund_credits_but_does_not_restore_stock(placement, refunds, seed, session_factory):
    placed = await placement.place_order("STU-001", [{"product_id": seed.burger_id, "qty": 2}])

    await refunds.refund(seed.admin_id, "STU-001", "25.00", related_order_id=placed.order.id)
    second = await refunds.refund(seed.admin_id, "STU-001", "25.00", related_order_id=placed.order.code)

    assert second.inventory_restored == []
    assert await stock_of(session_factory, seed.burger_id) == 8
    # Refunds are by value: the balance is credited every time
    assert await balance_of(session_factory, seed.student_id) == Decimal("125.00")


@pytest.mark.asyncio
async def test_refund_of_cancelled_order_keeps_status(placement, fulfilment, refunds, seed, session_factory):
    placed = await placement.place_order("STU-001", [{"product_id": seed.chips_id, "qty": 1}])
    await fulfilment.cancel_order(seed.admin_id, order_id=placed.order.id, reason="left campus")
    assert await stock_of(session_factory, seed.chips_id) == 9

    await refunds.refund(seed.admin_id, seed.student_id, "2.50", related_order_id=placed.order.id)

    async with session_factory() as session:
        order = await session.get(Order, placed.order.id)
    assert order.status == OrderStatus.CANCELLED
    assert order.meta["inventory_restored"] is True
    assert await stock_of(session_factory, seed.chips_id) == 10


@pytest.mark.asyncio
async def test_legacy_order_without_provenance_uses_heuristic(placement, refunds, seed, session_factory):
    placed = await placement.place_order("STU-001", [{"product_id": seed.burger_id, "qty": 6}])
    async with session_factory() as session:
        order = await session.get(Order, placed.order.id)
        meta = dict(order.meta)
        meta.pop("inventory_changes")
        order.meta = meta
        await session.commit()

    result = await refunds.refund(seed.admin_id, "STU-001", "75.00", related_order_id=placed.order.id)

    # Total comes back, but all of it lands on the fullest record (Annex, 2 left)
    assert await stock_of(session_factory, seed.burger_id) == 8
    assert await record_quantity(session_factory, seed.burger_main_id) == 0
    assert await record_quantity(session_factory, seed.burger_annex_id) == 8
    assert [r.heuristic for r in result.inventory_restored] == [True]
    assert [w.stage for w in result.warnings] == ["inventory_restore"]


@pytest.mark.asyncio
async def test_restore_skips_deactivated_record_with_warning(placement, refunds, seed, session_factory):
    placed = await placement.place_order("STU-001", [{"product_id": seed.burger_id, "qty": 6}])
    async with session_factory() as session:
        annex = await session.get(Inventory, seed.burger_annex_id)
        annex.active = False
        await session.commit()

    result = await refunds.refund(seed.admin_id, "STU-001", "75.00", related_order_id=placed.order.id)

    assert [r.ok for r in result.inventory_restored] == [True, False]
    assert any(w.stage == "inventory_restore" for w in result.warnings)
    assert await record_quantity(session_factory, seed.burger_main_id) == 5


@pytest.mark.asyncio
async def test_refund_without_matching_order_still_credits(refunds, seed, session_factory):
    result = await refunds.refund(seed.admin_id, "STU-002", "1.50", note="Goodwill", related_order_id="RC-NOPE00")

    assert result.order is None
    assert result.transaction.note == "Goodwill"
    assert await balance_of(session_factory, seed.poor_student_id) == Decimal("6.50")
    async with session_factory() as session:
        audit = await session.scalar(select(AuditLogEntry).where(AuditLogEntry.action == "refund_user"))
    assert audit.changes["related_order_provided"] == "RC-NOPE00"


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", ["0", "-5", "abc"])
async def test_refund_rejects_non_positive_amounts(refunds, seed, amount):
    with pytest.raises(ValidationError):
        await refunds.refund(seed.admin_id, "STU-001", amount)


@pytest.mark.asyncio
async def test_refund_to_unknown_user(refunds, seed):
    with pytest.raises(UserNotFoundError):
        await refunds.refund(seed.admin_id, "STU-404", "1.00")
