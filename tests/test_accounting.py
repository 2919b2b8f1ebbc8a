"""
Top-up, withdraw and reconciliation tests
"""
from decimal import Decimal

import pytest
from sqlalchemy import select

from canteen.core.errors import InsufficientBalanceError, UserNotFoundError, ValidationError
from canteen.models.ledger import AuditLogEntry, LedgerTransaction

from conftest import balance_of


@pytest.mark.asyncio
async def test_top_up_by_registration_number(accounting, seed, session_factory):
    result = await accounting.top_up(seed.admin_id, "STU-002", "20.00", note="Cash at desk")

    assert result.user.id == seed.poor_student_id
    assert result.user.balance == Decimal("25.00")
    assert result.transaction.type == "topup"
    assert result.transaction.balance_before == Decimal("5.00")
    assert result.transaction.balance_after == Decimal("25.00")
    assert result.transaction.created_by_id == seed.admin_id

    async with session_factory() as session:
        audit = await session.scalar(select(AuditLogEntry).where(AuditLogEntry.action == "topup_user"))
    assert audit.document_id == seed.poor_student_id
    assert audit.changes["amount"] == "20.00"


@pytest.mark.asyncio
@pytest.mark.parametrize("amount", [0, "-1", "NaN"])
async def test_top_up_rejects_invalid_amount(accounting, seed, amount):
    with pytest.raises(ValidationError):
        await accounting.top_up(seed.admin_id, "STU-001", amount)


@pytest.mark.asyncio
async def test_top_up_unknown_user(accounting, seed):
    with pytest.raises(UserNotFoundError):
        await accounting.top_up(seed.admin_id, "missing", "5")


@pytest.mark.asyncio
async def test_withdraw_refuses_to_overdraw(accounting, seed, session_factory):
    with pytest.raises(InsufficientBalanceError):
        await accounting.withdraw(seed.admin_id, "STU-002", "10.00")

    assert await balance_of(session_factory, seed.poor_student_id) == Decimal("5.00")
    async with session_factory() as session:
        assert (await session.execute(select(LedgerTransaction))).scalars().all() == []


@pytest.mark.asyncio
async def test_withdraw_with_override_goes_negative(accounting, seed, session_factory):
    result = await accounting.withdraw(seed.admin_id, "STU-002", "10.00", allow_negative=True)

    assert result.user.balance == Decimal("-5.00")
    tx = result.transaction
    assert tx.type == "adjustment"
    assert tx.amount == Decimal("-10.00")
    assert tx.note == "Withdrawn by admin"
    assert tx.balance_before == Decimal("5.00")
    assert tx.balance_after == Decimal("-5.00")


@pytest.mark.asyncio
async def test_reconcile_marks_known_and_reports_unknown(accounting, seed, session_factory):
    first = await accounting.top_up(seed.admin_id, "STU-001", "1.00")
    second = await accounting.top_up(seed.admin_id, "STU-001", "2.00")

    result = await accounting.reconcile_transactions(
        seed.admin_id, [first.transaction.id, second.transaction.id, "ghost"], note="Z-report 14"
    )

    assert sorted(result.applied) == sorted([first.transaction.id, second.transaction.id])
    assert result.unknown == ["ghost"]
    async with session_factory() as session:
        tx = await session.get(LedgerTransaction, first.transaction.id)
    assert tx.meta["reconciled"] is True
    assert tx.meta["reconciled_by"] == seed.admin_id
    assert tx.meta["reconcile_note"] == "Z-report 14"


@pytest.mark.asyncio
async def test_reconcile_requires_ids(accounting, seed):
    with pytest.raises(ValidationError):
        await accounting.reconcile_transactions(seed.admin_id, [])
