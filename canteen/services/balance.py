"""
Canteen Core — Balance ledger

``users.balance`` is only moved here, and only through conditional updates:
a debit is ``balance = balance - :amount WHERE balance >= :amount`` unless the
caller explicitly allows a negative result. In the transactional unit the row
is also locked before the update, so the before/after snapshot is exact; in
the best-effort unit it is derived from the re-read and may be skewed by a
concurrent writer.
"""
import logging
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation

from sqlalchemy import or_, select

from canteen.core.errors import InsufficientBalanceError, UserNotFoundError, ValidationError
from canteen.db.unit_of_work import UnitOfWork
from canteen.models.ledger import LedgerTransaction, TransactionType
from canteen.models.user import UserAccount

logger = logging.getLogger(__name__)


@dataclass
class BalanceMovement:
    user_id: str
    amount: Decimal
    before: Decimal
    after: Decimal


async def resolve_user(uow: UnitOfWork, user_id_or_reg: str | None, lock: bool = False) -> UserAccount:
    """Look a user up by id first, then by registration number."""
    if not user_id_or_reg:
        raise UserNotFoundError("User not found", user=user_id_or_reg)
    rows = await uow.scalars(
        select(UserAccount).where(
            or_(UserAccount.id == user_id_or_reg, UserAccount.reg_number == user_id_or_reg)
        ),
        lock=lock,
    )
    if not rows:
        raise UserNotFoundError(f"User not found: {user_id_or_reg}", user=user_id_or_reg)
    by_id = [u for u in rows if u.id == user_id_or_reg]
    return by_id[0] if by_id else rows[0]


async def _current_balance(uow: UnitOfWork, user_id: str) -> Decimal:
    user = await uow.get(UserAccount, user_id)
    if user is None:
        raise UserNotFoundError(f"User not found: {user_id}", user=user_id)
    return Decimal(user.balance)


async def debit(uow: UnitOfWork, user_id: str, amount: Decimal, allow_negative: bool = False) -> BalanceMovement:
    """Take ``amount`` from the user's balance. Raises InsufficientBalanceError."""
    amount = Decimal(amount)
    locked = await uow.get(UserAccount, user_id, lock=True)
    if locked is None:
        raise UserNotFoundError(f"User not found: {user_id}", user=user_id)

    conditions = () if allow_negative else (UserAccount.balance >= amount,)
    applied = await uow.atomic_update(
        UserAccount, user_id, {"balance": UserAccount.balance - amount}, *conditions
    )
    if not applied:
        available = await _current_balance(uow, user_id)
        raise InsufficientBalanceError(required=amount, available=available)

    after = await _current_balance(uow, user_id)
    return BalanceMovement(user_id=user_id, amount=-amount, before=after + amount, after=after)


async def credit(uow: UnitOfWork, user_id: str, amount: Decimal) -> BalanceMovement:
    amount = Decimal(amount)
    await uow.get(UserAccount, user_id, lock=True)
    if not await uow.atomic_update(UserAccount, user_id, {"balance": UserAccount.balance + amount}):
        raise UserNotFoundError(f"User not found: {user_id}", user=user_id)
    after = await _current_balance(uow, user_id)
    return BalanceMovement(user_id=user_id, amount=amount, before=after - amount, after=after)


async def write_transaction(
    uow: UnitOfWork,
    type_: TransactionType,
    amount: Decimal,
    user_id: str | None = None,
    movement: BalanceMovement | None = None,
    related_order_id: str | None = None,
    created_by_id: str | None = None,
    note: str | None = None,
    meta: dict | None = None,
) -> LedgerTransaction | None:
    """
    Append a ledger entry. Inside a transactional unit it commits or aborts
    with the balance movement; otherwise a failure only yields a warning and
    None is returned.
    """
    tx = LedgerTransaction(
        user_id=user_id,
        type=type_.value,
        amount=Decimal(amount),
        balance_before=movement.before if movement else None,
        balance_after=movement.after if movement else None,
        related_order_id=related_order_id,
        created_by_id=created_by_id,
        note=note,
        meta=meta or {},
    )
    if await uow.append_record("ledger", tx, atomic=True):
        return tx
    return None


def positive_amount(value) -> Decimal:
    """Coerce to Decimal and require ``> 0``. Raises ValidationError."""
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as exc:
        raise ValidationError(f"Invalid amount: {value!r}") from exc
    if not amount.is_finite() or amount <= 0:
        raise ValidationError("Amount must be greater than zero", amount=str(value))
    return amount
