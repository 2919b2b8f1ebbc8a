"""
Canteen Core — Refund / reversal engine

A refund is by value: it always credits ``amount``. When it names an order
that has not been reversed yet, the order's stock goes back (provenance first,
heuristic for orders that carry none) and the order is marked
``inventory_restored`` so a second refund cannot restore stock twice.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select

from canteen.core.errors import PartialFailureWarning
from canteen.db.unit_of_work import UnitOfWork, UnitOfWorkFactory
from canteen.models.ledger import LedgerTransaction, TransactionType
from canteen.models.order import Order, OrderStatus
from canteen.models.user import UserAccount
from canteen.schemas.order import RestoredInventory
from canteen.services import balance
from canteen.services.audit import record_audit
from canteen.services.inventory import InventoryLedger

logger = logging.getLogger(__name__)


@dataclass
class RefundResult:
    user: UserAccount
    transaction: LedgerTransaction | None
    inventory_restored: list[RestoredInventory] = field(default_factory=list)
    order: Order | None = None
    warnings: list[PartialFailureWarning] = field(default_factory=list)


async def find_order(uow: UnitOfWork, order_id_or_code: str, lock: bool = False) -> Order | None:
    """Order by id, falling back to its pickup code."""
    order = await uow.get(Order, order_id_or_code, lock=lock)
    if order is not None:
        return order
    rows = await uow.scalars(select(Order).where(Order.code == order_id_or_code), lock=lock)
    return rows[0] if rows else None


class RefundEngine:
    def __init__(self, uow_factory: UnitOfWorkFactory, inventory: InventoryLedger | None = None):
        self.uow_factory = uow_factory
        self.inventory = inventory or InventoryLedger()

    async def refund(
        self,
        admin_id: str | None,
        user_id_or_reg: str,
        amount,
        note: str | None = None,
        related_order_id: str | None = None,
    ) -> RefundResult:
        amount = balance.positive_amount(amount)

        async def op(uow: UnitOfWork) -> RefundResult:
            return await self._refund(uow, admin_id, user_id_or_reg, amount, note, related_order_id)

        result = await self.uow_factory.run(op)
        logger.info(
            "Refunded %s to %s (order=%s, restored=%d line(s))",
            amount, result.user.id, result.order.code if result.order else None, len(result.inventory_restored),
        )
        return result

    async def _refund(
        self,
        uow: UnitOfWork,
        admin_id: str | None,
        user_id_or_reg: str,
        amount: Decimal,
        note: str | None,
        related_order_id: str | None,
    ) -> RefundResult:
        user = await balance.resolve_user(uow, user_id_or_reg, lock=True)
        user_id = user.id

        order = await find_order(uow, related_order_id, lock=True) if related_order_id else None
        restored: list[RestoredInventory] = []
        if order is not None and not (order.meta or {}).get("inventory_restored"):
            order_id = order.id
            restored = await self.inventory.restore(uow, order)
            # Re-read: a failed best-effort restore rolls the session back
            order = await uow.get(Order, order_id)
            meta = dict(order.meta or {})
            meta["inventory_restored"] = True
            meta["inventory_restored_at"] = datetime.now(timezone.utc).isoformat()
            meta["inventory_restore_detail"] = [r.model_dump(mode="json") for r in restored]
            order.meta = meta
            if order.status != OrderStatus.CANCELLED:
                order.status = OrderStatus.REFUNDED
            await uow.save()
        elif order is not None:
            logger.info("Order %s already had its inventory restored; crediting balance only", order.code)

        movement = await balance.credit(uow, user_id, amount)
        transaction = await balance.write_transaction(
            uow,
            TransactionType.REFUND,
            amount,
            user_id=user_id,
            movement=movement,
            related_order_id=order.id if order else None,
            created_by_id=admin_id,
            note=note or (f"Refund - Order {order.code}" if order else "Refund"),
            meta={"inventory_restored": [r.model_dump(mode="json") for r in restored]},
        )

        changes = {
            "amount": str(amount),
            "before": str(movement.before),
            "after": str(movement.after),
            "note": note,
            "inventory_restored": [r.model_dump(mode="json") for r in restored],
        }
        if order is not None:
            changes["related_order"] = order.id
        elif related_order_id:
            changes["related_order_provided"] = related_order_id
        await record_audit(
            uow, admin_id, "refund_user", collection_name="users", document_id=user_id, changes=changes,
            meta={"fallback": not uow.transactional},
        )

        return RefundResult(
            user=await uow.get(UserAccount, user_id),
            transaction=transaction,
            inventory_restored=restored,
            order=order,
            warnings=uow.warnings,
        )
