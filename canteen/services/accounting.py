"""
Canteen Core — Administrative balance operations (top-up, withdraw, reconcile)
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from sqlalchemy import select

from canteen.core.errors import PartialFailureWarning, ValidationError
from canteen.db.unit_of_work import UnitOfWork, UnitOfWorkFactory
from canteen.models.ledger import LedgerTransaction, TransactionType
from canteen.models.user import UserAccount
from canteen.services import balance
from canteen.services.audit import record_audit

logger = logging.getLogger(__name__)

DEFAULT_WITHDRAW_NOTE = "Withdrawn by admin"


@dataclass
class BalanceResult:
    user: UserAccount
    transaction: LedgerTransaction | None
    warnings: list[PartialFailureWarning] = field(default_factory=list)


@dataclass
class ReconcileResult:
    applied: list[str]
    unknown: list[str]
    warnings: list[PartialFailureWarning] = field(default_factory=list)


class AccountingService:
    def __init__(self, uow_factory: UnitOfWorkFactory):
        self.uow_factory = uow_factory

    async def top_up(self, admin_id: str | None, user_id_or_reg: str, amount, note: str | None = None) -> BalanceResult:
        amount = balance.positive_amount(amount)

        async def op(uow: UnitOfWork) -> BalanceResult:
            user = await balance.resolve_user(uow, user_id_or_reg, lock=True)
            user_id = user.id
            movement = await balance.credit(uow, user_id, amount)
            transaction = await balance.write_transaction(
                uow, TransactionType.TOPUP, amount,
                user_id=user_id, movement=movement, created_by_id=admin_id, note=note or "Top-up",
            )
            await record_audit(
                uow, admin_id, "topup_user", collection_name="users", document_id=user_id,
                changes={"amount": str(amount), "before": str(movement.before), "after": str(movement.after), "note": note},
            )
            return BalanceResult(await uow.get(UserAccount, user_id), transaction, uow.warnings)

        result = await self.uow_factory.run(op)
        logger.info("Topped up %s by %s", result.user.id, amount)
        return result

    async def withdraw(
        self,
        admin_id: str | None,
        user_id_or_reg: str,
        amount,
        allow_negative: bool = False,
        note: str | None = None,
    ) -> BalanceResult:
        amount = balance.positive_amount(amount)
        note = note or DEFAULT_WITHDRAW_NOTE

        async def op(uow: UnitOfWork) -> BalanceResult:
            user = await balance.resolve_user(uow, user_id_or_reg, lock=True)
            user_id = user.id
            movement = await balance.debit(uow, user_id, amount, allow_negative=allow_negative)
            transaction = await balance.write_transaction(
                uow, TransactionType.ADJUSTMENT, -amount,
                user_id=user_id, movement=movement, created_by_id=admin_id, note=note,
                meta={"allow_negative": allow_negative},
            )
            await record_audit(
                uow, admin_id, "withdraw_user", collection_name="users", document_id=user_id,
                changes={
                    "amount": str(amount),
                    "before": str(movement.before),
                    "after": str(movement.after),
                    "note": note,
                    "allow_negative": allow_negative,
                },
            )
            return BalanceResult(await uow.get(UserAccount, user_id), transaction, uow.warnings)

        result = await self.uow_factory.run(op)
        logger.info("Withdrew %s from %s (allow_negative=%s)", amount, result.user.id, allow_negative)
        return result

    async def reconcile_transactions(
        self, admin_id: str | None, transaction_ids: list[str], note: str | None = None
    ) -> ReconcileResult:
        """Flag ledger entries as reconciled. Unknown ids are reported, not fatal."""
        ids = list(dict.fromkeys(i for i in transaction_ids if i))
        if not ids:
            raise ValidationError("transaction_ids must not be empty")

        async def op(uow: UnitOfWork) -> ReconcileResult:
            rows = await uow.scalars(select(LedgerTransaction).where(LedgerTransaction.id.in_(ids)), lock=True)
            reconciled_at = datetime.now(timezone.utc).isoformat()
            for tx in rows:
                meta = dict(tx.meta or {})
                meta.update(reconciled=True, reconciled_at=reconciled_at, reconciled_by=admin_id, reconcile_note=note)
                tx.meta = meta
            if rows:
                await uow.save()
            applied = [tx.id for tx in rows]
            unknown = [i for i in ids if i not in set(applied)]
            await record_audit(
                uow, admin_id, "reconcile_transactions", collection_name="transactions",
                changes={"transaction_ids": applied, "unknown": unknown, "note": note},
            )
            return ReconcileResult(applied=applied, unknown=unknown, warnings=uow.warnings)

        result = await self.uow_factory.run(op)
        logger.info("Reconciled %d transaction(s), %d unknown", len(result.applied), len(result.unknown))
        return result
