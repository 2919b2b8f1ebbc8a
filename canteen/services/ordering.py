"""
Canteen Core — Order placement engine

One algorithm, two execution strategies (see canteen.db.unit_of_work):

  1. resolve the user (skipped for external orders)
  2. resolve products, freeze name/price/allergens into line snapshots;
     availability windows are read in AVAILABILITY_TIMEZONE (server local
     time when unset)
  3. total = sum(price * qty)
  4. pre-flight balance check (when trust_balance_check)
  5. allocate a pickup code, insert the order as ``placed``
  6. deduct inventory, keep the provenance on the order
  7. auto-prepare lines whose category needs no kitchen work
  8. save the order
  9. debit the balance + ``order`` ledger entry, or an ``external`` ledger entry
 10. audit ``place_order``

Transactional unit: any failure in 1-10 aborts everything.
Best-effort unit: every step commits on its own. A failed deduction deletes
the fresh order and puts back what was already taken; a failed debit does the
same before surfacing InsufficientBalanceError, and a failed pickup-code
insert for an external order also drops its sale entry. Ledger and audit
writes are best-effort and only produce warnings.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone, tzinfo
from decimal import Decimal
from typing import Callable, Iterable
from zoneinfo import ZoneInfo

from pydantic import ValidationError as PydanticValidationError

from canteen.core.config import get_settings
from canteen.core.errors import (
    InsufficientBalanceError,
    InsufficientStockError,
    PartialFailureWarning,
    ProductNotFoundError,
    ValidationError,
)
from canteen.db.unit_of_work import UnitOfWork, UnitOfWorkFactory
from canteen.models.ledger import LedgerTransaction, TransactionType
from canteen.models.order import ExternalCode, Order, OrderStatus
from canteen.models.product import Product
from canteen.schemas.order import AutoPreparedItem, InventoryChange, OrderItemRequest, OrderLine
from canteen.services import balance
from canteen.services.audit import record_audit
from canteen.services.codes import allocate_pickup_code
from canteen.services.inventory import InventoryLedger

settings = get_settings()
logger = logging.getLogger(__name__)


@dataclass
class PlacementResult:
    order: Order
    transaction: LedgerTransaction | None
    warnings: list[PartialFailureWarning] = field(default_factory=list)
    external_code: ExternalCode | None = None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def normalize_category(category: str | None) -> str:
    return (category or "").strip().lower()


class OrderPlacementEngine:
    def __init__(
        self,
        uow_factory: UnitOfWorkFactory,
        inventory: InventoryLedger | None = None,
        auto_prepare_categories: Iterable[str] | None = None,
        clock: Callable[[], datetime] = _utcnow,
        availability_tz: tzinfo | None = None,
    ):
        self.uow_factory = uow_factory
        self.inventory = inventory or InventoryLedger()
        categories = settings.AUTO_PREPARE_CATEGORIES if auto_prepare_categories is None else auto_prepare_categories
        self.auto_prepare_categories = {normalize_category(c) for c in categories}
        self.clock = clock
        # None: astimezone() falls back to the server's local time
        if availability_tz is None and settings.AVAILABILITY_TIMEZONE:
            availability_tz = ZoneInfo(settings.AVAILABILITY_TIMEZONE)
        self.availability_tz = availability_tz

    # ── Entry points ──────────────────────────────────────────────────────────

    async def place_order(
        self,
        user_id_or_reg: str | None,
        items: Iterable[OrderItemRequest | dict],
        prep_station_id: str | None = None,
        ordering_window_id: str | None = None,
        external: bool = False,
        issued_by_admin_id: str | None = None,
        trust_balance_check: bool = True,
    ) -> PlacementResult:
        requests = _coerce_items(items)

        async def op(uow: UnitOfWork) -> PlacementResult:
            return await self._place(
                uow,
                user_id_or_reg,
                requests,
                prep_station_id=prep_station_id,
                ordering_window_id=ordering_window_id,
                external=external,
                issued_by_admin_id=issued_by_admin_id,
                trust_balance_check=trust_balance_check,
            )

        result = await self.uow_factory.run(op)
        logger.info(
            "Order %s placed (user=%s total=%s status=%s external=%s)",
            result.order.code, result.order.user_id, result.order.total, result.order.status.value, external,
        )
        return result

    async def issue_external_order(
        self,
        admin_id: str,
        items: Iterable[OrderItemRequest | dict],
        issued_to_name: str | None = None,
        expires_in_minutes: int | None = None,
        note: str = "",
        prep_station_id: str | None = None,
        ordering_window_id: str | None = None,
    ) -> PlacementResult:
        """Walk-up order paid outside the balance ledger; hands out a time-limited pickup code."""
        requests = _coerce_items(items)
        minutes = settings.EXTERNAL_CODE_EXPIRY_MINUTES if expires_in_minutes is None else expires_in_minutes

        async def op(uow: UnitOfWork) -> PlacementResult:
            result = await self._place(
                uow,
                None,
                requests,
                prep_station_id=prep_station_id,
                ordering_window_id=ordering_window_id,
                external=True,
                issued_by_admin_id=admin_id,
                trust_balance_check=False,
                expires_in_minutes=minutes,
                issued_to_name=issued_to_name,
            )
            order = result.order
            # Captured up front: a failed best-effort write rolls back and expires the order
            order_id, code = order.id, order.code
            applied = [InventoryChange.model_validate(c) for c in order.meta.get("inventory_changes", [])]
            transaction_id = result.transaction.id if result.transaction is not None else None
            external_code = ExternalCode(
                code=order.code,
                value=order.total,
                order_id=order.id,
                issued_to_name=issued_to_name,
                issued_by_id=admin_id,
                expires_at=order.expires_at,
                used=False,
                meta={"note": note} if note else {},
            )
            try:
                await uow.add(external_code)
            except Exception:
                await uow.compensate(
                    f"external order {code}: pickup code insert failed",
                    lambda: self._undo_placement(uow, order_id, applied, transaction_id),
                )
                raise
            result.external_code = external_code
            return result

        result = await self.uow_factory.run(op)
        logger.info(
            "External order %s issued by %s (total=%s, expires=%s)",
            result.order.code, admin_id, result.order.total, result.order.expires_at,
        )
        return result

    # ── Algorithm ─────────────────────────────────────────────────────────────

    async def _place(
        self,
        uow: UnitOfWork,
        user_id_or_reg: str | None,
        requests: list[OrderItemRequest],
        prep_station_id: str | None,
        ordering_window_id: str | None,
        external: bool,
        issued_by_admin_id: str | None,
        trust_balance_check: bool,
        expires_in_minutes: int | None = None,
        issued_to_name: str | None = None,
    ) -> PlacementResult:
        now = self.clock()

        user = None
        if not external:
            user = await balance.resolve_user(uow, user_id_or_reg, lock=True)

        lines = await self._snapshot_lines(uow, requests, external, now)
        total = sum((line.subtotal for line in lines), Decimal("0"))

        if user is not None and trust_balance_check and Decimal(user.balance) < total:
            raise InsufficientBalanceError(required=total, available=Decimal(user.balance))

        code = await allocate_pickup_code(uow)
        meta = {}
        if issued_by_admin_id:
            meta["issued_by_admin_id"] = issued_by_admin_id
        if issued_to_name:
            meta["issued_to_name"] = issued_to_name
        order = Order(
            code=code,
            user_id=user.id if user else None,
            reg_number=user.reg_number if user else None,
            items=[line.model_dump(mode="json") for line in lines],
            total=total,
            status=OrderStatus.PLACED,
            ordering_window_id=ordering_window_id,
            prep_station_id=prep_station_id,
            external=external,
            expires_at=now + timedelta(minutes=expires_in_minutes) if expires_in_minutes is not None else None,
            meta=meta,
        )
        await uow.add(order)
        order_id = order.id

        applied: list[InventoryChange] = []
        try:
            await self.inventory.deduct(uow, lines, applied)
        except InsufficientStockError:
            await uow.compensate(
                f"order {code}: stock shortfall after insert",
                lambda: self._undo_placement(uow, order_id, applied),
            )
            raise

        auto_prepared = self._auto_prepare(lines)
        meta = dict(meta)
        meta["inventory_changes"] = [change.model_dump(mode="json") for change in applied]
        meta["auto_prepared"] = [item.model_dump(mode="json") for item in auto_prepared]
        meta["prepared_count"] = sum(line.prepared_count for line in lines)
        order.items = [line.model_dump(mode="json") for line in lines]
        order.meta = meta
        if lines and len(auto_prepared) == len(lines):
            order.status = OrderStatus.READY
            order.prep_by_id = issued_by_admin_id
        await uow.save()

        if user is not None:
            try:
                movement = await balance.debit(uow, user.id, total, allow_negative=not trust_balance_check)
            except InsufficientBalanceError:
                compensated = await uow.compensate(
                    f"order {code}: balance debit failed after stock deduction",
                    lambda: self._undo_placement(uow, order_id, applied),
                )
                if not compensated:
                    logger.error("Order %s left without payment; reconcile manually", code)
                raise
            transaction = await balance.write_transaction(
                uow,
                TransactionType.ORDER,
                -total,
                user_id=user.id,
                movement=movement,
                related_order_id=order_id,
                created_by_id=issued_by_admin_id or user.id,
                note=f"Order {code}",
            )
        else:
            transaction = await balance.write_transaction(
                uow,
                TransactionType.EXTERNAL,
                total,
                related_order_id=order_id,
                created_by_id=issued_by_admin_id,
                note=f"External sale - Order {code}",
            )

        await record_audit(
            uow,
            issued_by_admin_id or (user.id if user else None),
            "place_order",
            collection_name="orders",
            document_id=order_id,
            changes={
                "total": str(total),
                "items": [{"name": line.name, "qty": line.qty, "price": str(line.price)} for line in lines],
            },
            meta={
                "external": external,
                "inventory_changes": meta["inventory_changes"],
                "auto_prepared": meta["auto_prepared"],
                "fallback": not uow.transactional,
            },
        )
        return PlacementResult(order=order, transaction=transaction, warnings=uow.warnings)

    async def _snapshot_lines(
        self, uow: UnitOfWork, requests: list[OrderItemRequest], external: bool, now: datetime
    ) -> list[OrderLine]:
        if not requests:
            raise ValidationError("Order must contain at least one item")
        lines = []
        for item in requests:
            if item.qty <= 0:
                raise ValidationError(f"Quantity must be positive for product {item.product_id}")
            product = await uow.get(Product, item.product_id)
            if product is None:
                raise ProductNotFoundError(item.product_id)
            if not external and not product.is_available_at(now.astimezone(self.availability_tz)):
                raise ProductNotFoundError(item.product_id, f"Product {item.product_id} not found or unavailable")
            lines.append(OrderLine(
                product_id=product.id,
                name=product.name,
                price=Decimal(product.price),
                qty=item.qty,
                notes=item.notes or "",
                category=product.category,
                allergens=list(product.allergens or []),
            ))
        return lines

    def _auto_prepare(self, lines: list[OrderLine]) -> list[AutoPreparedItem]:
        prepared = []
        for line in lines:
            if normalize_category(line.category) in self.auto_prepare_categories:
                line.prepared_count = line.qty
                prepared.append(AutoPreparedItem(product_id=line.product_id, name=line.name, qty=line.qty))
        return prepared

    async def _undo_placement(
        self, uow: UnitOfWork, order_id: str, applied: list[InventoryChange], transaction_id: str | None = None
    ) -> None:
        if applied:
            await self.inventory.restore_changes(uow, applied)
        if transaction_id:
            await uow.remove(LedgerTransaction, transaction_id)
        await uow.remove(Order, order_id)


def _coerce_items(items: Iterable[OrderItemRequest | dict]) -> list[OrderItemRequest]:
    try:
        return [i if isinstance(i, OrderItemRequest) else OrderItemRequest.model_validate(i) for i in items]
    except PydanticValidationError as exc:
        raise ValidationError(f"Invalid order items: {exc.errors()[0].get('msg', exc)}") from exc
