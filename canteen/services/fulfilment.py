"""
Canteen Core — Kitchen preparation, pickup lookup, collection and cancellation

Prepared counts live on the frozen order lines; the order status is derived
from them (all units prepared -> ready, some -> preparing, none -> placed).
Pickup-code expiry is evaluated against the clock at read time; nothing
sweeps expired codes in the background.
"""
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy import select

from canteen.core.errors import OrderNotFoundError, OrderStateError, PickupCodeExpiredError, ValidationError
from canteen.db.unit_of_work import UnitOfWork, UnitOfWorkFactory
from canteen.models.order import CANCELLABLE_STATUSES, COLLECTABLE_STATUSES, ExternalCode, Order, OrderStatus
from canteen.schemas.order import OrderLine
from canteen.services.audit import record_audit
from canteen.services.refunds import find_order

logger = logging.getLogger(__name__)

PREPARABLE_STATUSES = (OrderStatus.PLACED, OrderStatus.PREPARING)
UNPREPARABLE_STATUSES = (OrderStatus.PLACED, OrderStatus.PREPARING, OrderStatus.READY)


@dataclass
class OrderLookup:
    order: Order
    external_code: ExternalCode | None
    expired: bool

    @property
    def issued_to_name(self) -> str | None:
        if self.external_code is not None:
            return self.external_code.issued_to_name
        return (self.order.meta or {}).get("issued_to_name")


def derive_status(lines: list[OrderLine]) -> OrderStatus:
    prepared = sum(min(line.prepared_count, line.qty) for line in lines)
    required = sum(line.qty for line in lines)
    if required and prepared >= required:
        return OrderStatus.READY
    if prepared > 0:
        return OrderStatus.PREPARING
    return OrderStatus.PLACED


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class FulfilmentService:
    def __init__(self, uow_factory: UnitOfWorkFactory, clock: Callable[[], datetime] = _utcnow):
        self.uow_factory = uow_factory
        self.clock = clock

    # ── Kitchen ───────────────────────────────────────────────────────────────

    async def prepare_product(self, operator_id: str | None, product_name: str) -> Order:
        """Mark one unit of ``product_name`` prepared on the oldest order still waiting for it."""
        return await self._step(operator_id, product_name, +1)

    async def unprepare_product(self, operator_id: str | None, product_name: str) -> Order:
        """Revert the most recently placed prepared unit of ``product_name``."""
        return await self._step(operator_id, product_name, -1)

    async def _step(self, operator_id: str | None, product_name: str, delta: int) -> Order:
        key = (product_name or "").strip().lower()
        if not key:
            raise ValidationError("product_name is required")

        async def op(uow: UnitOfWork) -> Order:
            if delta > 0:
                stmt = (
                    select(Order)
                    .where(Order.status.in_(PREPARABLE_STATUSES))
                    .order_by(Order.created_at.asc(), Order.id.asc())
                )
            else:
                stmt = (
                    select(Order)
                    .where(Order.status.in_(UNPREPARABLE_STATUSES))
                    .order_by(Order.created_at.desc(), Order.id.desc())
                )
            for order in await uow.scalars(stmt, lock=True):
                lines = [OrderLine.model_validate(i) for i in order.items or []]
                line = next((l for l in lines if _matches(l, key, delta)), None)
                if line is None:
                    continue
                line.prepared_count += delta
                status = derive_status(lines)
                order.items = [l.model_dump(mode="json") for l in lines]
                meta = dict(order.meta or {})
                meta["prepared_count"] = sum(l.prepared_count for l in lines)
                order.meta = meta
                order.status = status
                if delta > 0:
                    order.prep_by_id = operator_id
                await uow.save()
                await record_audit(
                    uow, operator_id, "prepare_item" if delta > 0 else "unprepare_item",
                    collection_name="orders", document_id=order.id,
                    changes={"product_name": line.name, "prepared_count": line.prepared_count, "status": status.value},
                )
                return order
            raise OrderNotFoundError(
                f"No order is waiting for '{product_name}'" if delta > 0 else f"No prepared '{product_name}' to revert",
                product_name=product_name,
            )

        order = await self.uow_factory.run(op)
        logger.info("%s %s on order %s -> %s", "Prepared" if delta > 0 else "Unprepared",
                    product_name, order.code, order.status.value)
        return order

    # ── Pickup ────────────────────────────────────────────────────────────────

    async def find_order_by_code(self, code: str) -> OrderLookup:
        async def op(uow: UnitOfWork) -> OrderLookup:
            rows = await uow.scalars(select(Order).where(Order.code == code))
            if not rows:
                raise OrderNotFoundError(f"Order not found: {code}", code=code)
            return await self._lookup(uow, rows[0])

        return await self.uow_factory.run(op)

    async def _lookup(self, uow: UnitOfWork, order: Order, lock: bool = False) -> OrderLookup:
        codes = await uow.scalars(select(ExternalCode).where(ExternalCode.order_id == order.id), lock=lock)
        external_code = codes[0] if codes else None
        now = self.clock()
        expired = order.is_expired(now) or (external_code is not None and external_code.is_expired(now))
        return OrderLookup(order=order, external_code=external_code, expired=expired)

    async def collect_order(
        self,
        operator_id: str | None,
        order_id: str | None = None,
        code: str | None = None,
        reg_number: str | None = None,
    ) -> Order:
        reference = order_id or code
        if not reference:
            raise ValidationError("order_id or code is required")

        async def op(uow: UnitOfWork) -> Order:
            order = await find_order(uow, reference, lock=True)
            if order is None:
                raise OrderNotFoundError(f"Order not found: {reference}", reference=reference)
            if order.status == OrderStatus.COLLECTED:
                raise OrderStateError(f"Order {order.code} was already collected", status=order.status.value)
            if order.status not in COLLECTABLE_STATUSES:
                raise OrderStateError(
                    f"Order {order.code} cannot be collected while {order.status.value}", status=order.status.value
                )
            if reg_number and order.reg_number and reg_number != order.reg_number:
                raise ValidationError("Registration number does not match the order", reg_number=reg_number)

            lookup = await self._lookup(uow, order, lock=True)
            if lookup.expired:
                raise PickupCodeExpiredError(f"Pickup code {order.code} has expired", code=order.code)
            if lookup.external_code is not None and lookup.external_code.used:
                raise OrderStateError(f"Pickup code {order.code} was already used", code=order.code)

            now = self.clock()
            order.status = OrderStatus.COLLECTED
            order.collected_at = now
            order.collected_by_reg_number = reg_number or order.reg_number
            order.collected_by_operator_id = operator_id
            if lookup.external_code is not None:
                lookup.external_code.used = True
                lookup.external_code.used_at = now
                lookup.external_code.used_by_reg_number = reg_number
            await uow.save()
            await record_audit(
                uow, operator_id, "collect_order", collection_name="orders", document_id=order.id,
                changes={"code": order.code, "reg_number": order.collected_by_reg_number, "external": order.external},
            )
            return order

        order = await self.uow_factory.run(op)
        logger.info("Order %s collected by operator %s", order.code, operator_id)
        return order

    # ── Cancellation ──────────────────────────────────────────────────────────

    async def cancel_order(
        self,
        operator_id: str | None,
        order_id: str | None = None,
        code: str | None = None,
        reason: str = "",
    ) -> Order:
        """
        Side-exit from any non-terminal state. Stock and balance stay as they
        are; a refund against the order puts them back and keeps ``cancelled``.
        """
        reference = order_id or code
        if not reference:
            raise ValidationError("order_id or code is required")

        async def op(uow: UnitOfWork) -> Order:
            order = await find_order(uow, reference, lock=True)
            if order is None:
                raise OrderNotFoundError(f"Order not found: {reference}", reference=reference)
            if order.status not in CANCELLABLE_STATUSES:
                raise OrderStateError(
                    f"Order {order.code} cannot be cancelled while {order.status.value}", status=order.status.value
                )
            previous = order.status
            meta = dict(order.meta or {})
            meta["cancelled_by"] = operator_id
            if reason:
                meta["cancel_reason"] = reason
            order.meta = meta
            order.status = OrderStatus.CANCELLED
            await uow.save()
            await record_audit(
                uow, operator_id, "cancel_order", collection_name="orders", document_id=order.id,
                changes={"code": order.code, "from": previous.value, "to": OrderStatus.CANCELLED.value},
                meta={"reason": reason} if reason else None,
            )
            return order

        order = await self.uow_factory.run(op)
        logger.info("Order %s cancelled by operator %s", order.code, operator_id)
        return order


def _matches(line: OrderLine, key: str, delta: int) -> bool:
    if line.name.strip().lower() != key:
        return False
    if delta > 0:
        return line.prepared_count < line.qty
    return line.prepared_count > 0
