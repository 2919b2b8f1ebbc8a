"""
Canteen Core — Inventory ledger

Stock for a product is spread over one or more inventory records (one per
location). Deductions take from the fullest active record first and record
exactly which records moved (provenance) so a refund can put units back where
they came from.

Every quantity change is a conditional UPDATE:
  decrement: quantity = quantity - :n WHERE quantity >= :n AND active
  increment: quantity = quantity + :n WHERE active
A decrement that matches no row lost a race; the record is re-read and the
step retried (``with_optimistic_retry``). A product still contended once the
retries run out is reported as InsufficientStockError.
"""
import logging
from collections import OrderedDict
from typing import Iterable

from sqlalchemy import func, select

from canteen.core.errors import InsufficientStockError, PartialFailureWarning, ProductNotFoundError
from canteen.core.optimistic_lock import StaleDataError, with_optimistic_retry
from canteen.core.redis_client import StockCache
from canteen.db.unit_of_work import UnitOfWork
from canteen.models.inventory import DEFAULT_LOCATION, Inventory
from canteen.models.order import Order
from canteen.models.product import Product
from canteen.schemas.order import InventoryChange, OrderLine, RestoredInventory
from canteen.services.audit import record_audit

logger = logging.getLogger(__name__)


class InventoryLedger:
    def __init__(self, cache: StockCache | None = None):
        self.cache = cache or StockCache()

    # ── Queries ───────────────────────────────────────────────────────────────

    async def get_total_quantity(self, uow: UnitOfWork, product_id: str) -> int:
        """Sum of active records; 0 when the product has no records at all."""
        total = await uow.scalar(
            select(func.coalesce(func.sum(Inventory.quantity), 0)).where(
                Inventory.product_id == product_id, Inventory.active.is_(True)
            )
        )
        return int(total or 0)

    async def count_records(self, uow: UnitOfWork, product_id: str) -> int:
        count = await uow.scalar(select(func.count(Inventory.id)).where(Inventory.product_id == product_id))
        return int(count or 0)

    async def get_total_inventory(self, uow: UnitOfWork, product_id: str) -> tuple[int, bool]:
        """Cached total. Returns ``(total, served_from_cache)``."""
        cached = await self.cache.get(product_id)
        if cached is not None:
            return cached, True
        total = await self.get_total_quantity(uow, product_id)
        await self.cache.put(product_id, total)
        return total, False

    async def _active_records(self, uow: UnitOfWork, product_id: str, lock: bool = False) -> list[Inventory]:
        return await uow.scalars(
            select(Inventory)
            .where(Inventory.product_id == product_id, Inventory.active.is_(True))
            .order_by(Inventory.quantity.desc(), Inventory.created_at, Inventory.id),
            lock=lock,
        )

    # ── Deduction ─────────────────────────────────────────────────────────────

    async def deduct(
        self, uow: UnitOfWork, lines: Iterable[OrderLine], applied: list[InventoryChange] | None = None
    ) -> list[InventoryChange]:
        """
        Take stock for every line. Each product is pre-checked against its
        total before any of its records is touched, so a shortfall fails fast
        with InsufficientStockError naming the product.

        Every decrement is appended to ``applied`` as soon as it lands. In a
        best-effort unit those decrements stay committed when a later product
        fails, and the caller compensates from that list.
        """
        applied = [] if applied is None else applied
        requested: "OrderedDict[str, int]" = OrderedDict()
        names: dict[str, str] = {}
        for line in lines:
            requested[line.product_id] = requested.get(line.product_id, 0) + line.qty
            names.setdefault(line.product_id, line.name)

        product_ids = list(requested)
        uow.after_commit(lambda: self.cache.invalidate(product_ids))

        for product_id, qty in requested.items():
            records = await self._active_records(uow, product_id, lock=True)
            available = sum(r.quantity for r in records)
            if available < qty:
                raise InsufficientStockError(product_id, qty, available, name=names.get(product_id))
            await self._take(uow, product_id, qty, names.get(product_id), applied)
        return applied

    async def _take(
        self, uow: UnitOfWork, product_id: str, qty: int, name: str | None, applied: list[InventoryChange]
    ) -> None:
        remaining = qty
        while remaining > 0:
            try:
                change = await self._take_from_fullest(uow, product_id, remaining)
            except StaleDataError as exc:
                logger.warning("Giving up on product %s with %d of %d still to take: %s", product_id, remaining, qty, exc)
                raise InsufficientStockError(product_id, qty, qty - remaining, name=name) from exc
            if change is None:
                # Concurrent writers drained the product between pre-check and now
                raise InsufficientStockError(product_id, qty, qty - remaining, name=name)
            applied.append(change)
            remaining -= change.qty_taken

    @with_optimistic_retry()
    async def _take_from_fullest(self, uow: UnitOfWork, product_id: str, remaining: int) -> InventoryChange | None:
        records = [r for r in await self._active_records(uow, product_id, lock=True) if r.quantity > 0]
        if not records:
            return None
        record = records[0]
        before = record.quantity
        take = min(before, remaining)
        applied = await uow.atomic_update(
            Inventory,
            record.id,
            {"quantity": Inventory.quantity - take},
            Inventory.quantity >= take,
            Inventory.active.is_(True),
        )
        if not applied:
            raise StaleDataError(f"Inventory record {record.id} changed while taking {take}")
        return InventoryChange(
            inventory_id=record.id, product_id=product_id, qty_taken=take, before=before, after=before - take
        )

    # ── Restoration ───────────────────────────────────────────────────────────

    async def restore_changes(self, uow: UnitOfWork, changes: Iterable[InventoryChange]) -> list[RestoredInventory]:
        """Put every provenance entry back on the exact record it came from."""
        restored: list[RestoredInventory] = []
        for change in changes:
            try:
                ok = await uow.atomic_update(
                    Inventory,
                    change.inventory_id,
                    {"quantity": Inventory.quantity + change.qty_taken},
                    Inventory.active.is_(True),
                )
            except Exception as exc:
                if uow.transactional:
                    raise
                # Best-effort: one record failing must not sink the whole reversal
                logger.warning("Restore of %d to inventory %s failed: %s", change.qty_taken, change.inventory_id, exc)
                ok = False
            if not ok:
                uow.warnings.append(PartialFailureWarning(
                    "inventory_restore",
                    f"Could not restore {change.qty_taken} to inventory record {change.inventory_id}",
                ))
            restored.append(RestoredInventory(
                inventory_id=change.inventory_id,
                product_id=change.product_id,
                qty_restored=change.qty_taken if ok else 0,
                ok=ok,
            ))
        product_ids = [c.product_id for c in restored]
        uow.after_commit(lambda: self.cache.invalidate(product_ids))
        return restored

    async def restore_heuristic(self, uow: UnitOfWork, lines: Iterable[OrderLine]) -> list[RestoredInventory]:
        """
        Legacy orders without provenance: add each line's quantity to the
        product's fullest active record. The product total comes back; the
        per-location split may not.
        """
        restored: list[RestoredInventory] = []
        for line in lines:
            records = await self._active_records(uow, line.product_id, lock=True)
            ok = False
            inventory_id = None
            if records:
                inventory_id = records[0].id
                try:
                    ok = await uow.atomic_update(
                        Inventory, inventory_id, {"quantity": Inventory.quantity + line.qty}, Inventory.active.is_(True)
                    )
                except Exception as exc:
                    if uow.transactional:
                        raise
                    logger.warning("Heuristic restore for product %s failed: %s", line.product_id, exc)
            restored.append(RestoredInventory(
                inventory_id=inventory_id,
                product_id=line.product_id,
                qty_restored=line.qty if ok else 0,
                ok=ok,
                heuristic=True,
            ))

        if restored:
            logger.warning("Order had no inventory provenance; restored %d line(s) heuristically", len(restored))
            uow.warnings.append(PartialFailureWarning(
                "inventory_restore",
                "No inventory provenance recorded; stock restored to the fullest record per product",
            ))
        product_ids = [r.product_id for r in restored]
        uow.after_commit(lambda: self.cache.invalidate(product_ids))
        return restored

    async def restore(self, uow: UnitOfWork, order: Order) -> list[RestoredInventory]:
        changes = (order.meta or {}).get("inventory_changes")
        if changes:
            return await self.restore_changes(uow, [InventoryChange.model_validate(c) for c in changes])
        return await self.restore_heuristic(uow, [OrderLine.model_validate(i) for i in order.items or []])

    # ── Provisioning and management ───────────────────────────────────────────

    async def ensure_inventory(self, uow: UnitOfWork, product_id: str) -> Inventory | None:
        """Give a product its first (empty) record. Returns the new record, or None if it had one."""
        if await uow.get(Product, product_id) is None:
            raise ProductNotFoundError(product_id)
        if await self.count_records(uow, product_id) > 0:
            return None
        record = Inventory(product_id=product_id, location=DEFAULT_LOCATION, quantity=0, meta={"auto_created": True})
        await uow.add(record)
        logger.info("Auto-created empty inventory record for product %s", product_id)
        return record

    async def list_inventory(self, uow: UnitOfWork) -> list[dict]:
        products = await uow.scalars(select(Product).order_by(Product.name))
        for product in products:
            await self.ensure_inventory(uow, product.id)

        totals_rows = await uow.session.execute(
            select(Inventory.product_id, func.coalesce(func.sum(Inventory.quantity), 0))
            .where(Inventory.active.is_(True))
            .group_by(Inventory.product_id)
        )
        totals = {product_id: int(total) for product_id, total in totals_rows.all()}
        return [
            {
                "id": p.id,
                "name": p.name,
                "sku": p.sku,
                "category": p.category,
                "price": p.price,
                "available": p.available,
                "total_inventory": totals.get(p.id, 0),
            }
            for p in products
        ]

    async def set_inventory(
        self,
        uow: UnitOfWork,
        actor_id: str | None,
        product_id: str,
        location: str = DEFAULT_LOCATION,
        quantity: int = 0,
        low_stock_threshold: int = 0,
        active: bool = True,
    ) -> Inventory:
        """Upsert the record for (product, location) to an absolute quantity."""
        if await uow.get(Product, product_id) is None:
            raise ProductNotFoundError(product_id)

        existing = await uow.scalars(
            select(Inventory).where(Inventory.product_id == product_id, Inventory.location == location),
            lock=True,
        )
        if existing:
            record = existing[0]
            before = {"quantity": record.quantity, "active": record.active}
            record.quantity = quantity
            record.low_stock_threshold = low_stock_threshold
            record.active = active
            await uow.save()
            action = "inventory_update"
        else:
            before = None
            record = Inventory(
                product_id=product_id,
                location=location,
                quantity=quantity,
                low_stock_threshold=low_stock_threshold,
                active=active,
                meta={},
            )
            await uow.add(record)
            action = "inventory_create"

        await record_audit(
            uow,
            actor_id,
            action,
            collection_name="inventory",
            document_id=record.id,
            changes={"before": before, "after": {"quantity": quantity, "active": active, "location": location}},
        )
        uow.after_commit(lambda: self.cache.invalidate([product_id]))
        return record
