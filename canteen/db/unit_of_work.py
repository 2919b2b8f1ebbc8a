"""
Canteen Core — Unit of Work

Placement, refunds and balance movements are written once against the
UnitOfWork interface and executed through UnitOfWorkFactory.run():

  TransactionalUnitOfWork — one session, one database transaction. Rows read
      for mutation are locked (SELECT ... FOR UPDATE); any exception aborts
      everything, so compensations are no-ops.
  BestEffortUnitOfWork    — every write commits on its own. Conditional
      updates are the only atomicity; compensations really run.

The factory starts transactional unless configured or probed otherwise. A
StorageUnsupportedOperationError (or a driver error saying the same) on the
first attempt flips it to best-effort for the rest of the process and the
operation is re-run from scratch.
"""
import logging
from typing import Any, Awaitable, Callable, TypeVar

from sqlalchemy import Select, delete, select, update
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from canteen.core.errors import PartialFailureWarning, StorageUnsupportedOperationError
from canteen.db.database import is_transaction_unsupported, probe_transaction_support

logger = logging.getLogger(__name__)

T = TypeVar("T")

MODE_AUTO = "auto"
MODE_TRANSACTIONAL = "transactional"
MODE_BEST_EFFORT = "best_effort"


class UnitOfWork:
    transactional = False
    mode = ""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory
        self.session: AsyncSession | None = None
        self.warnings: list[PartialFailureWarning] = []
        self._after_commit: list[Callable[[], Awaitable[Any]]] = []

    # ── lifecycle ─────────────────────────────────────────────────────────────

    async def __aenter__(self) -> "UnitOfWork":
        await self.begin()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        try:
            if exc_type is None:
                await self.commit()
            else:
                await self.abort()
        finally:
            await self.session.close()
        if exc_type is None:
            await self._run_after_commit()
        return False

    async def begin(self) -> None:
        self.session = self._session_factory()

    async def commit(self) -> None:
        await self.session.commit()

    async def abort(self) -> None:
        await self.session.rollback()

    def after_commit(self, callback: Callable[[], Awaitable[Any]]) -> None:
        """Run ``callback`` once the unit has committed (cache invalidation and the like)."""
        self._after_commit.append(callback)

    async def _run_after_commit(self) -> None:
        for callback in self._after_commit:
            try:
                await callback()
            except Exception as exc:
                logger.warning("After-commit hook %r failed: %s", callback, exc)

    # ── reads ─────────────────────────────────────────────────────────────────

    async def scalars(self, stmt: Select, lock: bool = False) -> list:
        # populate_existing: a re-read must see rows changed by conditional
        # updates, not the identity map's cached attributes.
        stmt = stmt.execution_options(populate_existing=True)
        if lock and self.transactional:
            stmt = stmt.with_for_update()
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def get(self, model, ident: str, lock: bool = False):
        rows = await self.scalars(select(model).where(model.id == ident), lock=lock)
        return rows[0] if rows else None

    async def scalar(self, stmt):
        return (await self.session.execute(stmt)).scalar()

    # ── writes ────────────────────────────────────────────────────────────────

    async def add(self, obj) -> None:
        self.session.add(obj)
        await self._write()

    async def save(self) -> None:
        """Persist changes made to objects already attached to the session."""
        await self._write()

    async def remove(self, model, ident: str) -> bool:
        """Delete by primary key without touching (possibly expired) ORM state."""
        result = await self.session.execute(
            delete(model).where(model.id == ident).execution_options(synchronize_session=False)
        )
        await self._write()
        return result.rowcount == 1

    async def atomic_update(self, model, ident: str, values: dict, *conditions) -> bool:
        """
        ``UPDATE model SET values WHERE id = ident AND conditions``.
        Returns False when no row matched (condition failed or row gone).
        """
        stmt = (
            update(model)
            .where(model.id == ident, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self.session.execute(stmt)
        await self._write()
        return result.rowcount == 1

    async def append_record(self, stage: str, obj, atomic: bool = False) -> bool:
        """
        Insert an append-only record (ledger entry, audit entry).

        ``atomic=True`` makes the insert part of the unit when it is
        transactional; otherwise the insert is best-effort: a failure is logged,
        added to ``warnings`` and never aborts the operation.
        """
        if atomic and self.transactional:
            await self.add(obj)
            return True
        try:
            await self._write_isolated(obj)
        except Exception as exc:
            logger.warning("Best-effort %s write failed: %s", stage, exc)
            self.warnings.append(PartialFailureWarning(stage, str(exc)))
            return False
        return True

    async def compensate(self, description: str, action: Callable[[], Awaitable[Any]]) -> bool:
        """Undo an already-committed step. Transactional units leave it to abort()."""
        return True

    async def _write(self) -> None:
        raise NotImplementedError

    async def _write_isolated(self, obj) -> None:
        raise NotImplementedError


class TransactionalUnitOfWork(UnitOfWork):
    transactional = True
    mode = MODE_TRANSACTIONAL

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], engine: AsyncEngine):
        super().__init__(session_factory)
        self._engine = engine

    async def begin(self) -> None:
        if self._engine.get_execution_options().get("isolation_level") == "AUTOCOMMIT":
            raise StorageUnsupportedOperationError("Engine runs in AUTOCOMMIT; no multi-statement transactions")
        await super().begin()
        await self.session.begin()

    async def _write(self) -> None:
        await self.session.flush()

    async def _write_isolated(self, obj) -> None:
        # SAVEPOINT: a failed best-effort insert must not poison the transaction
        async with self.session.begin_nested():
            self.session.add(obj)
            await self.session.flush()


class BestEffortUnitOfWork(UnitOfWork):
    transactional = False
    mode = MODE_BEST_EFFORT

    async def _write(self) -> None:
        try:
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            raise

    async def _write_isolated(self, obj) -> None:
        # Own session: a failed insert must not roll back (and expire) the main
        # one. Close the main session's open read transaction first so the two
        # never wait on each other's locks.
        await self.session.commit()
        async with self._session_factory() as side:
            side.add(obj)
            await side.commit()

    async def compensate(self, description: str, action: Callable[[], Awaitable[Any]]) -> bool:
        try:
            await self.session.rollback()
            await action()
            await self.session.commit()
        except Exception:
            await self.session.rollback()
            logger.error(
                "Compensation failed (%s); manual reconciliation required", description, exc_info=True
            )
            return False
        logger.warning("Compensated after best-effort failure: %s", description)
        return True


class UnitOfWorkFactory:
    """Chooses the unit-of-work flavour and owns the fallback switch."""

    def __init__(self, engine: AsyncEngine, mode: str = MODE_AUTO, transactions_supported: bool | None = None):
        if mode not in (MODE_AUTO, MODE_TRANSACTIONAL, MODE_BEST_EFFORT):
            raise ValueError(f"Unknown TRANSACTION_MODE '{mode}'")
        self.engine = engine
        self.mode = mode
        self.transactions_supported = transactions_supported
        self.session_factory = async_sessionmaker(engine, expire_on_commit=False)

    async def probe(self) -> bool:
        if self.mode == MODE_BEST_EFFORT:
            self.transactions_supported = False
        else:
            self.transactions_supported = await probe_transaction_support(self.engine)
        logger.info("Unit of work mode: %s", self.active_mode)
        return bool(self.transactions_supported)

    @property
    def active_mode(self) -> str:
        if self.mode == MODE_BEST_EFFORT or self.transactions_supported is False:
            return MODE_BEST_EFFORT
        return MODE_TRANSACTIONAL

    def create(self) -> UnitOfWork:
        if self.active_mode == MODE_BEST_EFFORT:
            return BestEffortUnitOfWork(self.session_factory)
        return TransactionalUnitOfWork(self.session_factory, self.engine)

    async def run(self, operation: Callable[[UnitOfWork], Awaitable[T]]) -> T:
        uow = self.create()
        try:
            async with uow:
                return await operation(uow)
        except StorageUnsupportedOperationError:
            if not self._can_fall_back(uow):
                raise
        except DBAPIError as exc:
            if not (is_transaction_unsupported(exc) and self._can_fall_back(uow)):
                raise

        logger.warning("Storage rejected multi-statement transactions; switching to best-effort unit of work")
        self.transactions_supported = False
        async with BestEffortUnitOfWork(self.session_factory) as fallback:
            return await operation(fallback)

    def _can_fall_back(self, uow: UnitOfWork) -> bool:
        return uow.transactional and self.mode == MODE_AUTO
