"""
Canteen Core test fixtures

Every test gets its own SQLite database file (aiosqlite). Redis-backed
features are switched off through the environment before ``canteen`` is
imported, since settings are read once; the tests that cover them patch
``get_redis`` with an in-memory stand-in.
"""
import os
import tempfile
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal

os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{tempfile.mkdtemp()}/canteen-app.db")
os.environ["STOCK_CACHE_ENABLED"] = "false"
os.environ["IDEMPOTENCY_ENABLED"] = "false"
os.environ["METRICS_ENABLED"] = "false"
os.environ["JWT_SECRET_KEY"] = "test-secret"
os.environ["OPT_LOCK_BASE_DELAY_MS"] = "1"
os.environ["OPT_LOCK_JITTER_MS"] = "1"

import pytest
import pytest_asyncio
from jose import jwt
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import async_sessionmaker

from canteen.core.config import get_settings
from canteen.core.redis_client import StockCache
from canteen.db.database import Base, create_engine_for
from canteen.db.unit_of_work import UnitOfWorkFactory
from canteen.models.inventory import Inventory
from canteen.models.product import Product
from canteen.models.user import UserAccount, UserRole
from canteen.services.accounting import AccountingService
from canteen.services.fulfilment import FulfilmentService
from canteen.services.inventory import InventoryLedger
from canteen.services.ordering import OrderPlacementEngine
from canteen.services.refunds import RefundEngine

settings = get_settings()


@dataclass
class Seed:
    student_id: str
    poor_student_id: str
    admin_id: str
    burger_id: str
    chips_id: str
    icecream_id: str
    juice_id: str
    burger_main_id: str
    burger_annex_id: str


# ─── Database ──────────────────────────────────────────────────────────────────
@pytest_asyncio.fixture
async def engine(tmp_path):
    db_engine = create_engine_for(f"sqlite+aiosqlite:///{tmp_path}/canteen.db")
    async with db_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield db_engine
    await db_engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest_asyncio.fixture
async def seed(session_factory) -> Seed:
    """
    student     balance 100.00, reg STU-001
    poor        balance   5.00, reg STU-002
    Burger      12.50 Meals      Main 5 + Annex 3
    Chips        2.50 Tuck Shop  Main 10
    Ice cream    3.00 icecream   Main 10
    Juice        4.00 Drinks     no inventory record
    """
    async with session_factory() as session:
        student = UserAccount(name="Ada Student", reg_number="STU-001", balance=Decimal("100.00"))
        poor = UserAccount(name="Bo Student", reg_number="STU-002", balance=Decimal("5.00"))
        admin = UserAccount(name="Cy Admin", role=UserRole.ADMIN.value, balance=Decimal("0"))
        burger = Product(name="Burger", category="Meals", price=Decimal("12.50"), allergens=["gluten"])
        chips = Product(name="Chips", category="Tuck Shop", price=Decimal("2.50"))
        icecream = Product(name="Ice cream", category="icecream", price=Decimal("3.00"))
        juice = Product(name="Juice", category="Drinks", price=Decimal("4.00"))
        session.add_all([student, poor, admin, burger, chips, icecream, juice])
        await session.flush()

        burger_main = Inventory(product_id=burger.id, location="Main", quantity=5)
        burger_annex = Inventory(product_id=burger.id, location="Annex", quantity=3)
        session.add_all([
            burger_main,
            burger_annex,
            Inventory(product_id=chips.id, location="Main", quantity=10),
            Inventory(product_id=icecream.id, location="Main", quantity=10),
        ])
        await session.commit()

        return Seed(
            student_id=student.id,
            poor_student_id=poor.id,
            admin_id=admin.id,
            burger_id=burger.id,
            chips_id=chips.id,
            icecream_id=icecream.id,
            juice_id=juice.id,
            burger_main_id=burger_main.id,
            burger_annex_id=burger_annex.id,
        )


# ─── Services ──────────────────────────────────────────────────────────────────
@pytest.fixture(params=["transactional", "best_effort"])
def uow_factory(request, engine) -> UnitOfWorkFactory:
    """Runs the test once per unit-of-work flavour."""
    return UnitOfWorkFactory(engine, mode=request.param)


@pytest.fixture
def inventory_ledger() -> InventoryLedger:
    return InventoryLedger(StockCache(enabled=False))


@pytest.fixture
def placement(uow_factory, inventory_ledger) -> OrderPlacementEngine:
    return OrderPlacementEngine(uow_factory, inventory_ledger, auto_prepare_categories=["Tuck Shop", " ICECREAM "])


@pytest.fixture
def refunds(uow_factory, inventory_ledger) -> RefundEngine:
    return RefundEngine(uow_factory, inventory_ledger)


@pytest.fixture
def accounting(uow_factory) -> AccountingService:
    return AccountingService(uow_factory)


@pytest.fixture
def fulfilment(uow_factory) -> FulfilmentService:
    return FulfilmentService(uow_factory)


# ─── Helpers ───────────────────────────────────────────────────────────────────
async def stock_of(session_factory, product_id: str) -> int:
    async with session_factory() as session:
        total = await session.scalar(
            select(func.coalesce(func.sum(Inventory.quantity), 0)).where(Inventory.product_id == product_id)
        )
        return int(total)


async def record_quantity(session_factory, inventory_id: str) -> int:
    async with session_factory() as session:
        record = await session.get(Inventory, inventory_id)
        return record.quantity


async def balance_of(session_factory, user_id: str) -> Decimal:
    async with session_factory() as session:
        user = await session.get(UserAccount, user_id)
        return Decimal(user.balance)


def make_token(sub: str, role: str = "student", reg_number: str | None = None, minutes: int = 30) -> str:
    claims = {
        "sub": sub,
        "role": role,
        "reg_number": reg_number,
        "exp": datetime.now(timezone.utc) + timedelta(minutes=minutes),
    }
    return jwt.encode(claims, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)
