"""
Canteen Core — Order and pickup-code models

[TRANSACTIONAL DATA] — orders are immutable once placed apart from their
lifecycle fields (status, prepared counts, collection) and refund markers.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import JSON, Boolean, DateTime, Enum, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from canteen.db.database import Base


class OrderStatus(str, PyEnum):
    PLACED = "placed"
    PREPARING = "preparing"
    READY = "ready"
    COLLECTED = "collected"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


COLLECTABLE_STATUSES = frozenset({OrderStatus.PREPARING, OrderStatus.READY})
CANCELLABLE_STATUSES = frozenset({OrderStatus.PLACED, OrderStatus.PREPARING, OrderStatus.READY})


class Order(Base):
    """
    ``items`` holds frozen line snapshots (see ``canteen.schemas.order.OrderLine``);
    ``meta`` holds ``inventory_changes`` (provenance), ``auto_prepared``,
    ``prepared_count``, ``issued_by_admin_id`` and ``inventory_restored``.
    """
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    code: Mapped[str] = mapped_column(String(32), unique=True, index=True, nullable=False)
    user_id: Mapped[str | None] = mapped_column(String(36), index=True, nullable=True)
    reg_number: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)
    items: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[OrderStatus] = mapped_column(
        Enum(OrderStatus, name="order_status", values_callable=lambda e: [m.value for m in e]),
        default=OrderStatus.PLACED,
        index=True,
        nullable=False,
    )
    ordering_window_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    prep_station_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    prep_by_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    collected_by_reg_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    collected_by_operator_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    collected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    external: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    remarks: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def is_expired(self, now: datetime | None = None) -> bool:
        return _expired(self.expires_at, now)

    def __repr__(self) -> str:
        return f"<Order code={self.code} status={self.status}>"


class ExternalCode(Base):
    """
    [TRANSACTIONAL DATA] — pickup code handed to a walk-up customer whose order
    was paid outside the balance ledger. Conventionally equal to the order code.
    """
    __tablename__ = "external_codes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    code: Mapped[str] = mapped_column(String(32), unique=True, index=True, nullable=False)
    value: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    order_id: Mapped[str | None] = mapped_column(String(36), index=True, nullable=True)
    issued_to_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    issued_by_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    used: Mapped[bool] = mapped_column(Boolean, default=False, index=True, nullable=False)
    used_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    used_by_reg_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    meta: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), server_default=func.now()
    )

    def is_expired(self, now: datetime | None = None) -> bool:
        return _expired(self.expires_at, now)


def _expired(expires_at: datetime | None, now: datetime | None) -> bool:
    if expires_at is None:
        return False
    now = now or datetime.now(timezone.utc)
    if expires_at.tzinfo is None:
        # SQLite hands back naive datetimes; everything is stored in UTC
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return now > expires_at
