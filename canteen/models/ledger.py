"""
Canteen Core — Ledger transactions and audit log

[TRANSACTIONAL DATA] — both tables are append-only. Transactions record every
balance-affecting event; the audit log records who did what to which record.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import JSON, DateTime, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from canteen.db.database import Base


class TransactionType(str, PyEnum):
    TOPUP = "topup"
    ORDER = "order"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"
    RECONCILIATION = "reconciliation"
    EXTERNAL = "external"


class LedgerTransaction(Base):
    """
    ``amount`` is signed: positive credits the user (or is cash in for
    external sales), negative debits. ``user_id`` is null for external sales,
    which also carry no before/after snapshot.
    """
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id: Mapped[str | None] = mapped_column(String(36), index=True, nullable=True)
    type: Mapped[str] = mapped_column(String(32), index=True, nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    balance_before: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    balance_after: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    related_order_id: Mapped[str | None] = mapped_column(String(36), index=True, nullable=True)
    created_by_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    meta: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), server_default=func.now()
    )


class AuditLogEntry(Base):
    __tablename__ = "audit_log"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    actor_id: Mapped[str | None] = mapped_column(String(36), index=True, nullable=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False)
    collection_name: Mapped[str | None] = mapped_column(String(64), nullable=True)
    document_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    changes: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    meta: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), server_default=func.now()
    )
