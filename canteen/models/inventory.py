"""
Canteen Core — Inventory records

[TRANSACTIONAL DATA during ordering] — ``quantity`` moves with every order and refund.
A product may have several records (one per location/bin); its available
total is the sum of the active ones.
"""
import uuid
from datetime import datetime, timezone

from sqlalchemy import JSON, Boolean, DateTime, Integer, String, func
from sqlalchemy.orm import Mapped, mapped_column

from canteen.db.database import Base

DEFAULT_LOCATION = "Main"


class Inventory(Base):
    """
    Stock of one product at one location. ``quantity`` never goes below zero:
    decrements are conditional on the current quantity.
    """
    __tablename__ = "inventory"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    product_id: Mapped[str] = mapped_column(String(36), index=True, nullable=False)
    location: Mapped[str] = mapped_column(String(100), nullable=False, default=DEFAULT_LOCATION)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    low_stock_threshold: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    meta: Mapped[dict] = mapped_column("metadata", JSON, default=dict, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def __repr__(self) -> str:
        return f"<Inventory product={self.product_id} location={self.location} qty={self.quantity}>"
