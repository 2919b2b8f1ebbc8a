"""
Canteen Core — Menu product model

[CONFIG DATA] — maintained by the menu tooling. Orders snapshot name and
price at placement time, so later edits never reach historical orders.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import JSON, Boolean, DateTime, Integer, Numeric, String, Text, func
from sqlalchemy.orm import Mapped, mapped_column

from canteen.db.database import Base


class Product(Base):
    __tablename__ = "products"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    name: Mapped[str] = mapped_column(String(255), index=True, nullable=False)
    sku: Mapped[str | None] = mapped_column(String(64), index=True, nullable=True)
    category: Mapped[str | None] = mapped_column(String(100), index=True, nullable=True)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    available: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    # [{"day_of_week": 0..6 (0 = Sunday) | null, "start_time": "07:30", "end_time": "10:30"}]
    availability_periods: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    allergens: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    prep_time_minutes: Mapped[int] = mapped_column(Integer, default=5, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        server_default=func.now(),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    def is_available_at(self, moment: datetime) -> bool:
        """Availability flag plus the optional weekly time windows."""
        if not self.available:
            return False
        if not self.availability_periods:
            return True
        day = (moment.weekday() + 1) % 7  # Python Monday=0 -> Sunday=0 convention
        hhmm = moment.strftime("%H:%M")
        for period in self.availability_periods:
            day_of_week = period.get("day_of_week")
            if day_of_week is not None and int(day_of_week) % 7 != day:
                continue
            start, end = period.get("start_time"), period.get("end_time")
            if start and hhmm < start:
                continue
            if end and hhmm > end:
                continue
            return True
        return False

    def __repr__(self) -> str:
        return f"<Product name={self.name} category={self.category}>"
