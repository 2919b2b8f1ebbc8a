"""
Canteen Core — User account model

[CONFIG DATA] identity fields are managed by the campus directory.
[TRANSACTIONAL DATA] ``balance`` is only ever moved by the balance ledger.
"""
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import Boolean, DateTime, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column

from canteen.db.database import Base


class UserRole(str, PyEnum):
    STUDENT = "student"
    ADMIN = "admin"
    CANTEEN = "canteen"
    IT = "it"
    INVENTORY = "inventory"
    EXTERNAL = "external"


class UserAccount(Base):
    """
    A person holding a prepaid balance. Students carry a registration
    number; staff accounts may not.
    """
    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    reg_number: Mapped[str | None] = mapped_column(String(64), unique=True, index=True, nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    role: Mapped[str] = mapped_column(String(32), nullable=False, default=UserRole.STUDENT.value)
    balance: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False, default=Decimal("0"))
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
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
        return f"<UserAccount reg_number={self.reg_number} role={self.role}>"
