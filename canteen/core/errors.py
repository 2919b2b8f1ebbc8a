"""
Canteen Core — Error taxonomy

Every hard failure is a CanteenError carrying a machine-readable ``kind`` and
the HTTP status the API layer answers with. StorageUnsupportedOperationError
is internal: the unit-of-work factory catches it and switches to the
best-effort path.
"""
from decimal import Decimal
from typing import Any


class CanteenError(Exception):
    kind = "canteen_error"
    status_code = 500

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"ok": False, "kind": self.kind, "error": self.message}
        if self.details:
            body["details"] = {k: _jsonable(v) for k, v in self.details.items()}
        return body


class ValidationError(CanteenError):
    kind = "validation_error"
    status_code = 400


class UserNotFoundError(CanteenError):
    kind = "user_not_found"
    status_code = 404


class ProductNotFoundError(CanteenError):
    kind = "product_not_found"
    status_code = 404

    def __init__(self, product_id: str, message: str | None = None):
        super().__init__(message or f"Product not found: {product_id}", product_id=product_id)
        self.product_id = product_id


class OrderNotFoundError(CanteenError):
    kind = "order_not_found"
    status_code = 404


class InsufficientBalanceError(CanteenError):
    kind = "insufficient_balance"
    status_code = 402

    def __init__(self, required: Decimal, available: Decimal | None = None, message: str | None = None):
        super().__init__(
            message or "Insufficient balance",
            required=required,
            available=available,
        )
        self.required = required
        self.available = available


class InsufficientStockError(CanteenError):
    kind = "insufficient_stock"
    status_code = 409

    def __init__(self, product_id: str, requested: int, available: int, name: str | None = None):
        super().__init__(
            f"Insufficient stock for product {name or product_id}: "
            f"requested={requested}, available={available}",
            product_id=product_id,
            requested=requested,
            available=available,
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class OrderStateError(CanteenError):
    kind = "invalid_order_state"
    status_code = 409


class PickupCodeExpiredError(CanteenError):
    kind = "pickup_code_expired"
    status_code = 410


class PickupCodeExhaustedError(CanteenError):
    kind = "pickup_code_exhausted"
    status_code = 503


class StorageUnsupportedOperationError(CanteenError):
    """The storage deployment cannot run multi-statement transactions."""
    kind = "storage_unsupported"


class PartialFailureWarning(Warning):
    """A best-effort step failed after the economically significant effect committed."""

    def __init__(self, stage: str, message: str):
        super().__init__(f"{stage}: {message}")
        self.stage = stage
        self.message = message

    def to_dict(self) -> dict[str, str]:
        return {"kind": "partial_failure", "stage": self.stage, "message": self.message}


def _jsonable(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    return value
