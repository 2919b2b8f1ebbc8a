"""
Canteen Core — Pickup code generation
"""
import logging
import secrets

from sqlalchemy import select

from canteen.core.config import get_settings
from canteen.core.errors import PickupCodeExhaustedError
from canteen.db.unit_of_work import UnitOfWork
from canteen.models.order import ExternalCode, Order

settings = get_settings()
logger = logging.getLogger(__name__)

# No 0/O, 1/I/L: codes are read aloud at the counter.
CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"


def generate_pickup_code(prefix: str | None = None, length: int | None = None) -> str:
    prefix = settings.PICKUP_CODE_PREFIX if prefix is None else prefix
    length = length or settings.PICKUP_CODE_LENGTH
    return prefix + "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


async def code_in_use(uow: UnitOfWork, code: str) -> bool:
    order_id = await uow.scalar(select(Order.id).where(Order.code == code))
    if order_id is not None:
        return True
    return await uow.scalar(select(ExternalCode.id).where(ExternalCode.code == code)) is not None


async def allocate_pickup_code(uow: UnitOfWork, max_attempts: int | None = None) -> str:
    """
    Draw codes until one is free in both orders and external_codes.
    The unique constraints stay the backstop against a concurrent insert.
    """
    attempts = max_attempts or settings.PICKUP_CODE_MAX_ATTEMPTS
    for attempt in range(1, attempts + 1):
        code = generate_pickup_code()
        if not await code_in_use(uow, code):
            return code
        logger.warning("Pickup code collision on %s (attempt %d/%d)", code, attempt, attempts)
    raise PickupCodeExhaustedError(f"Could not allocate a unique pickup code after {attempts} attempts")
