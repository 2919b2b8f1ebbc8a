"""
Canteen Core — Redis client singleton and stock-total cache

The cache is advisory: the inventory table stays authoritative and every
cache failure is logged and ignored.
"""
import logging
from typing import Iterable

import redis.asyncio as aioredis
from canteen.core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)

STOCK_CACHE_KEY = "stock:{product_id}"

_redis_client: aioredis.Redis | None = None


def get_redis() -> aioredis.Redis:
    global _redis_client
    if _redis_client is None:
        _redis_client = aioredis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_connect_timeout=settings.HEALTH_CHECK_TIMEOUT,
        )
    return _redis_client


async def close_redis():
    global _redis_client
    if _redis_client:
        await _redis_client.aclose()
        _redis_client = None


class StockCache:
    """Last known total stock per product, keyed ``stock:{product_id}``."""

    def __init__(self, enabled: bool | None = None, ttl_seconds: int | None = None):
        self.enabled = settings.STOCK_CACHE_ENABLED if enabled is None else enabled
        self.ttl_seconds = ttl_seconds or settings.STOCK_CACHE_TTL_SECONDS

    async def get(self, product_id: str) -> int | None:
        if not self.enabled:
            return None
        try:
            cached = await get_redis().get(STOCK_CACHE_KEY.format(product_id=product_id))
        except Exception as exc:
            logger.warning("Stock cache read failed for %s: %s", product_id, exc)
            return None
        if cached is None:
            return None
        try:
            return int(cached)
        except ValueError:
            return None

    async def put(self, product_id: str, total: int) -> None:
        if not self.enabled:
            return
        try:
            await get_redis().setex(
                STOCK_CACHE_KEY.format(product_id=product_id), self.ttl_seconds, total
            )
        except Exception as exc:
            logger.warning("Stock cache write failed for %s: %s", product_id, exc)

    async def invalidate(self, product_ids: Iterable[str]) -> None:
        if not self.enabled:
            return
        keys = [STOCK_CACHE_KEY.format(product_id=pid) for pid in set(product_ids)]
        if not keys:
            return
        try:
            await get_redis().delete(*keys)
        except Exception as exc:
            logger.warning("Stock cache invalidation failed for %s: %s", keys, exc)
