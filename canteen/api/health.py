"""
Canteen Core — Health endpoint
"""
import asyncio

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse
from sqlalchemy import text

from canteen.core.config import get_settings
from canteen.core.redis_client import get_redis

settings = get_settings()
router = APIRouter(tags=["health"])


@router.get("/health")
async def health_check(request: Request):
    services = request.app.state.services
    deps: dict[str, str] = {}
    healthy = True

    try:
        async with services.uow_factory.engine.connect() as conn:
            await asyncio.wait_for(conn.execute(text("SELECT 1")), timeout=settings.HEALTH_CHECK_TIMEOUT)
        deps["database"] = "ok"
    except Exception as e:
        deps["database"] = f"error: {str(e)[:100]}"
        healthy = False

    if settings.STOCK_CACHE_ENABLED or settings.IDEMPOTENCY_ENABLED:
        try:
            redis = get_redis()
            await asyncio.wait_for(redis.ping(), timeout=settings.HEALTH_CHECK_TIMEOUT)
            deps["redis"] = "ok"
        except Exception as e:
            deps["redis"] = f"error: {str(e)[:100]}"
            healthy = False
    else:
        deps["redis"] = "disabled"

    return JSONResponse(
        content={
            "status": "healthy" if healthy else "degraded",
            "service": settings.SERVICE_NAME,
            "version": settings.SERVICE_VERSION,
            "unit_of_work": services.uow_factory.active_mode,
            "dependencies": deps,
        },
        status_code=200 if healthy else 503,
    )
