"""
Canteen Core — Idempotency Key Middleware

Double-submit protection for order placement, backed by Redis:
  - Cache hit  -> replay the stored response, the handler never runs
  - Cache miss -> run the handler, store the response for
    IDEMPOTENCY_KEY_TTL_SECONDS

Keys are scoped to the authenticated subject, so one caller can never replay
another caller's order.
"""
import json
import logging

from fastapi import Request, Response
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from canteen.core.config import get_settings
from canteen.core.redis_client import get_redis

settings = get_settings()
logger = logging.getLogger(__name__)

IDEMPOTENCY_PREFIX = "idempotent:"
IDEMPOTENCY_METHODS = {"POST"}
IDEMPOTENCY_PATHS = {"/orders", "/orders/", "/orders/external"}


class IdempotencyMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        if not settings.IDEMPOTENCY_ENABLED:
            return await call_next(request)

        if request.method not in IDEMPOTENCY_METHODS or request.url.path not in IDEMPOTENCY_PATHS:
            return await call_next(request)

        idem_key = request.headers.get("Idempotency-Key")
        if not idem_key:
            return await call_next(request)

        claims = getattr(request.state, "user", None) or {}
        cache_key = f"{IDEMPOTENCY_PREFIX}{claims.get('sub', 'anonymous')}:{request.url.path}:{idem_key}"
        redis = get_redis()

        try:
            cached = await redis.get(cache_key)
        except Exception as exc:
            # Redis down: no replay protection, but orders keep flowing
            logger.warning("Idempotency lookup failed for %s: %s", cache_key, exc)
            return await call_next(request)

        if cached:
            data = json.loads(cached)
            return JSONResponse(
                content=data["body"],
                status_code=data["status_code"],
                headers={"X-Idempotency-Replay": "true"},
            )

        response = await call_next(request)

        body_bytes = b""
        async for chunk in response.body_iterator:
            body_bytes += chunk

        try:
            body = json.loads(body_bytes)
        except ValueError:
            body = body_bytes.decode("utf-8", errors="replace")

        if response.status_code < 500:
            try:
                await redis.setex(
                    cache_key,
                    settings.IDEMPOTENCY_KEY_TTL_SECONDS,
                    json.dumps({"body": body, "status_code": response.status_code}),
                )
            except Exception as exc:
                logger.warning("Idempotency store failed for %s: %s", cache_key, exc)

        return Response(
            content=body_bytes,
            status_code=response.status_code,
            media_type=response.media_type,
            headers=dict(response.headers),
        )
