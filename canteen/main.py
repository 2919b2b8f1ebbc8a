"""
Canteen Core — FastAPI application entrypoint
"""
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from sqlalchemy.ext.asyncio import AsyncEngine

from canteen.api import accounting, health, inventory, orders
from canteen.api.deps import CanteenServices, build_services
from canteen.core.config import get_settings
from canteen.core.errors import CanteenError
from canteen.core.redis_client import close_redis
from canteen.db.database import Base, engine
from canteen.middleware.auth import JWTAuthMiddleware
from canteen.middleware.idempotency import IdempotencyMiddleware

settings = get_settings()
logging.basicConfig(
    level=settings.LOG_LEVEL.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


def init_services(app: FastAPI, db_engine: AsyncEngine, transaction_mode: str | None = None) -> CanteenServices:
    services = build_services(db_engine, transaction_mode)
    app.state.services = services
    return services


@asynccontextmanager
async def lifespan(app: FastAPI):
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    services = init_services(app, engine)
    await services.uow_factory.probe()
    yield
    await close_redis()
    await engine.dispose()


app = FastAPI(
    title="Canteen Core",
    description="Order placement, inventory settlement and prepaid-balance ledger for the campus canteen.",
    version=settings.SERVICE_VERSION,
    lifespan=lifespan,
    docs_url="/docs" if settings.DEBUG else None,
    redoc_url=None,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Last added runs first: auth sets request.state.user before idempotency scopes its key
app.add_middleware(IdempotencyMiddleware)
app.add_middleware(JWTAuthMiddleware)

if settings.METRICS_ENABLED:
    Instrumentator().instrument(app).expose(app, endpoint="/metrics")


@app.exception_handler(CanteenError)
async def canteen_error_handler(request: Request, exc: CanteenError):
    if exc.status_code >= 500:
        logger.error("%s on %s %s: %s", exc.kind, request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"ok": False, "kind": "internal_error", "error": "Internal server error"},
    )


app.include_router(orders.router)
app.include_router(orders.kitchen_router)
app.include_router(accounting.router)
app.include_router(inventory.router)
app.include_router(health.router)


@app.get("/")
async def root():
    return {"service": settings.SERVICE_NAME, "version": settings.SERVICE_VERSION}
