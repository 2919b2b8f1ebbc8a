"""
Canteen Core — Database engine and capability probe

The engine is created once by the process entry point and handed to the
services; nothing in the core reaches for a global connection on its own.
"""
import logging

from sqlalchemy import event, text
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlalchemy.orm import DeclarativeBase

from canteen.core.config import get_settings

settings = get_settings()
logger = logging.getLogger(__name__)

# Driver messages meaning "this deployment cannot run a multi-statement transaction".
TRANSACTION_UNSUPPORTED_MARKERS = (
    "transaction blocks not allowed",        # PgBouncer, pool_mode=statement
    "transaction numbers are only allowed",
    "transactions are not supported",
)


class Base(DeclarativeBase):
    pass


def create_engine_for(url: str, statement_pooling: bool = False) -> AsyncEngine:
    """Build the async engine. ``statement_pooling`` opens every connection in AUTOCOMMIT."""
    options = {"pool_pre_ping": True}
    if statement_pooling:
        options["execution_options"] = {"isolation_level": "AUTOCOMMIT"}
    new_engine = create_async_engine(url, **options)
    if new_engine.dialect.name == "sqlite" and not statement_pooling:
        _enable_sqlite_transactions(new_engine)
    return new_engine


def _enable_sqlite_transactions(sqlite_engine: AsyncEngine) -> None:
    # pysqlite/aiosqlite defer BEGIN on their own, which breaks SAVEPOINT and
    # lets two writers deadlock on lock upgrade. Take the write lock up front.
    @event.listens_for(sqlite_engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(sqlite_engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def is_transaction_unsupported(exc: BaseException) -> bool:
    message = str(exc).lower()
    return any(marker in message for marker in TRANSACTION_UNSUPPORTED_MARKERS)


async def probe_transaction_support(target: AsyncEngine) -> bool:
    """Return True when ``target`` can run two statements inside one transaction."""
    if target.get_execution_options().get("isolation_level") == "AUTOCOMMIT":
        return False
    try:
        async with target.connect() as conn:
            async with conn.begin():
                await conn.execute(text("SELECT 1"))
                await conn.execute(text("SELECT 1"))
    except DBAPIError as exc:
        if is_transaction_unsupported(exc):
            logger.warning("Storage rejected a multi-statement transaction: %s", exc)
            return False
        raise
    return True


engine = create_engine_for(settings.database_url, settings.DB_STATEMENT_POOLING)
