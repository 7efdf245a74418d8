"""
Orderflow — database engine and sessions

One async engine per process; one AsyncSession per request. Correctness
comes from transactions and constraints in the database, never from
locks held in this process.

SQLite (local runs and tests) opens every transaction with BEGIN IMMEDIATE
so concurrent writers queue on the write lock. Without it, two checkouts
that both read before writing would fail on a stale snapshot instead of
one of them seeing the other's decrement.
"""

from sqlalchemy import event
from sqlalchemy.exc import DBAPIError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .schema import metadata

SQLITE_BUSY_TIMEOUT = 15.0


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    if database_url.startswith("sqlite"):
        engine = create_async_engine(
            database_url,
            echo=echo,
            connect_args={"timeout": SQLITE_BUSY_TIMEOUT},
        )
        _use_immediate_transactions(engine)
        return engine
    return create_async_engine(database_url, echo=echo, pool_pre_ping=True)


def _use_immediate_transactions(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


# unique_violation, serialization_failure, deadlock_detected,
# lock_not_available, query_canceled
_RETRYABLE_SQLSTATES = {"23505", "40001", "40P01", "55P03", "57014"}

# sqlite3 carries no SQLSTATE, only the message
_RETRYABLE_SQLITE_MESSAGES = (
    "UNIQUE constraint failed",
    "database is locked",
    "database table is locked",
)


def is_retryable_db_error(exc: DBAPIError) -> bool:
    """
    Uniqueness races, deadlocks, lock contention and timeouts.

    Anything else (missing tables, NOT NULL or CHECK violations, bad SQL)
    is a fault in the deployment and must not be reported as "try again".
    """
    orig = exc.orig
    sqlstate = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if sqlstate is not None:
        return sqlstate in _RETRYABLE_SQLSTATES
    message = str(orig)
    return any(fragment in message for fragment in _RETRYABLE_SQLITE_MESSAGES)
