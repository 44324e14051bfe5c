"""
Async engine and session factory.

Statement timeouts are set on the driver so no store call can hang a
request; a timeout surfaces as an error the services map to StorageFailure.
"""

from typing import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from checkin_engine.core.config import get_settings

settings = get_settings()


def _engine_kwargs(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"connect_args": {"timeout": settings.DB_COMMAND_TIMEOUT}}
    return {
        "pool_size": settings.DB_POOL_SIZE,
        "max_overflow": settings.DB_MAX_OVERFLOW,
        "pool_timeout": settings.DB_POOL_TIMEOUT,
        "pool_recycle": settings.DB_POOL_RECYCLE,
        "pool_pre_ping": True,
        "connect_args": {"command_timeout": settings.DB_COMMAND_TIMEOUT},
    }


def configure_sqlite_locking(async_engine) -> None:
    """
    Make SQLite transactions take the write lock up front (BEGIN IMMEDIATE).

    With the driver's default deferred transactions, two connections that
    both read and then write fail with "database is locked" instead of
    queueing. Immediate transactions queue on the busy timeout, which gives
    the same one-writer-at-a-time outcome PostgreSQL gives on the gate row.
    """

    @event.listens_for(async_engine.sync_engine, "connect")
    def _disable_driver_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(async_engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


engine = create_async_engine(settings.DATABASE_URL, echo=settings.DEBUG, **_engine_kwargs(settings.DATABASE_URL))
if settings.DATABASE_URL.startswith("sqlite"):
    configure_sqlite_locking(engine)
AsyncSessionLocal = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with AsyncSessionLocal() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def upsert_insert(db: AsyncSession, table):
    """
    Dialect-specific INSERT supporting ON CONFLICT clauses.

    Conditional inserts are how the services get atomic check-and-write
    without application locks.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(table)
    if dialect == "sqlite":
        return sqlite.insert(table)
    raise NotImplementedError(f"ON CONFLICT inserts are not supported on {dialect}")


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Session factory for handlers that open sessions themselves, such as long-lived sockets."""
    return AsyncSessionLocal
