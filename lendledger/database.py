"""Async database engine, session factory and declarative base."""

from collections.abc import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase

from lendledger.config import settings


class Base(DeclarativeBase):
    pass


def build_engine(url: str | None = None, *, echo: bool | None = None) -> AsyncEngine:
    """Create an async engine with the ledger's lock and statement bounds.

    PostgreSQL sessions get ``lock_timeout`` and ``statement_timeout`` so a
    posting that waits on a contended account row fails instead of hanging.
    SQLite (used in tests) gets the driver hooks that make SAVEPOINT work.
    """
    url = url or settings.database_url
    echo = settings.debug if echo is None else echo

    if url.startswith("sqlite"):
        engine = create_async_engine(url, echo=echo)

        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_connect(dbapi_connection, connection_record):
            # let SQLAlchemy emit BEGIN itself
            dbapi_connection.isolation_level = None
            cursor = dbapi_connection.cursor()
            cursor.execute("PRAGMA foreign_keys=ON")
            cursor.close()

        @event.listens_for(engine.sync_engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN")

        return engine

    wait_ms = int(settings.ledger_tx_max_wait_seconds * 1000)
    statement_ms = int(settings.ledger_tx_timeout_seconds * 1000)
    return create_async_engine(
        url,
        echo=echo,
        pool_size=settings.database_pool_size,
        pool_timeout=settings.ledger_tx_max_wait_seconds,
        pool_pre_ping=True,
        connect_args={
            "server_settings": {
                "lock_timeout": str(wait_ms),
                "statement_timeout": str(statement_ms),
            },
        },
    )


engine = build_engine()
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with async_session() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_models(bind: AsyncEngine | None = None) -> None:
    """Create all tables registered on ``Base`` (development and tests)."""
    import lendledger.models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
