"""Database engine and session management."""

from collections.abc import AsyncGenerator

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from settlement_engine.config import settings
from settlement_engine.models.tables import Base

engine = create_async_engine(settings.database_url, echo=False)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db():
    """Create all tables. Safe to call multiple times (CREATE IF NOT EXISTS)."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session() -> AsyncGenerator[AsyncSession, None]:
    async with async_session() as session:
        yield session


def configure_sqlite(async_engine) -> None:
    """
    Per-connection SQLite settings.

    foreign_keys switches on ON DELETE CASCADE. SQLite ignores SELECT ... FOR
    UPDATE and the driver defers BEGIN until the first write, so every
    transaction starts with BEGIN IMMEDIATE instead: the write lock is taken
    before the first read, and row-lock reads see committed state.
    """
    if async_engine.dialect.name != "sqlite":
        return

    @event.listens_for(async_engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # The driver no longer emits BEGIN; _on_begin does
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(async_engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


configure_sqlite(engine)
