"""Database connection and session management."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from poolwallet.ledger.models import Base

SQLITE_BUSY_TIMEOUT = 30.0


def normalize_database_url(url: str) -> str:
    """Convert sqlite:/// to sqlite+aiosqlite:/// if needed."""
    if url.startswith("sqlite:///") and "aiosqlite" not in url:
        return url.replace("sqlite:///", "sqlite+aiosqlite:///")
    return url


def use_immediate_transactions(engine: AsyncEngine) -> None:
    """Make every SQLite transaction take the write lock when it begins.

    SQLite ignores SELECT ... FOR UPDATE, and a deferred transaction reads
    without any lock, so two read-modify-write units of work on the same
    balance could both commit. BEGIN IMMEDIATE serializes them; a waiting
    transaction retries for up to the connection's busy timeout.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        # The driver would otherwise emit its own deferred BEGIN
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class Database:
    """Engine plus session factory, constructed once and passed to services."""

    def __init__(self, engine: AsyncEngine):
        self.engine = engine
        self._session_factory = async_sessionmaker(
            bind=engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    @classmethod
    def from_url(cls, url: str, echo: bool = False) -> "Database":
        url = normalize_database_url(url)
        is_sqlite = url.startswith("sqlite")
        connect_args = {"timeout": SQLITE_BUSY_TIMEOUT} if is_sqlite else {}
        engine = create_async_engine(url, echo=echo, future=True, connect_args=connect_args)
        if is_sqlite:
            use_immediate_transactions(engine)
        return cls(engine)

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """One unit of work: commit on success, roll back on any exception."""
        async with self._session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def init(self) -> None:
        """Create all tables."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def close(self) -> None:
        """Close database connections."""
        await self.engine.dispose()


def create_database(url: str, echo: Optional[bool] = None) -> Database:
    """Build a Database from settings-style arguments."""
    if echo is None:
        from poolwallet.config import get_settings

        settings = get_settings()
        echo = settings.debug and not settings.is_production
    return Database.from_url(url, echo=echo)
