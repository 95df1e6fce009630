from typing import Optional
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from contextlib import asynccontextmanager

from arena.config import Config
from arena.database.models import Base
from arena.utils.logger import setup_logger

# Seconds a writer waits for SQLite's lock before "database is locked"
SQLITE_BUSY_TIMEOUT = 30


def to_async_url(database_url: str) -> str:
    """Point plain sqlite URLs at the aiosqlite driver"""
    if database_url.startswith('sqlite:///'):
        return database_url.replace('sqlite:///', 'sqlite+aiosqlite:///', 1)
    return database_url


class Database:
    def __init__(self, database_url: Optional[str] = None):
        self.logger = setup_logger(__name__)
        self.database_url = database_url or Config.DATABASE_URL
        self.engine = None
        self.async_session = None

    async def initialize(self):
        """Open the engine, install SQLite locking hooks and create the schema"""
        url = to_async_url(self.database_url)
        self.logger.info(f"Opening arena database at {url}")

        connect_args = {'timeout': SQLITE_BUSY_TIMEOUT} if url.startswith('sqlite') else {}
        self.engine = create_async_engine(url, echo=Config.DEBUG, connect_args=connect_args)

        if self.engine.dialect.name == 'sqlite':
            self._enable_immediate_transactions()

        self.async_session = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

        self.logger.info("Arena database ready")

    def _enable_immediate_transactions(self):
        """
        Make every SQLite transaction take the write lock up front.

        pysqlite/aiosqlite defer BEGIN until the first write, so two
        read-then-write transactions can both read stale state before one
        of them upgrades its lock. BEGIN IMMEDIATE serializes each unit of
        work, which is what the compare-and-set updates rely on.
        """
        sync_engine = self.engine.sync_engine

        @event.listens_for(sync_engine, "connect")
        def _disable_driver_begin(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(sync_engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    @property
    def session_factory(self):
        return self.async_session

    @asynccontextmanager
    async def get_session(self):
        """Session for reads; nothing is committed on exit"""
        async with self.async_session() as session:
            try:
                yield session
            except Exception:
                await session.rollback()
                raise

    @asynccontextmanager
    async def transaction(self):
        """
        Unit of work: commit when the block exits cleanly, roll back otherwise.

        Operations that accept session= join the yielded session so their
        writes land in the same commit:

            async with db.transaction() as session:
                duel = await duel_ops.create_duel_with_seats(..., session=session)
                await session.delete(entry)

        Never open a second session while one is held: on SQLite the second
        BEGIN IMMEDIATE waits on the first.
        """
        async with self.async_session() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def close(self):
        if self.engine:
            await self.engine.dispose()
            self.engine = None
            self.logger.info("Arena database closed")
