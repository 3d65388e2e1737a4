"""Database configuration and session management."""

import os
from datetime import datetime, timezone
from typing import Tuple

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

DATABASE_URL = os.environ.get("ROTATOR_DATABASE_URL", "sqlite+aiosqlite:///./rotator.db")

# SQLite waits on a locked database instead of failing straight away; lock
# acquisition from several bot loops relies on this.
SQLITE_CONNECT_ARGS = {"timeout": 30}

Base = declarative_base()


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the format stored in every table."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _use_immediate_transactions(db_engine: AsyncEngine) -> None:
    """Start every SQLite transaction with BEGIN IMMEDIATE.

    A deferred transaction that reads and then writes fails with "database
    is locked" when another connection is writing; an immediate one waits
    for the write lock up front, bounded by the connect timeout.
    """

    @event.listens_for(db_engine.sync_engine, "connect")
    def _disable_driver_begin(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(db_engine.sync_engine, "begin")
    def _begin_immediate(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def create_engine_and_session_maker(
    database_url: str = DATABASE_URL,
) -> Tuple[AsyncEngine, async_sessionmaker]:
    """Build an engine and matching session factory for a database URL."""
    is_sqlite = database_url.startswith("sqlite")
    connect_args = SQLITE_CONNECT_ARGS if is_sqlite else {}
    db_engine = create_async_engine(database_url, echo=False, connect_args=connect_args)
    if is_sqlite:
        _use_immediate_transactions(db_engine)
    session_maker = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    return db_engine, session_maker


engine, async_session_maker = create_engine_and_session_maker()


async def get_session() -> AsyncSession:
    """Dependency for getting database sessions."""
    async with async_session_maker() as session:
        yield session


async def init_db(db_engine: AsyncEngine = None):
    """Initialize the database, creating all tables."""
    async with (db_engine or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
