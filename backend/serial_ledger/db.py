import os
from typing import Optional

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite+aiosqlite:///./local.db").strip()

Base = declarative_base()


def _engine_kwargs(url: str) -> dict:
    kwargs = {"echo": False, "future": True}
    if url.lower().startswith("sqlite"):
        return kwargs
    # Cloud SQL / Postgres connections can be dropped when idle; pre-ping avoids "connection is closed" errors.
    kwargs.update({
        "pool_pre_ping": True,
        "pool_recycle": int(os.environ.get("DB_POOL_RECYCLE_SECONDS", "300").strip() or 300),
    })
    if os.environ.get("DB_POOL_SIZE"):
        kwargs["pool_size"] = int(os.environ.get("DB_POOL_SIZE", "").strip() or 5)
    if os.environ.get("DB_MAX_OVERFLOW"):
        kwargs["max_overflow"] = int(os.environ.get("DB_MAX_OVERFLOW", "").strip() or 10)
    if os.environ.get("DB_POOL_TIMEOUT"):
        kwargs["pool_timeout"] = int(os.environ.get("DB_POOL_TIMEOUT", "").strip() or 30)
    return kwargs


def build_engine(url: str) -> AsyncEngine:
    """Create an async engine; SQLite gets real BEGIN/SAVEPOINT semantics."""
    engine = create_async_engine(url, **_engine_kwargs(url))
    if url.lower().startswith("sqlite"):
        # The sqlite driver defers BEGIN until the first DML statement, which breaks
        # SAVEPOINT-based collision retries. Take over transaction start ourselves.
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_connect(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def _sqlite_begin(conn):
            conn.exec_driver_sql("BEGIN")

    return engine


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


engine = build_engine(DATABASE_URL)
SessionLocal = build_session_factory(engine)


async def get_session() -> AsyncSession:
    """FastAPI dependency that yields an async session."""
    async with SessionLocal() as session:
        yield session


def get_session_factory() -> async_sessionmaker:
    """FastAPI dependency for handlers that manage their own transactions."""
    return SessionLocal


async def init_db(bind: Optional[AsyncEngine] = None):
    """Create tables at startup (lightweight, safe to run repeatedly)."""
    from . import models  # ensure models are imported

    async with (bind or engine).begin() as conn:
        await conn.run_sync(models.Base.metadata.create_all)
