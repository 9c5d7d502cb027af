"""Async engine and session wiring."""

from __future__ import annotations

from typing import AsyncIterator

from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from loyalty_api.core.settings import settings


def install_sqlite_locking(engine: AsyncEngine) -> None:
    """Emit ``BEGIN IMMEDIATE`` ourselves so SQLite transactions serialize writers.

    The driver's implicit BEGIN is disabled, which also makes SAVEPOINT behave.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):  # pragma: no cover - driver glue
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):  # pragma: no cover - driver glue
        conn.exec_driver_sql("BEGIN IMMEDIATE")


def build_engine(
    database_url: str,
    *,
    lock_timeout_seconds: float | None = None,
    echo: bool = False,
) -> AsyncEngine:
    """Create an async engine with bounded lock waits for the configured backend."""

    timeout = lock_timeout_seconds if lock_timeout_seconds is not None else settings.db_lock_timeout_seconds
    backend = make_url(database_url).get_backend_name()

    connect_args: dict[str, object] = {}
    if backend == "sqlite":
        connect_args["timeout"] = timeout
    elif backend == "postgresql":
        connect_args["server_settings"] = {"lock_timeout": str(int(timeout * 1000))}

    engine = create_async_engine(database_url, echo=echo, future=True, connect_args=connect_args)
    if backend == "sqlite":
        install_sqlite_locking(engine)
    return engine


engine = build_engine(settings.database_url, echo=settings.database_echo)
async_session = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


async def get_session() -> AsyncIterator[AsyncSession]:
    async with async_session() as session:
        yield session


__all__ = ["async_session", "build_engine", "engine", "get_session", "install_sqlite_locking"]
