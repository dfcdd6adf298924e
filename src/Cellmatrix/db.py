# src/Cellmatrix/db.py
from __future__ import annotations

import contextlib
import os
from collections.abc import AsyncIterator
from typing import Any

import structlog
from sqlalchemy import event
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool

from Cellmatrix.config import load_settings

log = structlog.get_logger()

_ASYNC_DRIVERS = {"postgresql": "postgresql+asyncpg", "sqlite": "sqlite+aiosqlite"}


def _normalize_url(url: str) -> str:
    """Swap a bare ``postgresql://`` or ``sqlite://`` scheme for its async driver."""
    scheme, sep, rest = url.partition("://")
    return _ASYNC_DRIVERS.get(scheme, scheme) + sep + rest


DATABASE_URL = _normalize_url(load_settings().database_url)


class Base(DeclarativeBase):
    pass


_engine: AsyncEngine | None = None
_sessionmaker: async_sessionmaker[AsyncSession] | None = None
_schema_initialized: bool = False


def _engine_options(url: str) -> dict[str, Any]:
    backend = make_url(url).get_backend_name()
    if backend == "sqlite":
        opts: dict[str, Any] = {"connect_args": {"timeout": 30}}
        # A single shared connection keeps an in-memory schema alive and
        # serializes writers on file-backed databases when requested
        if ":memory:" in url or os.environ.get("CELLMATRIX_SQLITE_STATIC_POOL") == "1":
            opts["poolclass"] = StaticPool
        return opts
    if backend == "postgresql":
        return {"pool_pre_ping": True, "pool_size": 5, "max_overflow": 10, "pool_timeout": 30}
    return {}


def _enable_sqlite_foreign_keys(dbapi_conn: Any, _record: Any) -> None:
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


def get_engine() -> AsyncEngine:
    global _engine, _sessionmaker
    if _engine is None:
        _engine = create_async_engine(DATABASE_URL, **_engine_options(DATABASE_URL))
        if make_url(DATABASE_URL).get_backend_name() == "sqlite":
            event.listen(_engine.sync_engine, "connect", _enable_sqlite_foreign_keys)
        _sessionmaker = async_sessionmaker(_engine, expire_on_commit=False)
        url = make_url(DATABASE_URL)
        log.info(
            "db.engine.created",
            backend=url.get_backend_name(),
            driver=url.drivername,
            host=url.host or "",
            database=url.database or "",
        )
    return _engine


def get_sessionmaker() -> async_sessionmaker[AsyncSession]:
    if _sessionmaker is None:
        get_engine()
    return _sessionmaker  # type: ignore[return-value]


async def dispose_engine() -> None:
    """Close pooled connections and forget the engine; the next call builds a new one."""
    global _engine, _sessionmaker, _schema_initialized
    if _engine is not None:
        await _engine.dispose()
    _engine = None
    _sessionmaker = None
    _schema_initialized = False


async def create_schema() -> None:
    """Create every table registered on ``Base.metadata``. Idempotent."""
    global _schema_initialized
    from Cellmatrix import models as _models  # noqa: F401

    async with get_engine().begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    _schema_initialized = True


async def _ensure_schema_created_if_needed() -> None:
    # In-memory databases start empty; other backends rely on `cellmatrix init-db`
    if not _schema_initialized and ":memory:" in DATABASE_URL:
        await create_schema()


@contextlib.asynccontextmanager
async def session_scope(
    sessionmaker: async_sessionmaker[AsyncSession] | None = None,
) -> AsyncIterator[AsyncSession]:
    """Session that commits on success and rolls back (then re-raises) on error."""
    await _ensure_schema_created_if_needed()
    async with (sessionmaker or get_sessionmaker())() as s:
        try:
            yield s
            await s.commit()
        except BaseException:
            log.error("db.session.error", exc_info=True)
            await s.rollback()
            raise
