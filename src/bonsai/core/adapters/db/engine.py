"""Async SQLite engine for the heartbeat store.

Several heartbeat processes may open the same file (a cycle plus ``bonsai
queue``), so every connection runs in WAL mode with a busy timeout and
foreign keys enforced.
"""

from __future__ import annotations

import sys
from pathlib import Path

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine
from sqlmodel import SQLModel

SQLITE_BUSY_TIMEOUT_MS = 15_000

_CONNECTION_PRAGMAS = (
    "PRAGMA foreign_keys=ON",
    f"PRAGMA busy_timeout={SQLITE_BUSY_TIMEOUT_MS}",
    "PRAGMA synchronous=NORMAL",
)


def _require_greenlet() -> None:
    try:
        import greenlet  # noqa: F401
    except (ImportError, OSError) as exc:
        py = f"{sys.version_info.major}.{sys.version_info.minor}"
        raise RuntimeError(
            f"SQLAlchemy async needs a working greenlet (Python {py}); "
            f"reinstall it with `pip install --force-reinstall greenlet`: {exc}"
        ) from exc


def _apply_pragmas(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    try:
        for pragma in _CONNECTION_PRAGMAS:
            cursor.execute(pragma)
    finally:
        cursor.close()


async def create_db_engine(db_path: str | Path) -> AsyncEngine:
    """Open (creating if needed) the SQLite file at *db_path* in WAL mode."""
    _require_greenlet()
    path = Path(db_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    engine = create_async_engine(
        f"sqlite+aiosqlite:///{path}",
        connect_args={"check_same_thread": False, "timeout": SQLITE_BUSY_TIMEOUT_MS / 1000},
    )
    event.listen(engine.sync_engine, "connect", _apply_pragmas)
    async with engine.begin() as conn:
        await conn.exec_driver_sql("PRAGMA journal_mode=WAL")
    return engine


async def create_db_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)


async def ping_engine(engine: AsyncEngine) -> None:
    """Round-trip a trivial query; raises the driver error when the store is unreachable."""
    async with engine.connect() as conn:
        await conn.execute(text("SELECT 1"))
