"""Database connection factory.

Opens the aiosqlite connection backing the session index with WAL mode.
The caller owns the returned connection and closes it with
``close_connection``.
"""
from __future__ import annotations

import asyncio
import logging
import weakref
from pathlib import Path

import aiosqlite

from lms_explorer import config

logger = logging.getLogger("lms_explorer.db")

_write_locks: "weakref.WeakKeyDictionary[aiosqlite.Connection, asyncio.Lock]" = weakref.WeakKeyDictionary()


def write_lock(conn: aiosqlite.Connection) -> asyncio.Lock:
    """Lock held across each write transaction on ``conn``.

    Repositories bound to the same connection share it, so one writer's
    commit never lands in the middle of another writer's transaction.
    """
    lock = _write_locks.get(conn)
    if lock is None:
        lock = _write_locks[conn] = asyncio.Lock()
    return lock


async def open_connection(db_path: str | Path | None = None) -> aiosqlite.Connection:
    """Open (creating if needed) the index database at ``db_path``."""
    path = Path(db_path) if db_path is not None else config.DB_PATH
    if str(path) != ":memory:":
        path.parent.mkdir(parents=True, exist_ok=True)
    conn = await aiosqlite.connect(str(path))
    conn.row_factory = aiosqlite.Row
    # Enable WAL mode for better concurrent read performance
    await conn.execute("PRAGMA journal_mode=WAL")
    await conn.execute("PRAGMA synchronous=NORMAL")
    await conn.execute(f"PRAGMA busy_timeout={int(config.DB_BUSY_TIMEOUT_MS)}")
    logger.info(f"Database connection established: {path}")
    return conn


async def close_connection(conn: aiosqlite.Connection | None) -> None:
    """Close the database connection."""
    if conn is None:
        return
    await conn.close()
    logger.info("Database connection closed")
