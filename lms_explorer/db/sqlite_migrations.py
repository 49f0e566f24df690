"""Database schema creation and versioning.

All CREATE TABLE statements for the session index.
Uses IF NOT EXISTS for idempotent runs.
"""
from __future__ import annotations

import logging

import aiosqlite

logger = logging.getLogger("lms_explorer.db")

SCHEMA_VERSION = 1
SCHEMA_VERSION_KEY = "schema_version"

_TABLES = """
-- ── Metadata (schema version, settings blob) ───────────────────────
CREATE TABLE IF NOT EXISTS metadata (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

-- ── 1. Indexed files (incremental change detection) ───────────────
CREATE TABLE IF NOT EXISTS indexed_files (
    path            TEXT PRIMARY KEY,
    checksum        TEXT NOT NULL,
    mtime_ms        INTEGER NOT NULL,
    size_bytes      INTEGER NOT NULL,
    last_indexed_at TEXT NOT NULL
);

-- ── 2. Sessions (one row per reconstructed request) ───────────────
CREATE TABLE IF NOT EXISTS sessions (
    session_id      TEXT PRIMARY KEY,
    chat_id         TEXT,
    first_seen_at   TEXT NOT NULL,
    model           TEXT,
    request_json    TEXT,
    events_json     TEXT NOT NULL DEFAULT '[]',
    tool_calls_json TEXT NOT NULL DEFAULT '[]',
    metrics_json    TEXT NOT NULL DEFAULT '{}',
    source_path     TEXT NOT NULL,
    source_ordinal  INTEGER NOT NULL DEFAULT 0,
    updated_at      TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_sessions_chat_id    ON sessions(chat_id);
CREATE INDEX IF NOT EXISTS idx_sessions_first_seen ON sessions(first_seen_at);
CREATE INDEX IF NOT EXISTS idx_sessions_source     ON sessions(source_path);

-- ── 3. User-assigned session group names ───────────────────────────
CREATE TABLE IF NOT EXISTS session_group_names (
    session_group_id TEXT PRIMARY KEY,
    session_name     TEXT NOT NULL,
    updated_at       TEXT NOT NULL
);
"""


async def _ensure_column(
    db: aiosqlite.Connection,
    table: str,
    column: str,
    column_sql: str,
) -> None:
    async with db.execute(f"PRAGMA table_info({table})") as cur:
        rows = await cur.fetchall()
    existing = {row[1] for row in rows}
    if column in existing:
        return
    await db.execute(f"ALTER TABLE {table} ADD COLUMN {column} {column_sql}")


async def get_schema_version(db: aiosqlite.Connection) -> int:
    async with db.execute(
        "SELECT value FROM metadata WHERE key = ?", (SCHEMA_VERSION_KEY,)
    ) as cur:
        row = await cur.fetchone()
    if not row:
        return 0
    try:
        return int(row[0])
    except (TypeError, ValueError):
        return 0


async def run_migrations(db: aiosqlite.Connection) -> None:
    """Create all tables and record the current schema version."""
    await db.executescript(_TABLES)

    # Columns added after the first release of a table go here.
    await _ensure_column(db, "sessions", "source_ordinal", "INTEGER NOT NULL DEFAULT 0")

    previous = await get_schema_version(db)
    if previous > SCHEMA_VERSION:
        logger.warning(
            "Index database schema version %s is newer than supported version %s",
            previous,
            SCHEMA_VERSION,
        )
    await db.execute(
        """INSERT INTO metadata (key, value) VALUES (?, ?)
        ON CONFLICT(key) DO UPDATE SET value=excluded.value""",
        (SCHEMA_VERSION_KEY, str(max(previous, SCHEMA_VERSION))),
    )
    await db.commit()
    logger.info(f"Migrations complete, schema version {SCHEMA_VERSION}")
