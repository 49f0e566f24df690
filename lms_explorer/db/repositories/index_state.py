"""SQLite repositories for indexed file records and index metadata."""
from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any

import aiosqlite

from lms_explorer.db.connection import write_lock
from lms_explorer.db.repositories.sessions import UPSERT_INDEXED_FILE_SQL
from lms_explorer.db.sqlite_migrations import get_schema_version
from lms_explorer.models import IndexedFileRecord

logger = logging.getLogger("lms_explorer.db")

SETTINGS_KEY = "settings"


async def _commit_one(db: aiosqlite.Connection, lock: asyncio.Lock, sql: str, params: tuple) -> None:
    async with lock:
        try:
            await db.execute(sql, params)
            await db.commit()
        except Exception:
            await db.rollback()
            raise


class SqliteIndexedFileRepository:
    """Track per-file checksum, mtime and size for incremental rebuilds."""

    def __init__(self, db: aiosqlite.Connection, lock: asyncio.Lock | None = None):
        self.db = db
        self.lock = lock or write_lock(db)

    async def get(self, path: str) -> IndexedFileRecord | None:
        async with self.db.execute(
            "SELECT * FROM indexed_files WHERE path = ?", (path,)
        ) as cur:
            row = await cur.fetchone()
            return self._row_to_record(row) if row else None

    async def list_all(self) -> dict[str, IndexedFileRecord]:
        async with self.db.execute("SELECT * FROM indexed_files") as cur:
            rows = await cur.fetchall()
        return {row["path"]: self._row_to_record(row) for row in rows}

    async def upsert(self, record: IndexedFileRecord) -> None:
        last_indexed_at = record.lastIndexedAt or datetime.now(timezone.utc).isoformat()
        await _commit_one(
            self.db,
            self.lock,
            UPSERT_INDEXED_FILE_SQL,
            (record.path, record.checksum, int(record.mtimeMs), int(record.sizeBytes), last_indexed_at),
        )

    @staticmethod
    def _row_to_record(row: aiosqlite.Row) -> IndexedFileRecord:
        return IndexedFileRecord(
            path=row["path"],
            checksum=row["checksum"] or "",
            mtimeMs=row["mtime_ms"] or 0,
            sizeBytes=row["size_bytes"] or 0,
            lastIndexedAt=row["last_indexed_at"] or "",
        )


class SqliteMetadataRepository:
    """Key/value metadata, the settings blob and session group display names."""

    def __init__(self, db: aiosqlite.Connection, lock: asyncio.Lock | None = None):
        self.db = db
        self.lock = lock or write_lock(db)

    async def get_schema_version(self) -> int:
        return await get_schema_version(self.db)

    async def get_value(self, key: str) -> str | None:
        async with self.db.execute("SELECT value FROM metadata WHERE key = ?", (key,)) as cur:
            row = await cur.fetchone()
            return row[0] if row else None

    async def set_value(self, key: str, value: str) -> None:
        await _commit_one(
            self.db,
            self.lock,
            """INSERT INTO metadata (key, value) VALUES (?, ?)
               ON CONFLICT(key) DO UPDATE SET value=excluded.value""",
            (key, value),
        )

    async def load_settings(self) -> dict[str, Any]:
        raw = await self.get_value(SETTINGS_KEY)
        if not raw:
            return {}
        try:
            parsed = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring unreadable settings blob")
            return {}
        return parsed if isinstance(parsed, dict) else {}

    async def save_settings(self, settings: dict[str, Any]) -> None:
        await self.set_value(SETTINGS_KEY, json.dumps(settings, sort_keys=True))

    # ── Session group names ─────────────────────────────────────────

    async def list_session_group_names(self) -> dict[str, str]:
        async with self.db.execute(
            "SELECT session_group_id, session_name FROM session_group_names"
        ) as cur:
            return {row[0]: row[1] for row in await cur.fetchall()}

    async def get_session_group_name(self, session_group_id: str) -> str | None:
        async with self.db.execute(
            "SELECT session_name FROM session_group_names WHERE session_group_id = ?",
            (session_group_id,),
        ) as cur:
            row = await cur.fetchone()
            return row[0] if row else None

    async def upsert_session_group_name(self, session_group_id: str, session_name: str) -> bool:
        """Store a display name; blank ids or names are ignored."""
        group_id = (session_group_id or "").strip()
        name = (session_name or "").strip()
        if not group_id or not name:
            return False
        await _commit_one(
            self.db,
            self.lock,
            """INSERT INTO session_group_names (session_group_id, session_name, updated_at)
               VALUES (?, ?, ?)
               ON CONFLICT(session_group_id) DO UPDATE SET
                 session_name=excluded.session_name, updated_at=excluded.updated_at""",
            (group_id, name, datetime.now(timezone.utc).isoformat()),
        )
        return True
