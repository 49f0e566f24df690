"""SQLite implementation of the session store."""
from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Iterable

import aiosqlite
from pydantic import ValidationError

from lms_explorer.db.connection import write_lock
from lms_explorer.models import (
    LogFile,
    RequestEvent,
    Session,
    SessionMetrics,
    StoredSessionRecord,
    TimelineEvent,
    ToolCall,
)
from lms_explorer.parsers.sessions import normalize_session

logger = logging.getLogger("lms_explorer.db")

UPSERT_INDEXED_FILE_SQL = """INSERT INTO indexed_files (path, checksum, mtime_ms, size_bytes, last_indexed_at)
    VALUES (?, ?, ?, ?, ?)
    ON CONFLICT(path) DO UPDATE SET
        checksum=excluded.checksum, mtime_ms=excluded.mtime_ms,
        size_bytes=excluded.size_bytes, last_indexed_at=excluded.last_indexed_at"""

_SESSION_COLUMNS = (
    "session_id, chat_id, first_seen_at, model, request_json, events_json, "
    "tool_calls_json, metrics_json, source_path, source_ordinal, updated_at"
)


def _sqlite_text(value: str | None) -> str | None:
    """Replace lone surrogates, which SQLite cannot store as UTF-8."""
    if value is None:
        return None
    return value.encode("utf-8", "replace").decode("utf-8")


def _safe_json(value: Any, default: Any) -> Any:
    if value is None or value == "":
        return default
    try:
        return json.loads(value)
    except (TypeError, ValueError):
        return default


class SqliteSessionRepository:
    """SQLite-backed session rows, replaced wholesale per source file."""

    def __init__(self, db: aiosqlite.Connection, lock: asyncio.Lock | None = None):
        self.db = db
        self.lock = lock or write_lock(db)

    # ── Writes ──────────────────────────────────────────────────────

    async def replace_file_sessions(
        self,
        file: LogFile,
        checksum: str,
        records: Iterable[StoredSessionRecord],
    ) -> None:
        """Swap every session row of ``file`` and its file record atomically."""
        now = datetime.now(timezone.utc).isoformat()
        rows = [self._record_to_row(record, now) for record in records]
        async with self.lock:
            try:
                await self.db.execute("DELETE FROM sessions WHERE source_path = ?", (file.path,))
                if rows:
                    await self.db.executemany(
                        f"INSERT OR REPLACE INTO sessions ({_SESSION_COLUMNS}) "
                        "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        rows,
                    )
                await self.db.execute(
                    UPSERT_INDEXED_FILE_SQL,
                    (file.path, checksum, int(file.mtimeMs), int(file.sizeBytes), now),
                )
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise

    async def delete_missing_files(self, current_paths: Iterable[str]) -> list[str]:
        """Purge file and session rows for paths that are no longer on disk."""
        keep = set(current_paths)
        stored: set[str] = set()
        async with self.db.execute("SELECT path FROM indexed_files") as cur:
            stored.update(row[0] for row in await cur.fetchall())
        async with self.db.execute("SELECT DISTINCT source_path FROM sessions") as cur:
            stored.update(row[0] for row in await cur.fetchall())

        missing = sorted(stored - keep)
        if not missing:
            return []
        params = [(path,) for path in missing]
        async with self.lock:
            try:
                await self.db.executemany("DELETE FROM sessions WHERE source_path = ?", params)
                await self.db.executemany("DELETE FROM indexed_files WHERE path = ?", params)
                await self.db.commit()
            except Exception:
                await self.db.rollback()
                raise
        return missing

    # ── Reads ───────────────────────────────────────────────────────

    async def iter_sessions(self) -> AsyncIterator[StoredSessionRecord]:
        """Stream stored sessions in ascending ``first_seen_at`` order."""
        async with self.db.execute(
            f"SELECT {_SESSION_COLUMNS} FROM sessions ORDER BY first_seen_at ASC, session_id ASC"
        ) as cur:
            async for row in cur:
                record = self._row_to_record(row)
                if record is not None:
                    yield record

    async def list_sessions(self) -> list[StoredSessionRecord]:
        return [record async for record in self.iter_sessions()]

    async def get_by_id(self, session_id: str) -> StoredSessionRecord | None:
        async with self.db.execute(
            f"SELECT {_SESSION_COLUMNS} FROM sessions WHERE session_id = ?", (session_id,)
        ) as cur:
            row = await cur.fetchone()
            if not row:
                return None
            return self._row_to_record(row)

    async def list_ids_by_source(self) -> dict[str, list[str]]:
        result: dict[str, list[str]] = {}
        async with self.db.execute(
            "SELECT source_path, session_id FROM sessions ORDER BY source_path, source_ordinal"
        ) as cur:
            for row in await cur.fetchall():
                result.setdefault(row[0], []).append(row[1])
        return result

    async def count(self) -> int:
        async with self.db.execute("SELECT COUNT(*) FROM sessions") as cur:
            row = await cur.fetchone()
        return row[0] if row else 0

    # ── Row mapping ─────────────────────────────────────────────────

    @staticmethod
    def _record_to_row(record: StoredSessionRecord, updated_at: str) -> tuple:
        session = record.session
        request_json = json.dumps(session.request.model_dump()) if session.request else None
        return (
            _sqlite_text(session.sessionId),
            _sqlite_text(session.chatId),
            _sqlite_text(session.firstSeenAt),
            _sqlite_text(session.model),
            request_json,
            json.dumps([event.model_dump() for event in session.events]),
            json.dumps([call.model_dump() for call in session.toolCalls]),
            json.dumps(session.metrics.model_dump(exclude_none=True)),
            record.sourcePath,
            record.sourceOrdinal,
            updated_at,
        )

    @staticmethod
    def _row_to_record(row: aiosqlite.Row) -> StoredSessionRecord | None:
        try:
            request_payload = _safe_json(row["request_json"], None)
            session = Session(
                sessionId=row["session_id"],
                chatId=row["chat_id"],
                model=row["model"],
                firstSeenAt=row["first_seen_at"] or "",
                request=RequestEvent(**request_payload) if isinstance(request_payload, dict) else None,
                events=[TimelineEvent(**item) for item in _safe_json(row["events_json"], []) if isinstance(item, dict)],
                toolCalls=[ToolCall(**item) for item in _safe_json(row["tool_calls_json"], []) if isinstance(item, dict)],
                metrics=SessionMetrics(**_safe_json(row["metrics_json"], {})),
            )
        except (TypeError, ValidationError) as exc:
            logger.warning("Skipping unreadable session row %s: %s", row["session_id"], exc)
            return None
        return StoredSessionRecord(
            session=normalize_session(session),
            sourcePath=row["source_path"],
            sourceOrdinal=row["source_ordinal"] or 0,
        )
