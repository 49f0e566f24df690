"""Incremental log file → session index sync engine.

Scans the discovered log files, skips the ones whose content is unchanged
(mtime/size first, then a streamed sha256), reparses the rest and replaces
their stored sessions file by file.
"""
from __future__ import annotations

import asyncio
import copy
import hashlib
import logging
import os
import time
import uuid
from collections import OrderedDict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable

import aiosqlite

from lms_explorer import config
from lms_explorer.db.connection import write_lock
from lms_explorer.db.repositories import (
    SqliteIndexedFileRepository,
    SqliteMetadataRepository,
    SqliteSessionRepository,
)
from lms_explorer.models import (
    BuildProgress,
    IndexedFileRecord,
    LogFile,
    StoredSessionRecord,
)
from lms_explorer.observability import (
    record_ingestion,
    record_parser_failure,
    record_sessions_indexed,
    start_span,
)
from lms_explorer.parsers.sessions import ParsedLogFile, parse_log_file
from lms_explorer.session_index import SessionIndex, attach_orphan_sessions

logger = logging.getLogger("lms_explorer.sync")

LOG_FILE_SUFFIX = ".log"

ProgressCallback = Callable[[BuildProgress], None]


async def _file_checksum(path: str | Path) -> str:
    """Streamed sha256 of file content, yielding between chunks."""
    h = hashlib.sha256()
    with open(path, "rb") as handle:
        while True:
            chunk = handle.read(config.CHECKSUM_CHUNK_BYTES)
            if not chunk:
                break
            h.update(chunk)
            await asyncio.sleep(0)
    return h.hexdigest()


def stat_log_file(path: str | Path) -> LogFile:
    st = os.stat(path)
    return LogFile(path=str(path), mtimeMs=st.st_mtime_ns // 1_000_000, sizeBytes=st.st_size)


def discover_log_files(root: str | Path) -> list[LogFile]:
    """List ``*.log`` files below ``root``; a missing root yields nothing."""
    root_path = Path(root)
    if not root_path.is_dir():
        return []
    files: list[LogFile] = []
    for path in sorted(root_path.rglob(f"*{LOG_FILE_SUFFIX}")):
        if not path.is_file():
            continue
        try:
            files.append(stat_log_file(path))
        except OSError as exc:
            logger.warning("Cannot stat %s: %s", path, exc)
    return files


class _ProgressReporter:
    """Monotonic ``(processedFiles, totalFiles)`` reporting."""

    def __init__(self, total_files: int, callback: ProgressCallback | None):
        self.total_files = total_files
        self.callback = callback
        self.processed = 0.0
        self.sessions_indexed = 0
        self.current_file: str | None = None

    def report(self, processed: float, current_file: str | None = None) -> None:
        self.processed = min(float(self.total_files), max(self.processed, processed))
        self.current_file = current_file
        if self.callback is None:
            return
        self.callback(
            BuildProgress(
                totalFiles=self.total_files,
                processedFiles=self.processed,
                currentFile=current_file,
                sessionsIndexed=self.sessions_indexed,
            )
        )


class _RebuildLog:
    """Bounded history of rebuild runs, newest first."""

    def __init__(self, max_entries: int):
        self._lock = asyncio.Lock()
        self._entries: OrderedDict[str, dict[str, Any]] = OrderedDict()
        self._max_entries = max(1, max_entries)

    async def begin(self, kind: str, trigger: str, metadata: dict[str, Any]) -> str:
        entry_id = f"OP-{uuid.uuid4()}"
        stamp = datetime.now(timezone.utc).isoformat()
        async with self._lock:
            self._entries[entry_id] = {
                "id": entry_id,
                "kind": kind,
                "trigger": trigger,
                "status": "running",
                "phase": "queued",
                "message": "",
                "startedAt": stamp,
                "updatedAt": stamp,
                "finishedAt": "",
                "durationMs": 0,
                "stats": {},
                "metadata": metadata,
                "error": "",
            }
            self._entries.move_to_end(entry_id, last=False)
            while len(self._entries) > self._max_entries:
                self._entries.popitem(last=True)
        logger.info("Rebuild %s started (%s, trigger=%s)", entry_id, kind, trigger)
        return entry_id

    async def phase(self, entry_id: str, phase: str, message: str) -> None:
        async with self._lock:
            entry = self._entries.get(entry_id)
            if entry is None:
                return
            entry.update(phase=phase, message=message, updatedAt=datetime.now(timezone.utc).isoformat())
        logger.debug("Rebuild %s: %s", entry_id, message)

    async def end(self, entry_id: str, status: str, stats: dict[str, Any], error: str = "") -> None:
        stamp = datetime.now(timezone.utc).isoformat()
        async with self._lock:
            entry = self._entries.get(entry_id)
            if entry is not None:
                entry.update(
                    status=status,
                    phase=status,
                    updatedAt=stamp,
                    finishedAt=stamp,
                    durationMs=max(0, int(stats.get("duration_ms", 0))),
                    stats=dict(stats),
                    error=error,
                )
        if error:
            logger.error("Rebuild %s %s: %s", entry_id, status, error)
        else:
            logger.info("Rebuild %s %s", entry_id, status)

    async def recent(self, limit: int) -> list[dict[str, Any]]:
        async with self._lock:
            return [copy.deepcopy(entry) for entry in list(self._entries.values())[: max(1, limit)]]

    async def get(self, entry_id: str) -> dict[str, Any] | None:
        async with self._lock:
            entry = self._entries.get(entry_id)
            return copy.deepcopy(entry) if entry is not None else None


class SyncEngine:
    """Incremental checksum-aware log file → SQLite/in-memory index sync.

    Uses the streaming parser to read files, then replaces each changed
    file's session rows in one transaction via the repositories.
    """

    def __init__(self, db: aiosqlite.Connection):
        self.db = db
        self.write_lock = write_lock(db)
        self.session_repo = SqliteSessionRepository(db, self.write_lock)
        self.file_repo = SqliteIndexedFileRepository(db, self.write_lock)
        self.metadata_repo = SqliteMetadataRepository(db, self.write_lock)
        self._rebuilds = _RebuildLog(config.OPERATION_HISTORY)

    # ── Operations ──────────────────────────────────────────────────

    async def list_operations(self, limit: int = 20) -> list[dict[str, Any]]:
        """Latest rebuild snapshots, newest first."""
        return await self._rebuilds.recent(limit)

    async def get_operation(self, operation_id: str) -> dict[str, Any] | None:
        return await self._rebuilds.get(operation_id)

    # ── Loading ─────────────────────────────────────────────────────

    async def load_index(self) -> SessionIndex:
        """Assemble the in-memory index from stored rows.

        Orphan rows (stored without a request) are folded into the nearest
        preceding session; orphans with no such session are left out.
        """
        records = [record async for record in self.session_repo.iter_sessions()]
        kept, excluded = attach_orphan_sessions(records)
        index = SessionIndex()
        for record in kept:
            index.add_session(record.session, record.sourcePath)
        index.group_names = await self.metadata_repo.list_session_group_names()
        if excluded:
            logger.warning("Excluded %d orphan sessions while loading the index", len(excluded))
        return index

    # ── Rebuild ─────────────────────────────────────────────────────

    async def rebuild(
        self,
        files: Iterable[LogFile],
        *,
        reparse_all: bool = False,
        on_progress: ProgressCallback | None = None,
        trigger: str = "api",
    ) -> tuple[SessionIndex, dict[str, Any]]:
        """Bring the store and a fresh in-memory index up to date with ``files``.

        The most recently modified file is always reparsed because logs are
        append-only. Per-file I/O and parse failures are logged and skipped;
        store failures propagate and leave the caller's previous index valid.
        """
        file_list = sorted(files, key=lambda f: (f.mtimeMs, f.path), reverse=True)
        stats = {
            "files_total": len(file_list),
            "files_parsed": 0,
            "files_skipped": 0,
            "files_touched": 0,
            "files_failed": 0,
            "files_removed": 0,
            "sessions_added": 0,
            "sessions_removed": 0,
            "sessions_indexed": 0,
            "duration_ms": 0,
            "operation_id": "",
        }
        operation_id = await self._rebuilds.begin(
            "rebuild_index",
            trigger,
            {"reparseAll": bool(reparse_all), "fileCount": len(file_list)},
        )
        stats["operation_id"] = operation_id

        t0 = time.monotonic()
        progress = _ProgressReporter(len(file_list), on_progress)
        try:
            with start_span("index.rebuild", {"files": len(file_list), "reparse_all": bool(reparse_all)}):
                await self._rebuilds.phase(operation_id, "load", "Loading persisted sessions")
                index = await self.load_index()
                stored_files = await self.file_repo.list_all()
                latest_path = file_list[0].path if file_list else None
                progress.sessions_indexed = len(index)
                progress.report(0.0)

                await self._rebuilds.phase(operation_id, "files", "Syncing log files")
                for position, log_file in enumerate(file_list):
                    progress.report(float(position), log_file.path)
                    file_t0 = time.monotonic()
                    try:
                        result = await self._sync_single_file(
                            log_file,
                            stored_files.get(log_file.path),
                            index,
                            stats,
                            is_latest=log_file.path == latest_path,
                            force=reparse_all,
                            on_fraction=lambda fraction, p=position, path=log_file.path: progress.report(
                                p + fraction, path
                            ),
                        )
                    except (OSError, ValueError) as exc:
                        stats["files_failed"] += 1
                        record_parser_failure("log_file")
                        record_ingestion("log_file", "failed", (time.monotonic() - file_t0) * 1000)
                        logger.error("Failed to index %s: %s", log_file.path, exc)
                    else:
                        stats[f"files_{result}"] += 1
                        record_ingestion("log_file", result, (time.monotonic() - file_t0) * 1000)
                    progress.sessions_indexed = len(index)
                    progress.report(float(position + 1), log_file.path)

                await self._rebuilds.phase(operation_id, "purge", "Purging missing files")
                removed_paths = await self.session_repo.delete_missing_files(f.path for f in file_list)
                for path in removed_paths:
                    stats["sessions_removed"] += index.remove_file(path)
                stats["files_removed"] = len(removed_paths)

                index.group_names = await self.metadata_repo.list_session_group_names()
                index.indexed_at = datetime.now(timezone.utc).isoformat()
                stats["sessions_indexed"] = len(index)
                progress.sessions_indexed = len(index)
                progress.report(float(len(file_list)), None)
        except Exception as exc:
            stats["duration_ms"] = int((time.monotonic() - t0) * 1000)
            await self._rebuilds.end(operation_id, "failed", stats, error=str(exc))
            raise

        stats["duration_ms"] = int((time.monotonic() - t0) * 1000)
        record_ingestion("index", "completed", stats["duration_ms"])
        await self._rebuilds.end(operation_id, "completed", stats)
        logger.info(
            f"Index rebuild complete: "
            f"{stats['files_parsed']} parsed, "
            f"{stats['files_skipped']} skipped, "
            f"{stats['files_touched']} touched, "
            f"{stats['files_failed']} failed, "
            f"{stats['files_removed']} removed, "
            f"{stats['sessions_indexed']} sessions "
            f"in {stats['duration_ms']}ms"
        )
        return index, stats

    async def _sync_single_file(
        self,
        log_file: LogFile,
        stored: IndexedFileRecord | None,
        index: SessionIndex,
        stats: dict[str, Any],
        *,
        is_latest: bool,
        force: bool,
        on_fraction: Callable[[float], None],
    ) -> str:
        """Sync one file. Returns ``parsed``, ``skipped`` or ``touched``."""
        path = log_file.path
        if not force and not is_latest and stored is not None:
            if stored.mtimeMs == log_file.mtimeMs and stored.sizeBytes == log_file.sizeBytes:
                if config.INDEX_DEBUG:
                    logger.debug("Skipping unchanged %s", path)
                return "skipped"
            checksum = await _file_checksum(path)
            if checksum == stored.checksum:
                await self._touch_file(log_file, checksum)
                return "touched"

        parsed = await parse_log_file(path, on_progress=on_fraction)
        self._log_parse_stats(parsed)

        if is_latest and not force and stored is not None and parsed.checksum == stored.checksum:
            if stored.mtimeMs != log_file.mtimeMs or stored.sizeBytes != log_file.sizeBytes:
                await self._touch_file(log_file, parsed.checksum)
                return "touched"
            return "skipped"

        records = [
            StoredSessionRecord(session=session, sourcePath=path, sourceOrdinal=ordinal)
            for ordinal, session in enumerate(parsed.sessions)
        ]
        await self.session_repo.replace_file_sessions(log_file, parsed.checksum, records)
        added, removed = index.replace_file(path, parsed.sessions)
        stats["sessions_added"] += added
        stats["sessions_removed"] += removed
        record_sessions_indexed(len(records))
        return "parsed"

    async def _touch_file(self, log_file: LogFile, checksum: str) -> None:
        await self.file_repo.upsert(
            IndexedFileRecord(
                path=log_file.path,
                checksum=checksum,
                mtimeMs=log_file.mtimeMs,
                sizeBytes=log_file.sizeBytes,
                lastIndexedAt=datetime.now(timezone.utc).isoformat(),
            )
        )

    def _log_parse_stats(self, parsed: ParsedLogFile) -> None:
        parse_stats = parsed.stats
        failures = parse_stats.malformedJson + parse_stats.incompleteJson
        if failures:
            record_parser_failure("json_block", failures)
        if config.INDEX_DEBUG:
            logger.debug(
                "Parsed %s: %d lines, %d events, %d sessions, %d malformed, %d incomplete",
                parsed.path,
                parse_stats.linesRead,
                parse_stats.eventsClassified,
                len(parsed.sessions),
                parse_stats.malformedJson,
                parse_stats.incompleteJson,
            )
