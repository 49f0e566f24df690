"""Indexing coordinator: owns the served index and coalesces rebuilds."""
from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Optional

import aiosqlite

from lms_explorer.db.sync_engine import SyncEngine
from lms_explorer.models import (
    BuildProgress,
    IndexingStatus,
    LogFile,
    Session,
    SessionGroupSummary,
    SessionListItem,
)
from lms_explorer.session_index import SessionIndex

logger = logging.getLogger("lms_explorer.indexing")


class IndexingCoordinator:
    """Service object holding the current index and the in-flight rebuild.

    At most one rebuild runs at a time; concurrent ``rebuild`` calls await
    the same task. A failed rebuild sets the status to ``error`` while the
    previously published index keeps being served.
    """

    def __init__(
        self,
        db: aiosqlite.Connection,
        *,
        engine: SyncEngine | None = None,
        on_progress: Optional[Callable[[BuildProgress], None]] = None,
        on_index_update: Optional[Callable[[SessionIndex], None]] = None,
    ):
        self.db = db
        self.engine = engine or SyncEngine(db)
        self.on_progress = on_progress
        self.on_index_update = on_index_update
        self._index = SessionIndex()
        self._loaded = False
        self._status = IndexingStatus()
        self._rebuild_task: asyncio.Task | None = None
        self._last_stats: dict[str, Any] = {}

    # ── State ───────────────────────────────────────────────────────

    def get_index(self) -> SessionIndex:
        return self._index

    def get_status(self) -> IndexingStatus:
        return self._status.model_copy()

    @property
    def is_rebuilding(self) -> bool:
        return self._rebuild_task is not None and not self._rebuild_task.done()

    @property
    def last_stats(self) -> dict[str, Any]:
        return dict(self._last_stats)

    async def load_persisted(self) -> SessionIndex:
        """Serve whatever the store already holds, without touching files."""
        index = await self.engine.load_index()
        self._publish(index)
        self._loaded = True
        self._status.sessionsIndexed = len(index)
        return index

    # ── Rebuilds ────────────────────────────────────────────────────

    async def rebuild(self, files: Iterable[LogFile], *, reparse_all: bool = False) -> SessionIndex:
        task = self._ensure_rebuild_task(list(files), reparse_all)
        return await asyncio.shield(task)

    def schedule_rebuild(self, files: Iterable[LogFile], *, reparse_all: bool = False) -> IndexingStatus:
        """Start a rebuild in the background (or join the running one)."""
        self._ensure_rebuild_task(list(files), reparse_all)
        return self.get_status()

    async def ensure_index(self, files: Iterable[LogFile]) -> SessionIndex:
        """Load the stored index; only rebuild when nothing is stored yet."""
        if not self._loaded:
            await self.load_persisted()
        if len(self._index) > 0:
            return self._index
        return await self.rebuild(files)

    def _ensure_rebuild_task(self, files: list[LogFile], reparse_all: bool) -> asyncio.Task:
        if self._rebuild_task is not None and not self._rebuild_task.done():
            logger.debug("Rebuild already in flight; joining it")
            return self._rebuild_task
        self._status = IndexingStatus(
            state="indexing",
            totalFiles=len(files),
            processedFiles=0.0,
            sessionsIndexed=len(self._index),
            startedAt=datetime.now(timezone.utc).isoformat(),
        )
        task = asyncio.create_task(self._run_rebuild(files, reparse_all))
        task.add_done_callback(self._on_rebuild_done)
        self._rebuild_task = task
        return task

    def _on_rebuild_done(self, task: asyncio.Task) -> None:
        if self._rebuild_task is task:
            self._rebuild_task = None
        if not task.cancelled() and task.exception() is not None:
            logger.debug("Rebuild task finished with error: %s", task.exception())

    async def _run_rebuild(self, files: list[LogFile], reparse_all: bool) -> SessionIndex:
        started = time.monotonic()
        try:
            index, stats = await self.engine.rebuild(
                files,
                reparse_all=reparse_all,
                on_progress=self._handle_progress,
            )
        except Exception as exc:
            self._status.state = "error"
            self._status.error = str(exc) or exc.__class__.__name__
            self._status.finishedAt = datetime.now(timezone.utc).isoformat()
            self._status.durationMs = int((time.monotonic() - started) * 1000)
            self._status.currentFile = None
            self._status.sessionsIndexed = len(self._index)
            logger.error("Index rebuild failed: %s", exc)
            raise

        self._last_stats = stats
        self._publish(index)
        self._loaded = True
        self._status.state = "ready"
        self._status.error = None
        self._status.currentFile = None
        self._status.processedFiles = float(self._status.totalFiles)
        self._status.sessionsIndexed = len(index)
        self._status.finishedAt = datetime.now(timezone.utc).isoformat()
        self._status.durationMs = int((time.monotonic() - started) * 1000)
        return index

    def _handle_progress(self, progress: BuildProgress) -> None:
        self._status.totalFiles = progress.totalFiles
        self._status.processedFiles = progress.processedFiles
        self._status.sessionsIndexed = progress.sessionsIndexed
        self._status.currentFile = progress.currentFile
        if self.on_progress is not None:
            self.on_progress(progress)

    def _publish(self, index: SessionIndex) -> None:
        self._index = index
        if self.on_index_update is not None:
            self.on_index_update(index)

    # ── Reads / edits ───────────────────────────────────────────────

    def get_session(self, session_id_or_chat_id: str) -> Session | None:
        return self._index.get_session(session_id_or_chat_id)

    def get_session_list(self) -> list[SessionListItem]:
        return self._index.get_session_list()

    def get_group_summaries(self) -> dict[str, SessionGroupSummary]:
        return self._index.get_group_summaries()

    async def set_session_group_name(self, session_group_id: str, session_name: str) -> bool:
        stored = await self.engine.metadata_repo.upsert_session_group_name(session_group_id, session_name)
        if stored:
            self._index.group_names[session_group_id.strip()] = session_name.strip()
        return stored

    async def list_operations(self, limit: int = 20) -> list[dict[str, Any]]:
        return await self.engine.list_operations(limit)
