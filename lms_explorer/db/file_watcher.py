"""Watch the server log directory and re-index when log files change."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Callable, Iterable, Optional

from watchfiles import Change, awatch

from lms_explorer import config
from lms_explorer.db.sync_engine import LOG_FILE_SUFFIX, discover_log_files
from lms_explorer.models import LogFile

logger = logging.getLogger("lms_explorer.watcher")

_CHANGE_KINDS = {
    Change.added: "modified",
    Change.modified: "modified",
    Change.deleted: "deleted",
}


def classify_changes(changes: Iterable[tuple[Change, str]]) -> list[tuple[str, Path]]:
    """Reduce a watchfiles batch to sorted ``(kind, path)`` pairs for log files."""
    relevant = [
        (_CHANGE_KINDS[change], Path(raw_path))
        for change, raw_path in changes
        if change in _CHANGE_KINDS and Path(raw_path).suffix == LOG_FILE_SUFFIX
    ]
    relevant.sort(key=lambda pair: str(pair[1]))
    return relevant


class FileWatcher:
    """Runs ``coordinator.rebuild`` once per batch of log file changes.

    A rebuild already in flight absorbs the request, so bursts of writes
    from the server collapse into a single pass.
    """

    def __init__(self):
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(
        self,
        coordinator,
        log_root: Path,
        discover: Callable[[], list[LogFile]] | None = None,
    ) -> None:
        if self.is_running:
            logger.warning("Watcher for log files is already active")
            return
        root = Path(log_root)
        list_files = discover or (lambda: discover_log_files(root))
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run(coordinator, root, list_files))
        logger.info("Watching %s for log changes", root)

    async def stop(self) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Log watcher stopped")

    async def _run(
        self,
        coordinator,
        root: Path,
        list_files: Callable[[], list[LogFile]],
    ) -> None:
        if not root.is_dir():
            logger.warning("Log directory %s is missing; nothing to watch", root)
            return
        try:
            async for batch in awatch(root, stop_event=self._stop_event, debounce=config.WATCH_DEBOUNCE_MS):
                changed = classify_changes(batch)
                if not changed:
                    continue
                logger.info("%d log file change(s) under %s; re-indexing", len(changed), root)
                try:
                    await coordinator.rebuild(list_files())
                except Exception as exc:  # noqa: BLE001
                    logger.error("Re-index after file changes failed: %s", exc)
        except asyncio.CancelledError:
            raise
        except Exception as exc:  # noqa: BLE001
            logger.error("Log watcher stopped unexpectedly: %s", exc)
