import os
import shutil
import tempfile
import unittest
from pathlib import Path

import aiosqlite

from lms_explorer.db.sqlite_migrations import run_migrations
from lms_explorer.db.sync_engine import SyncEngine, discover_log_files, stat_log_file
from lms_explorer.models import LogFile, Session, StoredSessionRecord, TimelineEvent

FIXTURES = Path(__file__).parent / "fixtures"
BASE_MTIME = 1_705_000_000


class SyncEngineRebuildTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.tmpdir = tempfile.TemporaryDirectory()
        self.root = Path(self.tmpdir.name) / "server-logs"
        shutil.copytree(FIXTURES, self.root)
        # Oldest to newest in file name order; the orphan-only file is the latest.
        for position, path in enumerate(sorted(self.root.rglob("*.log"))):
            self._set_mtime(path, BASE_MTIME + position * 60)

        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.engine = SyncEngine(self.db)

    async def asyncTearDown(self) -> None:
        await self.db.close()
        self.tmpdir.cleanup()

    def _path(self, name: str) -> Path:
        return self.root / "2024-01" / name

    @staticmethod
    def _set_mtime(path: Path, seconds: int) -> None:
        os.utime(path, ns=(seconds * 1_000_000_000, seconds * 1_000_000_000))

    async def _updated_at(self, path: Path) -> list[str]:
        async with self.db.execute(
            "SELECT updated_at FROM sessions WHERE source_path = ? ORDER BY source_ordinal", (str(path),)
        ) as cur:
            return [row[0] for row in await cur.fetchall()]

    async def test_first_rebuild_indexes_every_file(self) -> None:
        index, stats = await self.engine.rebuild(discover_log_files(self.root))

        self.assertEqual(stats["files_total"], 5)
        self.assertEqual(stats["files_parsed"], 5)
        self.assertEqual(stats["files_failed"], 0)
        self.assertEqual(stats["sessions_indexed"], 5)
        self.assertEqual(stats["sessions_added"], 5)
        self.assertEqual(len(index), 5)
        self.assertEqual(await self.engine.session_repo.count(), 5)
        self.assertIsNotNone(index.get_session("chatcmpl-tools"))

    async def test_second_rebuild_is_stable_and_skips_unchanged_files(self) -> None:
        first, _ = await self.engine.rebuild(discover_log_files(self.root))
        before = await self._updated_at(self._path("2024-01-16.1.log"))

        second, stats = await self.engine.rebuild(discover_log_files(self.root))

        self.assertEqual(sorted(first.sessions), sorted(second.sessions))
        for session_id, session in first.sessions.items():
            self.assertEqual(second.sessions[session_id].model_dump(), session.model_dump())
        self.assertEqual(stats["files_parsed"], 0)
        self.assertEqual(stats["files_skipped"], 5)
        self.assertEqual(await self._updated_at(self._path("2024-01-16.1.log")), before)

    async def test_touched_file_keeps_its_rows(self) -> None:
        await self.engine.rebuild(discover_log_files(self.root))
        path = self._path("2024-01-15.1.log")
        before = await self._updated_at(path)
        self._set_mtime(path, BASE_MTIME + 30)

        _, stats = await self.engine.rebuild(discover_log_files(self.root))

        self.assertEqual(stats["files_touched"], 1)
        self.assertEqual(stats["files_parsed"], 0)
        self.assertEqual(await self._updated_at(path), before)
        record = await self.engine.file_repo.get(str(path))
        self.assertEqual(record.mtimeMs, (BASE_MTIME + 30) * 1000)

    async def test_changed_file_is_reparsed(self) -> None:
        await self.engine.rebuild(discover_log_files(self.root))
        path = self._path("2024-01-15.1.log")
        with open(path, "a", encoding="utf-8") as handle:
            handle.write(
                "[2024-01-15 11:00:00][INFO] Received request: POST to /v1/chat/completions with body "
                '{"model":"qwen2.5-7b-instruct","messages":[{"role":"user","content":"again"}]}\n'
                "[2024-01-15 11:00:02][INFO][qwen2.5-7b-instruct] Finished streaming response\n"
            )
        self._set_mtime(path, BASE_MTIME + 30)

        index, stats = await self.engine.rebuild(discover_log_files(self.root))

        self.assertEqual(stats["files_parsed"], 1)
        self.assertEqual(stats["sessions_added"], 1)
        self.assertEqual(len(index), 6)
        self.assertEqual(len(index.source_ids[str(path)]), 2)

    async def test_latest_file_is_always_reparsed(self) -> None:
        await self.engine.rebuild(discover_log_files(self.root))
        latest = self._path("2024-01-19.1.log")
        latest.write_text(
            latest.read_text(encoding="utf-8")
            + "[2024-01-19 12:05:00][INFO] Received request: POST to /v1/chat/completions with body "
            '{"model":"m","messages":[]}\n',
            encoding="utf-8",
        )
        # Keep the stored mtime so only the content differs.
        self._set_mtime(latest, BASE_MTIME + 4 * 60)

        index, stats = await self.engine.rebuild(discover_log_files(self.root))

        self.assertEqual(stats["files_parsed"], 1)
        self.assertEqual(len(index.source_ids[str(latest)]), 1)

    async def test_reparse_all_forces_every_file(self) -> None:
        await self.engine.rebuild(discover_log_files(self.root))

        _, stats = await self.engine.rebuild(discover_log_files(self.root), reparse_all=True)

        self.assertEqual(stats["files_parsed"], 5)
        self.assertEqual(stats["sessions_added"], 0)
        self.assertEqual(stats["sessions_removed"], 0)

    async def test_missing_files_are_purged(self) -> None:
        await self.engine.rebuild(discover_log_files(self.root))
        removed = self._path("2024-01-16.1.log")
        removed.unlink()

        index, stats = await self.engine.rebuild(discover_log_files(self.root))

        self.assertEqual(stats["files_removed"], 1)
        self.assertEqual(stats["sessions_removed"], 2)
        self.assertEqual(len(index), 3)
        self.assertIsNone(index.get_session("chatcmpl-first"))
        self.assertEqual(await self.engine.session_repo.count(), 3)
        self.assertIsNone(await self.engine.file_repo.get(str(removed)))

    async def test_unreadable_file_is_skipped(self) -> None:
        files = discover_log_files(self.root)
        files.append(LogFile(path=str(self.root / "vanished.log"), mtimeMs=1, sizeBytes=1))

        index, stats = await self.engine.rebuild(files)

        self.assertEqual(stats["files_failed"], 1)
        self.assertEqual(stats["files_parsed"], 5)
        self.assertEqual(len(index), 5)

    async def test_overly_nested_packet_does_not_abort_the_rebuild(self) -> None:
        nested = self.root / "2023-12" / "2023-12-31.1.log"
        nested.parent.mkdir()
        depth = 100_000
        nested.write_text(
            "[2023-12-31 10:00:00][INFO][m] Generated packet: " + '{"a":' * depth + "1" + "}" * depth + "\n",
            encoding="utf-8",
        )
        self._set_mtime(nested, BASE_MTIME - 60)

        index, stats = await self.engine.rebuild(discover_log_files(self.root))

        self.assertEqual(stats["files_failed"], 0)
        self.assertEqual(stats["files_parsed"], 6)
        self.assertEqual(len(index), 5)

    async def test_progress_is_monotonic(self) -> None:
        seen = []

        await self.engine.rebuild(discover_log_files(self.root), on_progress=seen.append)

        processed = [progress.processedFiles for progress in seen]
        self.assertEqual(processed, sorted(processed))
        self.assertEqual(seen[-1].processedFiles, 5.0)
        self.assertEqual(seen[-1].totalFiles, 5)
        self.assertIsNone(seen[-1].currentFile)
        self.assertEqual(seen[-1].sessionsIndexed, 5)

    async def test_repositories_share_the_write_lock(self) -> None:
        lock = self.engine.write_lock

        self.assertIs(self.engine.session_repo.lock, lock)
        self.assertIs(self.engine.file_repo.lock, lock)
        self.assertIs(self.engine.metadata_repo.lock, lock)

    async def test_operations_are_tracked(self) -> None:
        _, stats = await self.engine.rebuild(discover_log_files(self.root), trigger="watcher")

        operations = await self.engine.list_operations()

        self.assertEqual(operations[0]["id"], stats["operation_id"])
        self.assertEqual(operations[0]["status"], "completed")
        self.assertEqual(operations[0]["trigger"], "watcher")
        self.assertEqual(operations[0]["stats"]["files_parsed"], 5)
        self.assertIsNotNone(await self.engine.get_operation(stats["operation_id"]))
        self.assertIsNone(await self.engine.get_operation("OP-missing"))

    async def test_orphan_rows_reattach_on_load(self) -> None:
        await self.engine.rebuild(discover_log_files(self.root))
        orphan = Session(
            sessionId="orphan-1",
            firstSeenAt="2024-01-16 09:00:30",
            events=[
                TimelineEvent(id="e00000-stream_finished", type="stream_finished", ts="2024-01-16 09:00:30"),
            ],
        )
        stray = Session(
            sessionId="orphan-2",
            firstSeenAt="2023-12-31 23:59:59",
            events=[TimelineEvent(id="e00000-stream_finished", type="stream_finished", ts="2023-12-31 23:59:59")],
        )
        await self.engine.session_repo.replace_file_sessions(
            LogFile(path="orphans.log"),
            "x",
            [
                StoredSessionRecord(session=orphan, sourcePath="orphans.log"),
                StoredSessionRecord(session=stray, sourcePath="orphans.log", sourceOrdinal=1),
            ],
        )

        index = await self.engine.load_index()

        self.assertEqual(len(index), 5)
        self.assertIsNone(index.get_session("orphan-1"))
        target = index.get_session("chatcmpl-first")
        self.assertIn("orphan-1:e00000-stream_finished", [event.id for event in target.events])
        self.assertEqual(target.events[0].type, "request")
        self.assertEqual(target.metrics.streamLatencyMs, 27_000)


class LogDiscoveryTests(unittest.TestCase):
    def test_discover_log_files(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        root = Path(tmpdir.name)
        (root / "2024-02").mkdir()
        (root / "2024-02" / "2024-02-01.1.log").write_text("x", encoding="utf-8")
        (root / "notes.txt").write_text("ignored", encoding="utf-8")

        files = discover_log_files(root)

        self.assertEqual([Path(f.path).name for f in files], ["2024-02-01.1.log"])
        self.assertEqual(files[0].sizeBytes, 1)
        self.assertEqual(files[0], stat_log_file(root / "2024-02" / "2024-02-01.1.log"))
        self.assertEqual(discover_log_files(root / "missing"), [])


if __name__ == "__main__":
    unittest.main()
