import asyncio
import sqlite3
import unittest
from pathlib import Path
from unittest.mock import patch

import aiosqlite

from lms_explorer.db.repositories import (
    SqliteIndexedFileRepository,
    SqliteMetadataRepository,
    SqliteSessionRepository,
)
from lms_explorer.db.sqlite_migrations import SCHEMA_VERSION, run_migrations
from lms_explorer.models import IndexedFileRecord, LogFile, StoredSessionRecord
from lms_explorer.parsers.lines import iter_log_lines
from lms_explorer.parsers.sessions import parse_log_lines

FIXTURES = Path(__file__).parent / "fixtures" / "2024-01"


def _records(name: str) -> tuple[LogFile, list[StoredSessionRecord]]:
    path = str(FIXTURES / name)
    sessions = parse_log_lines(iter_log_lines(path), path)
    records = [
        StoredSessionRecord(session=session, sourcePath=path, sourceOrdinal=ordinal)
        for ordinal, session in enumerate(sessions)
    ]
    return LogFile(path=path, mtimeMs=1_000, sizeBytes=10), records


class SessionRepositoryTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.repo = SqliteSessionRepository(self.db)
        self.files = SqliteIndexedFileRepository(self.db)

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_replace_round_trips_sessions(self) -> None:
        log_file, records = _records("2024-01-18.1.log")

        await self.repo.replace_file_sessions(log_file, "abc", records)

        stored = await self.repo.get_by_id(records[0].session.sessionId)
        self.assertIsNotNone(stored)
        self.assertEqual(stored.sourcePath, log_file.path)
        self.assertEqual(stored.session.model_dump(), records[0].session.model_dump())
        self.assertEqual(stored.session.toolCalls[0].argumentsJson, {"pattern": "**/*.ts"})

        file_record = await self.files.get(log_file.path)
        self.assertEqual(file_record.checksum, "abc")
        self.assertEqual(file_record.mtimeMs, 1_000)
        self.assertEqual(file_record.sizeBytes, 10)

    async def test_replace_drops_stale_rows_of_the_same_file(self) -> None:
        log_file, records = _records("2024-01-16.1.log")
        await self.repo.replace_file_sessions(log_file, "v1", records)

        await self.repo.replace_file_sessions(log_file, "v2", records[:1])

        self.assertEqual(await self.repo.count(), 1)
        by_source = await self.repo.list_ids_by_source()
        self.assertEqual(by_source, {log_file.path: [records[0].session.sessionId]})
        self.assertEqual((await self.files.get(log_file.path)).checksum, "v2")

    async def test_iteration_is_ascending_by_first_seen(self) -> None:
        for name in ("2024-01-18.1.log", "2024-01-15.1.log", "2024-01-16.1.log"):
            log_file, records = _records(name)
            await self.repo.replace_file_sessions(log_file, name, records)

        streamed = [record async for record in self.repo.iter_sessions()]
        listed = await self.repo.list_sessions()

        first_seen = [record.session.firstSeenAt for record in streamed]
        self.assertEqual(first_seen, sorted(first_seen))
        self.assertEqual(len(streamed), 4)
        self.assertEqual(
            [record.session.sessionId for record in streamed],
            [record.session.sessionId for record in listed],
        )

    async def test_delete_missing_files(self) -> None:
        kept_file, kept = _records("2024-01-15.1.log")
        gone_file, gone = _records("2024-01-16.1.log")
        await self.repo.replace_file_sessions(kept_file, "a", kept)
        await self.repo.replace_file_sessions(gone_file, "b", gone)

        removed = await self.repo.delete_missing_files([kept_file.path])

        self.assertEqual(removed, [gone_file.path])
        self.assertEqual(await self.repo.count(), 1)
        self.assertIsNone(await self.files.get(gone_file.path))
        self.assertEqual(await self.repo.delete_missing_files([kept_file.path]), [])

    async def test_unreadable_rows_are_skipped(self) -> None:
        log_file, records = _records("2024-01-15.1.log")
        await self.repo.replace_file_sessions(log_file, "a", records)
        await self.db.execute(
            """INSERT INTO sessions (session_id, first_seen_at, events_json, source_path, updated_at)
               VALUES ('broken', '2024-01-01 00:00:00', '[{"id": "x", "type": "bogus", "ts": ""}]', 'x.log', '')"""
        )
        await self.db.commit()

        streamed = await self.repo.list_sessions()

        self.assertEqual([record.session.sessionId for record in streamed], [records[0].session.sessionId])
        self.assertIsNone(await self.repo.get_by_id("broken"))

    async def test_lone_surrogates_in_text_columns_are_replaced(self) -> None:
        log_file, records = _records("2024-01-15.1.log")
        session = records[0].session.model_copy(update={"model": "qwen\ud800", "chatId": "chat-\ud800"})

        await self.repo.replace_file_sessions(
            log_file, "a", [StoredSessionRecord(session=session, sourcePath=log_file.path)]
        )

        stored = await self.repo.get_by_id(session.sessionId)
        self.assertEqual(stored.session.model, "qwen?")
        self.assertEqual(stored.session.chatId, "chat-?")

    async def test_group_rename_waits_for_a_failing_file_replace(self) -> None:
        log_file, records = _records("2024-01-15.1.log")
        await self.repo.replace_file_sessions(log_file, "v1", records)
        metadata = SqliteMetadataRepository(self.db)

        with patch.object(self.db, "executemany", side_effect=sqlite3.OperationalError("disk I/O error")):
            replaced, renamed = await asyncio.gather(
                self.repo.replace_file_sessions(log_file, "v2", records),
                metadata.upsert_session_group_name("session-group-1", "Refactor"),
                return_exceptions=True,
            )

        self.assertIsInstance(replaced, sqlite3.OperationalError)
        self.assertIs(renamed, True)
        self.assertEqual(await self.repo.list_ids_by_source(), {log_file.path: [records[0].session.sessionId]})
        self.assertEqual((await self.files.get(log_file.path)).checksum, "v1")
        self.assertEqual(await metadata.list_session_group_names(), {"session-group-1": "Refactor"})


class IndexStateRepositoryTests(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self) -> None:
        self.db = await aiosqlite.connect(":memory:")
        self.db.row_factory = aiosqlite.Row
        await run_migrations(self.db)
        self.files = SqliteIndexedFileRepository(self.db)
        self.metadata = SqliteMetadataRepository(self.db)

    async def asyncTearDown(self) -> None:
        await self.db.close()

    async def test_migrations_are_idempotent_and_versioned(self) -> None:
        await run_migrations(self.db)

        self.assertEqual(await self.metadata.get_schema_version(), SCHEMA_VERSION)

    async def test_indexed_file_upsert(self) -> None:
        await self.files.upsert(IndexedFileRecord(path="/logs/a.log", checksum="c1", mtimeMs=5, sizeBytes=7))
        await self.files.upsert(IndexedFileRecord(path="/logs/a.log", checksum="c2", mtimeMs=6, sizeBytes=8))

        records = await self.files.list_all()

        self.assertEqual(list(records), ["/logs/a.log"])
        self.assertEqual(records["/logs/a.log"].checksum, "c2")
        self.assertEqual(records["/logs/a.log"].mtimeMs, 6)
        self.assertTrue(records["/logs/a.log"].lastIndexedAt)

    async def test_settings_blob(self) -> None:
        self.assertEqual(await self.metadata.load_settings(), {})

        await self.metadata.save_settings({"logRoot": "/logs", "watch": True})

        self.assertEqual(await self.metadata.load_settings(), {"logRoot": "/logs", "watch": True})
        await self.metadata.set_value("settings", "{not json")
        self.assertEqual(await self.metadata.load_settings(), {})

    async def test_session_group_names(self) -> None:
        self.assertTrue(await self.metadata.upsert_session_group_name(" session-group-1 ", " Refactor "))
        self.assertTrue(await self.metadata.upsert_session_group_name("session-group-1", "Refactor v2"))
        self.assertFalse(await self.metadata.upsert_session_group_name("session-group-2", "   "))
        self.assertFalse(await self.metadata.upsert_session_group_name("", "Name"))

        self.assertEqual(await self.metadata.list_session_group_names(), {"session-group-1": "Refactor v2"})
        self.assertEqual(await self.metadata.get_session_group_name("session-group-1"), "Refactor v2")
        self.assertIsNone(await self.metadata.get_session_group_name("session-group-2"))


if __name__ == "__main__":
    unittest.main()
