"""Tests for corruption detection, integrity checks and snapshot restore."""

from __future__ import annotations

import json
import os
import sqlite3
import time
from pathlib import Path

import pytest

from conftest import make_entry
import membank.memory.store as store_module
from membank.backends import FlatFileBackend, NativeBackend
from membank.errors import CorruptionError, RecoveryError, StorageError
from membank.memory.recovery import (
    attempt_recovery,
    detect_corruption,
    latest_valid_snapshot,
    list_snapshots,
    snapshot_dir,
    snapshot_if_stale,
    verify_integrity,
)
from membank.memory.schema import SchemaManager
from membank.memory.store import EntryStore


def flaky_native():
    """NativeBackend class whose next ``remaining`` queries report a malformed image."""

    class FlakyNative(NativeBackend):
        remaining = 0

        def query_entries(self, query):
            if FlakyNative.remaining > 0:
                FlakyNative.remaining -= 1
                raise StorageError("query failed: database disk image is malformed", operation="query")
            return super().query_entries(query)

    return FlakyNative


def _make_sqlite(path: Path, rows: int = 3) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(str(path))
    try:
        conn.execute("CREATE TABLE t (id INTEGER PRIMARY KEY, v TEXT)")
        conn.executemany("INSERT INTO t (v) VALUES (?)", [(f"row {i}",) for i in range(rows)])
        conn.commit()
    finally:
        conn.close()
    return path


def _wrapped(message: str) -> StorageError:
    try:
        try:
            raise sqlite3.DatabaseError(message)
        except sqlite3.DatabaseError as e:
            raise StorageError(f"query failed: {e}") from e
    except StorageError as outer:
        return outer


class TestDetectCorruption:
    @pytest.mark.parametrize("message", [
        "database disk image is malformed",
        "file is not a database",
        "checksum mismatch on page 4",
    ])
    def test_corrupt_signatures(self, message):
        report = detect_corruption(sqlite3.DatabaseError(message))
        assert report.corrupted
        assert report.recoverable

    def test_lock_contention_is_not_corruption(self):
        report = detect_corruption(sqlite3.OperationalError("database is locked"))
        assert not report.corrupted

    @pytest.mark.parametrize("message", ["disk I/O error", "attempt to write a readonly database"])
    def test_fatal_signatures_not_recoverable(self, message):
        report = detect_corruption(sqlite3.OperationalError(message))
        assert not report.corrupted
        assert not report.recoverable

    def test_permission_error(self):
        report = detect_corruption(PermissionError(13, "Permission denied"))
        assert report.reason == "permission denied"

    def test_follows_cause_chain(self):
        report = detect_corruption(_wrapped("database disk image is malformed"))
        assert report.corrupted

    def test_json_decode_error(self):
        with pytest.raises(json.JSONDecodeError) as exc:
            json.loads("{not json")
        report = detect_corruption(exc.value)
        assert report.corrupted
        assert report.reason.startswith("unparseable document")


class TestVerifyIntegrity:
    def test_valid_database(self, tmp_path: Path):
        report = verify_integrity(_make_sqlite(tmp_path / "ok.db"))
        assert report.valid, report.issues

    def test_missing_file(self, tmp_path: Path):
        report = verify_integrity(tmp_path / "absent.db")
        assert not report.valid
        assert report.issues == ["file does not exist"]

    def test_empty_file(self, tmp_path: Path):
        path = tmp_path / "empty.db"
        path.touch()
        assert not verify_integrity(path).valid

    def test_garbage(self, tmp_path: Path):
        path = tmp_path / "garbage.db"
        path.write_bytes(b"definitely not sqlite" * 100)
        report = verify_integrity(path)
        assert not report.valid
        assert "missing SQLite header" in report.issues

    def test_truncated(self, tmp_path: Path):
        path = _make_sqlite(tmp_path / "cut.db", rows=200)
        data = path.read_bytes()
        path.write_bytes(data[: len(data) - 100])
        report = verify_integrity(path)
        assert not report.valid
        assert report.issues[0].startswith("truncated")

    def test_json_document(self, tmp_path: Path):
        path = tmp_path / "memory.json"
        path.write_text(json.dumps({"schema_version": 3, "entries": []}))
        assert verify_integrity(path).valid

    def test_json_unparseable(self, tmp_path: Path):
        path = tmp_path / "memory.json"
        path.write_text('{"schema_version": 3, "entries": [')
        assert not verify_integrity(path).valid

    def test_json_bad_collection(self, tmp_path: Path):
        path = tmp_path / "memory.json"
        path.write_text(json.dumps({"schema_version": 3, "entries": {}}))
        report = verify_integrity(path)
        assert report.issues == ["collection entries is not a list"]

    def test_json_incomplete_record(self, tmp_path: Path):
        path = tmp_path / "memory.json"
        path.write_text(json.dumps({"schema_version": 3, "entries": [{"id": 1, "content": "x"}]}))
        assert verify_integrity(path).issues == ["entry record is missing fields"]


class TestAttemptRecovery:
    def test_restores_backup(self, tmp_path: Path):
        backup = _make_sqlite(tmp_path / "good.db")
        path = tmp_path / "memory.db"
        path.write_bytes(b"corrupt" * 50)

        aside = attempt_recovery(path, backup)
        assert aside.read_bytes() == b"corrupt" * 50
        assert ".corrupt-" in aside.name
        assert path.read_bytes() == backup.read_bytes()
        assert verify_integrity(path).valid

    def test_no_backup(self, tmp_path: Path):
        path = tmp_path / "memory.db"
        path.write_bytes(b"corrupt")
        with pytest.raises(RecoveryError) as exc:
            attempt_recovery(path, None)
        assert exc.value.report.corrupted
        assert not exc.value.report.recoverable
        # Left in place for inspection.
        assert path.read_bytes() == b"corrupt"

    def test_invalid_backup_refused(self, tmp_path: Path):
        backup = tmp_path / "bad.db"
        backup.write_bytes(b"also corrupt" * 20)
        path = tmp_path / "memory.db"
        path.write_bytes(b"corrupt")
        with pytest.raises(RecoveryError, match="failed verification"):
            attempt_recovery(path, backup)
        assert path.read_bytes() == b"corrupt"


class TestSnapshots:
    def _open(self, path: Path, rows: int = 1) -> NativeBackend:
        backend = NativeBackend()
        backend.open(path)
        SchemaManager().ensure(backend, existed=False)
        for i in range(rows):
            backend.insert_entry(make_entry(f"row {i}"))
        return backend

    def test_skipped_when_empty(self, tmp_path: Path):
        backend = self._open(tmp_path / "memory.db", rows=0)
        try:
            assert snapshot_if_stale(backend) is None
            assert list_snapshots(backend.data_file) == []
        finally:
            backend.close()

    def test_creates_then_skips_while_fresh(self, tmp_path: Path):
        backend = self._open(tmp_path / "memory.db")
        try:
            first = snapshot_if_stale(backend)
            assert first is not None
            assert first.parent == snapshot_dir(backend.data_file)
            assert verify_integrity(first).valid
            assert snapshot_if_stale(backend) is None
        finally:
            backend.close()

    def test_rotation_keeps_newest(self, tmp_path: Path):
        backend = self._open(tmp_path / "memory.db")
        try:
            made = []
            for i in range(4):
                made.append(snapshot_if_stale(backend, keep=2, max_age_hours=0))
                # Distinct mtimes so newest-first ordering is stable.
                past = time.time() - (10 - i) * 60
                os.utime(made[-1], (past, past))
            kept = list_snapshots(backend.data_file)
            assert kept == [made[3], made[2]]
        finally:
            backend.close()

    def test_latest_valid_skips_damaged(self, tmp_path: Path):
        backend = self._open(tmp_path / "memory.db")
        try:
            good = snapshot_if_stale(backend, max_age_hours=0)
            past = time.time() - 3600
            os.utime(good, (past, past))
            bad = snapshot_if_stale(backend, max_age_hours=0)
            bad.write_bytes(b"damaged" * 100)
            assert latest_valid_snapshot(backend.data_file) == good
        finally:
            backend.close()


class TestStoreRecovery:
    @pytest.mark.asyncio
    async def test_init_restores_corrupt_file_from_snapshot(self, data_path: Path):
        store = EntryStore(backends=[NativeBackend])
        await store.init(data_path)
        entry_id = await store.append(make_entry("worth keeping"))
        await store.close()

        # Second open takes the first snapshot now that there is data.
        reopened = EntryStore(backends=[NativeBackend])
        await reopened.init(data_path)
        await reopened.close()
        assert len(list_snapshots(data_path)) == 1

        for suffix in ("-wal", "-shm"):
            data_path.with_name(data_path.name + suffix).unlink(missing_ok=True)
        data_path.write_bytes(b"this is not a database " * 400)

        recovered = EntryStore(backends=[NativeBackend])
        assert await recovered.init(data_path) is True
        entry = await recovered.get_entry(entry_id)
        assert entry.content == "worth keeping"
        await recovered.close()
        assert list(data_path.parent.glob("memory.db.corrupt-*"))

    @pytest.mark.asyncio
    async def test_init_without_snapshot_raises(self, data_path: Path):
        data_path.parent.mkdir(parents=True)
        data_path.write_bytes(b"this is not a database " * 400)

        store = EntryStore(backends=[NativeBackend, FlatFileBackend])
        with pytest.raises(RecoveryError):
            await store.init(data_path)
        assert not store.initialized
        # No silent switch to another backend.
        assert not data_path.with_suffix(".json").exists()

    @pytest.mark.asyncio
    async def test_flatfile_restored_from_snapshot(self, data_path: Path):
        store = EntryStore(backends=[FlatFileBackend])
        await store.init(data_path)
        await store.append(make_entry("json entry"))
        await store.close()
        reopened = EntryStore(backends=[FlatFileBackend])
        await reopened.init(data_path)
        await reopened.close()

        json_path = data_path.with_suffix(".json")
        json_path.write_text('{"format": "membank-flatfile", "entries": [')

        recovered = EntryStore(backends=[FlatFileBackend])
        assert await recovered.init(data_path) is True
        assert await recovered.count_entries() == 1
        await recovered.close()

    @staticmethod
    async def _flatfile_with_snapshot(data_path: Path) -> Path:
        store = EntryStore(backends=[FlatFileBackend])
        await store.init(data_path)
        await store.append(make_entry("json entry"))
        await store.close()
        reopened = EntryStore(backends=[FlatFileBackend])
        await reopened.init(data_path)
        await reopened.close()
        return data_path.with_suffix(".json")

    @pytest.mark.asyncio
    async def test_flatfile_bad_utf8_restored(self, data_path: Path):
        json_path = await self._flatfile_with_snapshot(data_path)
        json_path.write_bytes(b'{"format": "membank-flatfile", "entries": ["\xff\xfe broken')

        recovered = EntryStore(backends=[FlatFileBackend])
        assert await recovered.init(data_path) is True
        assert await recovered.count_entries() == 1
        await recovered.close()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("record", [
        {"id": 1, "timestamp": "2025-01-01T00:00:00.000Z", "tag": "", "content": "x", "created_at": ""},
        {"id": 1, "category": "NOTES", "timestamp": "2025-01-01T00:00:00.000Z", "tag": "",
         "content": "x", "created_at": ""},
        "not a record",
    ])
    async def test_flatfile_bad_record_restored(self, data_path: Path, record):
        json_path = await self._flatfile_with_snapshot(data_path)
        doc = json.loads(json_path.read_text(encoding="utf-8"))
        doc["entries"].append(record)
        json_path.write_text(json.dumps(doc), encoding="utf-8")

        recovered = EntryStore(backends=[FlatFileBackend])
        assert await recovered.init(data_path) is True
        [entry] = await recovered.get_recent()
        assert entry.content == "json entry"
        await recovered.close()

    @pytest.mark.asyncio
    async def test_flatfile_bad_record_without_snapshot_raises(self, data_path: Path):
        json_path = data_path.with_suffix(".json")
        json_path.parent.mkdir(parents=True)
        json_path.write_text(json.dumps({
            "format": "membank-flatfile",
            "schema_version": 3,
            "applied_at": None,
            "next_id": 2,
            "entries": [{"id": 1, "content": "no category"}],
        }), encoding="utf-8")

        store = EntryStore(backends=[FlatFileBackend])
        with pytest.raises(RecoveryError):
            await store.init(data_path)
        assert not store.initialized


class TestRuntimeRecovery:
    @pytest.fixture
    def restores(self, monkeypatch) -> list[Path]:
        calls: list[Path] = []
        original = store_module.attempt_recovery

        def counting(path, backup_path):
            calls.append(path)
            return original(path, backup_path)

        monkeypatch.setattr(store_module, "attempt_recovery", counting)
        return calls

    @staticmethod
    async def _store_with_snapshot(data_path: Path, backend) -> EntryStore:
        first = EntryStore(backends=[backend])
        await first.init(data_path)
        await first.append(make_entry("survives recovery"))
        await first.close()
        store = EntryStore(backends=[backend])
        await store.init(data_path)
        assert len(list_snapshots(data_path)) == 1
        return store

    @pytest.mark.asyncio
    async def test_query_recovers_and_retries_once(self, data_path: Path, restores):
        backend = flaky_native()
        store = await self._store_with_snapshot(data_path, backend)
        backend.remaining = 1

        [entry] = await store.get_recent()
        assert entry.content == "survives recovery"
        assert restores == [data_path]
        assert store.initialized
        assert list(data_path.parent.glob("memory.db.corrupt-*"))

        # The recovered store keeps working.
        await store.append(make_entry("after recovery"))
        assert await store.count_entries() == 2
        await store.close()

    @pytest.mark.asyncio
    async def test_corruption_after_retry_is_fatal(self, data_path: Path, restores):
        backend = flaky_native()
        store = await self._store_with_snapshot(data_path, backend)
        backend.remaining = 10

        with pytest.raises(CorruptionError) as exc:
            await store.query_by_category("CONTEXT")
        assert not isinstance(exc.value, RecoveryError)
        assert exc.value.report.corrupted
        assert restores == [data_path]
        await store.close()

    @pytest.mark.asyncio
    async def test_non_corrupt_failure_is_not_recovered(self, data_path: Path, restores):
        class FullDisk(NativeBackend):
            def count_entries(self):
                raise StorageError("count failed: disk is full", operation="count")

        store = EntryStore(backends=[FullDisk])
        await store.init(data_path)
        with pytest.raises(StorageError) as exc:
            await store.count_entries()
        assert not isinstance(exc.value, CorruptionError)
        assert restores == []
        await store.close()
