"""Native backend: the platform's compiled SQLite opened directly on the data file."""

from __future__ import annotations

import importlib
import logging
import threading
from pathlib import Path
from types import ModuleType
from typing import Sequence

from membank.backends import sql
from membank.errors import StorageError
from membank.memory.models import Entry, EntryQuery, QueryMetric, TokenMetric

logger = logging.getLogger(__name__)


class NativeBackend:
    """File-backed SQLite in WAL mode. Safe for concurrent reads."""

    def __init__(self) -> None:
        self._engine: ModuleType | None = None
        self._conn = None
        self._path: Path | None = None
        self._columns = ""
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return "native"

    @property
    def supports_concurrent_reads(self) -> bool:
        return True

    @property
    def engine_version(self) -> str:
        return self._engine.sqlite_version if self._engine else ""

    @property
    def data_file(self) -> Path:
        if self._path is None:
            raise StorageError("backend not open")
        return self._path

    def _connection(self):
        if self._conn is None:
            raise StorageError("backend not open")
        return self._conn

    # ── Lifecycle ─────────────────────────────────────────────

    def resolve_path(self, path: Path) -> Path:
        return path

    def open(self, path: Path) -> None:
        # ImportError here means the interpreter was built without _sqlite3.
        engine = importlib.import_module("sqlite3")
        path.parent.mkdir(parents=True, exist_ok=True)
        with sql.translate_errors(engine, "open"):
            conn = engine.connect(
                str(path),
                timeout=5.0,
                isolation_level=None,  # autocommit; transactions are explicit
                check_same_thread=False,
            )
            try:
                conn.row_factory = engine.Row
                conn.execute("PRAGMA journal_mode=WAL")
                conn.execute("PRAGMA foreign_keys=ON")
                sql.prepare_connection(conn)
                columns = sql.entry_columns(conn)
            except BaseException:
                conn.close()
                raise
        self._engine = engine
        self._conn = conn
        self._path = path
        self._columns = columns
        logger.debug("Opened native SQLite %s at %s", engine.sqlite_version, path)

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                try:
                    self._conn.close()
                finally:
                    self._conn = None

    def checkpoint(self) -> None:
        with self._lock, sql.translate_errors(self._engine, "checkpoint"):
            self._connection().execute("PRAGMA wal_checkpoint(TRUNCATE)")

    def snapshot(self, dest: Path) -> None:
        dest.parent.mkdir(parents=True, exist_ok=True)
        with self._lock, sql.translate_errors(self._engine, "snapshot"):
            target = self._engine.connect(str(dest))
            try:
                self._connection().backup(target)
            finally:
                target.close()

    # ── Schema ────────────────────────────────────────────────

    def schema_version(self) -> int:
        with self._lock, sql.translate_errors(self._engine, "schema_version"):
            return sql.read_version(self._connection())

    def apply_migrations(self, migrations: Sequence, target: int) -> None:
        with self._lock, sql.translate_errors(self._engine, "migrate"):
            conn = self._connection()
            sql.migrate(conn, migrations, target)
            self._columns = sql.entry_columns(conn)

    # ── Entries ───────────────────────────────────────────────

    def insert_entry(self, entry: Entry) -> Entry:
        with self._lock, sql.translate_errors(self._engine, "append"):
            return sql.insert_entry(self._connection(), entry, "NULL AS" not in self._columns)

    def get_entry(self, entry_id: int) -> Entry | None:
        with self._lock, sql.translate_errors(self._engine, "get_entry"):
            return sql.get_entry(self._connection(), self._columns, entry_id)

    def query_entries(self, query: EntryQuery) -> list[Entry]:
        with self._lock, sql.translate_errors(self._engine, "query"):
            return sql.query_entries(self._connection(), self._columns, query)

    def search_entries(self, term: str, limit: int) -> list[Entry]:
        with self._lock, sql.translate_errors(self._engine, "search"):
            return sql.search_entries(self._connection(), self._columns, term, limit)

    def count_entries(self) -> int:
        with self._lock, sql.translate_errors(self._engine, "count"):
            return sql.count_entries(self._connection())

    # ── Metrics ───────────────────────────────────────────────

    def insert_token_metric(self, metric: TokenMetric) -> None:
        with self._lock, sql.translate_errors(self._engine, "token_metric"):
            sql.insert_token_metric(self._connection(), metric)

    def insert_query_metric(self, metric: QueryMetric) -> None:
        with self._lock, sql.translate_errors(self._engine, "query_metric"):
            sql.insert_query_metric(self._connection(), metric)

    def token_metrics(self, since: str) -> list[TokenMetric]:
        with self._lock, sql.translate_errors(self._engine, "token_metrics"):
            return sql.token_metrics(self._connection(), since)

    def query_metrics(self, since: str, operation: str | None = None) -> list[QueryMetric]:
        with self._lock, sql.translate_errors(self._engine, "query_metrics"):
            return sql.query_metrics(self._connection(), since, operation)
