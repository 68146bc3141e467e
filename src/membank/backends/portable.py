"""Portable backend: an in-memory SQLite image persisted by whole-file export.

The engine module is located at open time. A separately packaged build
(``pysqlite3``) is preferred when one can be found, first on the import
path, then beside the installed package, then in the current working
directory. The interpreter's own ``sqlite3`` is the last resort. Every
attempt is logged so a failed resolution can be diagnosed afterwards.

The database lives in memory between writes; after every mutation the
image is exported to a temporary sibling and renamed over the data file,
so a crash never leaves a half-written file behind.
"""

from __future__ import annotations

import importlib
import importlib.util
import logging
import os
import sys
import threading
from importlib.machinery import PathFinder
from pathlib import Path
from types import ModuleType
from typing import Sequence

from membank.backends import sql
from membank.errors import StorageError
from membank.memory.models import Entry, EntryQuery, QueryMetric, TokenMetric

logger = logging.getLogger(__name__)

ENGINE_MODULE = "pysqlite3"

# membank/backends/portable.py -> the directory the membank package is installed in
INSTALL_DIR = Path(__file__).resolve().parents[2]


def _load_from(directory: Path) -> ModuleType | None:
    spec = PathFinder.find_spec(ENGINE_MODULE, [str(directory)])
    if spec is None or spec.loader is None:
        return None
    module = importlib.util.module_from_spec(spec)
    sys.modules[ENGINE_MODULE] = module
    try:
        spec.loader.exec_module(module)
    except BaseException:
        sys.modules.pop(ENGINE_MODULE, None)
        raise
    return module


def resolve_engine(search_dirs: Sequence[Path] | None = None) -> ModuleType:
    """Find a DB-API SQLite module, trying each location in turn."""
    if search_dirs is None:
        search_dirs = (INSTALL_DIR, Path.cwd())

    try:
        if importlib.util.find_spec(ENGINE_MODULE) is not None:
            module = importlib.import_module(ENGINE_MODULE)
            logger.info("Portable engine: %s from import path", ENGINE_MODULE)
            return module
        logger.debug("Portable engine: %s not on import path", ENGINE_MODULE)
    except ImportError as e:
        logger.warning("Portable engine: import path load failed: %s", e)

    for directory in search_dirs:
        try:
            module = _load_from(directory)
        except (ImportError, OSError) as e:
            logger.warning("Portable engine: load from %s failed: %s", directory, e)
            continue
        if module is not None:
            logger.info("Portable engine: %s from %s", ENGINE_MODULE, directory)
            return module
        logger.debug("Portable engine: %s not found in %s", ENGINE_MODULE, directory)

    logger.info("Portable engine: falling back to interpreter sqlite3")
    return importlib.import_module("sqlite3")


class PortableBackend:
    """In-memory SQLite flushed to disk after each write. Reads are serialized."""

    def __init__(self, search_dirs: Sequence[Path] | None = None) -> None:
        self._search_dirs = search_dirs
        self._engine: ModuleType | None = None
        self._conn = None
        self._path: Path | None = None
        self._columns = ""
        self._dirty = False
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return "portable"

    @property
    def supports_concurrent_reads(self) -> bool:
        return False

    @property
    def engine_version(self) -> str:
        return getattr(self._engine, "sqlite_version", "") if self._engine else ""

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
        engine = resolve_engine(self._search_dirs)
        path.parent.mkdir(parents=True, exist_ok=True)
        with sql.translate_errors(engine, "open"):
            conn = engine.connect(":memory:", isolation_level=None, check_same_thread=False)
            existed = path.exists() and path.stat().st_size > 0
            try:
                conn.row_factory = engine.Row
                if existed:
                    source = engine.connect(str(path))
                    try:
                        source.backup(conn)
                    finally:
                        source.close()
                sql.prepare_connection(conn)
                columns = sql.entry_columns(conn)
            except BaseException:
                conn.close()
                raise
        self._engine = engine
        self._conn = conn
        self._path = path
        self._columns = columns
        # An existing file is left byte-for-byte untouched until the first write.
        self._dirty = not existed
        with self._lock, sql.translate_errors(engine, "open"):
            if self._dirty:
                self._flush()
        logger.debug("Opened portable image of %s (engine %s)", path, self.engine_version)

    def _commit(self) -> None:
        self._dirty = True
        self._flush()

    def _flush(self) -> None:
        """Export the in-memory image over the data file. Caller holds the lock."""
        path = self.data_file
        tmp = path.with_name(path.name + ".tmp")
        if tmp.exists():
            tmp.unlink()
        target = self._engine.connect(str(tmp))
        try:
            self._connection().backup(target)
        finally:
            target.close()
        os.replace(tmp, path)
        self._dirty = False
        # A previous WAL-mode session may have left sidecars that no longer match.
        for suffix in ("-wal", "-shm"):
            stale = path.with_name(path.name + suffix)
            if stale.exists():
                stale.unlink()

    def close(self) -> None:
        with self._lock:
            if self._conn is None:
                return
            try:
                # A data file deleted from outside stays deleted.
                if self._dirty and self.data_file.exists():
                    with sql.translate_errors(self._engine, "close"):
                        self._flush()
            finally:
                self._conn.close()
                self._conn = None

    def checkpoint(self) -> None:
        with self._lock, sql.translate_errors(self._engine, "checkpoint"):
            if self._dirty:
                self._flush()

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
            self._commit()

    # ── Entries ───────────────────────────────────────────────

    def insert_entry(self, entry: Entry) -> Entry:
        with self._lock, sql.translate_errors(self._engine, "append"):
            stored = sql.insert_entry(self._connection(), entry, "NULL AS" not in self._columns)
            self._commit()
            return stored

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
            self._commit()

    def insert_query_metric(self, metric: QueryMetric) -> None:
        with self._lock, sql.translate_errors(self._engine, "query_metric"):
            sql.insert_query_metric(self._connection(), metric)
            self._commit()

    def token_metrics(self, since: str) -> list[TokenMetric]:
        with self._lock, sql.translate_errors(self._engine, "token_metrics"):
            return sql.token_metrics(self._connection(), since)

    def query_metrics(self, since: str, operation: str | None = None) -> list[QueryMetric]:
        with self._lock, sql.translate_errors(self._engine, "query_metrics"):
            return sql.query_metrics(self._connection(), since, operation)
