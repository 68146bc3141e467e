"""Entry store, the only owner of the backend handle.

Append-only: entries are validated, normalised and inserted through the
transaction serializer; they are never updated or deleted. Reads go
straight to the backend when it tolerates concurrent readers and through
the serializer otherwise.

Storage failures that match a corruption signature trigger one recovery
attempt from the newest valid snapshot followed by one retry of the
failed operation. Anything still failing after that is fatal.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from pathlib import Path
from typing import Any, Callable, Sequence

from membank.backends import DEFAULT_BACKENDS, Backend, BackendInfo
from membank.errors import CorruptionError, RecoveryError, StorageError, ValidationError
from membank.memory.models import (
    Category,
    Entry,
    EntryQuery,
    QueryMetric,
    TokenMetric,
    format_timestamp,
)
from membank.memory.recovery import (
    IntegrityReport,
    attempt_recovery,
    detect_corruption,
    latest_valid_snapshot,
    snapshot_if_stale,
    verify_integrity,
)
from membank.memory.schema import MIGRATIONS, Migration, SchemaManager
from membank.memory.serializer import TransactionSerializer
from membank.memory.validation import validate_entry

logger = logging.getLogger(__name__)

BackendFactory = Callable[[], Backend]


def _parse_bound(name: str, value: str | None) -> str | None:
    if value is None:
        return None
    try:
        return format_timestamp(value)
    except (TypeError, ValueError):
        raise ValidationError(name, f"not ISO-8601: {value!r}")


def _check_limit(name: str, value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(name, f"must be a non-negative integer, got {value!r}")
    return value


class EntryStore:
    """Async, append-only store of memory entries."""

    def __init__(
        self,
        backends: Sequence[BackendFactory] | None = None,
        migrations: Sequence[Migration] = MIGRATIONS,
        snapshot_keep: int = 5,
        snapshot_max_age_hours: float = 24,
    ) -> None:
        self._factories = tuple(backends) if backends is not None else DEFAULT_BACKENDS
        self._schema = SchemaManager(migrations)
        self._snapshot_keep = snapshot_keep
        self._snapshot_max_age_hours = snapshot_max_age_hours
        self.serializer = TransactionSerializer()
        self._backend: Backend | None = None
        self._factory: BackendFactory | None = None
        self._path: Path | None = None
        self._version = 0
        self._initialized = False
        self._init_lock = asyncio.Lock()
        self._recovery_lock = asyncio.Lock()

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def path(self) -> Path | None:
        return self._path

    # ── Lifecycle ─────────────────────────────────────────────

    async def init(self, path: Path | str) -> bool:
        """Open (creating if needed) the store at ``path``.

        Returns False only when no backend could be opened. Raises
        MigrationError on a failed upgrade and CorruptionError when a
        corrupt file cannot be restored.
        """
        path = Path(path)
        async with self._init_lock:
            if self._initialized and self._path == path:
                if await asyncio.to_thread(self._backend.data_file.exists):
                    return True
                logger.warning("Data file %s disappeared; reinitializing", self._backend.data_file)
                await self._release_backend()
            elif self._initialized:
                logger.info("Switching store from %s to %s", self._path, path)
                await self._shutdown()

            if self.serializer.closed:
                self.serializer = TransactionSerializer()

            opened = await self._open_first(path)
            if opened is None:
                logger.error("No storage backend could be opened at %s", path)
                return False
            factory, backend, existed = opened

            try:
                version = await asyncio.to_thread(self._schema.ensure, backend, existed)
            except StorageError:
                await asyncio.to_thread(backend.close)
                raise

            self._backend = backend
            self._factory = factory
            self._path = path
            self._version = version
            self._initialized = True
            logger.info(
                "Store ready: %s backend (schema v%d) at %s", backend.name, version, backend.data_file
            )
            await self._snapshot()
            return True

    async def _open_first(self, path: Path) -> tuple[BackendFactory, Backend, bool] | None:
        for factory in self._factories:
            backend = factory()
            data_file = backend.resolve_path(path)
            existed = await asyncio.to_thread(data_file.exists)
            try:
                await asyncio.to_thread(backend.open, path)
            except ImportError as e:
                logger.warning("Backend %s unavailable: %s", backend.name, e)
                continue
            except StorageError as e:
                report = detect_corruption(e)
                if not report.corrupted:
                    logger.warning("Backend %s failed to open %s: %s", backend.name, data_file, e)
                    continue
                logger.error("Data file %s is corrupt (%s)", data_file, report.reason)
                await self._restore_from_snapshot(data_file, e)
                backend = factory()
                try:
                    await asyncio.to_thread(backend.open, path)
                except StorageError as retry_error:
                    raise CorruptionError(
                        f"{data_file.name} still unreadable after recovery: {retry_error}",
                        detect_corruption(retry_error),
                        operation="open",
                    ) from retry_error
            return factory, backend, existed
        return None

    async def _restore_from_snapshot(self, data_file: Path, error: BaseException) -> None:
        snapshot = await asyncio.to_thread(latest_valid_snapshot, data_file)
        try:
            await asyncio.to_thread(attempt_recovery, data_file, snapshot)
        except RecoveryError as e:
            if e.__cause__ is None:
                raise e from error
            raise

    async def _snapshot(self) -> None:
        backend = self._backend
        try:
            await asyncio.to_thread(
                snapshot_if_stale, backend, self._snapshot_keep, self._snapshot_max_age_hours
            )
        except (StorageError, OSError) as e:
            logger.warning("Recovery snapshot skipped: %s", e)

    async def _release_backend(self) -> None:
        backend = self._backend
        self._backend = None
        self._factory = None
        self._initialized = False
        self._version = 0
        if backend is not None:
            try:
                await asyncio.to_thread(backend.close)
            except StorageError as e:
                logger.warning("Closing stale %s backend failed: %s", backend.name, e)

    async def _shutdown(self) -> None:
        await self.serializer.close()
        backend = self._backend
        self._backend = None
        self._factory = None
        self._initialized = False
        if backend is not None:
            await asyncio.to_thread(backend.close)
            logger.info("Store closed (%s)", backend.name)

    async def close(self) -> None:
        """Finish queued writes and flush the backend to durable storage."""
        async with self._init_lock:
            await self._shutdown()

    # ── Backend access ────────────────────────────────────────

    def _require(self) -> Backend:
        if not self._initialized or self._backend is None:
            raise StorageError("store is not initialized", operation="access")
        return self._backend

    async def _call(self, operation: str, method: str, *args: Any) -> Any:
        backend = self._require()
        try:
            return await asyncio.to_thread(getattr(backend, method), *args)
        except StorageError as e:
            report = detect_corruption(e)
            if not report.corrupted:
                raise
            logger.error("%s hit corruption (%s); attempting recovery", operation, report.reason)
            await self._recover(backend, e)

        backend = self._require()
        try:
            return await asyncio.to_thread(getattr(backend, method), *args)
        except StorageError as e:
            report = detect_corruption(e)
            if report.corrupted:
                raise CorruptionError(
                    f"{operation} failed after recovery: {e}", report, operation=operation
                ) from e
            raise

    async def _recover(self, failed: Backend, error: StorageError) -> None:
        async with self._recovery_lock:
            if self._backend is not failed:
                # Another caller already recovered.
                return
            data_file = failed.data_file
            factory = self._factory
            path = self._path
            await self._release_backend()
            await self._restore_from_snapshot(data_file, error)

            backend = factory()
            await asyncio.to_thread(backend.open, path)
            version = await asyncio.to_thread(self._schema.ensure, backend, True)
            self._backend = backend
            self._factory = factory
            self._version = version
            self._initialized = True

    async def _read(self, operation: str, method: str, *args: Any) -> Any:
        backend = self._require()
        if backend.supports_concurrent_reads:
            return await self._call(operation, method, *args)
        return await self.serializer.queue_operation(lambda: self._call(operation, method, *args))

    async def _write(self, operation: str, method: str, *args: Any) -> Any:
        self._require()
        return await self.serializer.queue_operation(lambda: self._call(operation, method, *args))

    # ── Entries ───────────────────────────────────────────────

    async def append(self, entry: Entry) -> int:
        """Validate and insert ``entry``; return its assigned id."""
        validate_entry(entry)
        normalized = dataclasses.replace(entry, timestamp=format_timestamp(entry.timestamp))
        self._require()

        async def op() -> int:
            if normalized.supersedes is not None:
                target = await self._call("append", "get_entry", normalized.supersedes)
                if target is None:
                    raise ValidationError(
                        "supersedes", f"entry {normalized.supersedes} does not exist"
                    )
            stored = await self._call("append", "insert_entry", normalized)
            return stored.id

        entry_id = await self.serializer.queue_operation(op)
        logger.debug("Appended entry %d (%s)", entry_id, normalized.category.value)
        return entry_id

    async def get_entry(self, entry_id: int) -> Entry | None:
        return await self._read("get_entry", "get_entry", entry_id)

    async def query_by_category(self, category: Category | str, limit: int = 50) -> list[Entry]:
        """Entries in ``category``, newest first."""
        query = EntryQuery(category=Category.parse(category), limit=_check_limit("limit", limit))
        return await self._read("query_by_category", "query_entries", query)

    async def query_by_date_range(
        self,
        category: Category | str | None,
        start: str | None,
        end: str | None,
    ) -> list[Entry]:
        """Entries with ``start <= timestamp < end``, newest first."""
        query = EntryQuery(
            category=Category.parse(category) if category is not None else None,
            start=_parse_bound("start", start),
            end=_parse_bound("end", end),
        )
        if query.start and query.end and query.start >= query.end:
            return []
        return await self._read("query_by_date_range", "query_entries", query)

    async def full_text_search(self, term: str, limit: int = 50) -> list[Entry]:
        """Case-insensitive substring scan over all content.

        Not indexed: cost grows linearly with the number of entries.
        """
        if not isinstance(term, str) or not term.strip():
            raise ValidationError("term", "search term must be a non-empty string")
        return await self._read("full_text_search", "search_entries", term, _check_limit("limit", limit))

    async def get_recent(self, category: Category | str | None = None, count: int = 20) -> list[Entry]:
        query = EntryQuery(
            category=Category.parse(category) if category is not None else None,
            limit=_check_limit("count", count),
        )
        return await self._read("get_recent", "query_entries", query)

    async def count_entries(self) -> int:
        return await self._read("count_entries", "count_entries")

    # ── Metrics persistence ───────────────────────────────────

    async def record_token_metric(self, metric: TokenMetric) -> None:
        await self._write("record_token_metric", "insert_token_metric", metric)

    async def record_query_metric(self, metric: QueryMetric) -> None:
        await self._write("record_query_metric", "insert_query_metric", metric)

    async def token_metrics(self, since: str) -> list[TokenMetric]:
        return await self._read("token_metrics", "token_metrics", _parse_bound("since", since))

    async def query_metrics(self, since: str, operation: str | None = None) -> list[QueryMetric]:
        return await self._read("query_metrics", "query_metrics", _parse_bound("since", since), operation)

    # ── Introspection ─────────────────────────────────────────

    def get_backend_info(self) -> BackendInfo:
        backend = self._require()
        return BackendInfo(
            backend=backend.name,
            version=self._version,
            engine_version=backend.engine_version,
            path=backend.data_file,
        )

    async def verify(self) -> IntegrityReport:
        """Integrity pass over the live data file."""
        backend = self._require()
        await self.serializer.drain()
        await asyncio.to_thread(backend.checkpoint)
        return await asyncio.to_thread(verify_integrity, backend.data_file)
