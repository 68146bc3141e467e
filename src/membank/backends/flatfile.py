"""Flat-file backend: a single JSON document, no SQL engine required.

Used when neither SQLite variant can be opened. The document sits next to
the configured data path with a ``.json`` suffix. Entries are indexed in
memory per category, sorted by ``(timestamp, id)``, so range queries are a
pair of bisects. Every write rewrites the document through a temporary
file and an atomic rename.
"""

from __future__ import annotations

import bisect
import copy
import json
import logging
import os
import threading
from collections import defaultdict
from pathlib import Path
from typing import Sequence

from membank.errors import StorageError
from membank.memory.models import (
    Category,
    ContextStatus,
    Entry,
    EntryQuery,
    QueryMetric,
    TokenMetric,
    format_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

FORMAT = "membank-flatfile"
FORMAT_VERSION = "1"


def _empty_document() -> dict:
    return {"format": FORMAT, "schema_version": 0, "applied_at": None, "next_id": 1}


class FlatFileBackend:
    """JSON document store. Reads are serialized with writes."""

    def __init__(self) -> None:
        self._path: Path | None = None
        self._doc: dict | None = None
        self._index: dict[Category, list[tuple[str, int]]] = defaultdict(list)
        self._by_id: dict[int, dict] = {}
        self._lock = threading.Lock()

    @property
    def name(self) -> str:
        return "flatfile"

    @property
    def supports_concurrent_reads(self) -> bool:
        return False

    @property
    def engine_version(self) -> str:
        return f"json/{FORMAT_VERSION}"

    @property
    def data_file(self) -> Path:
        if self._path is None:
            raise StorageError("backend not open")
        return self._path

    def _document(self) -> dict:
        if self._doc is None:
            raise StorageError("backend not open")
        return self._doc

    def _collection(self, doc: dict, name: str, operation: str) -> list:
        if name not in doc:
            raise StorageError(f"no such collection: {name}", operation=operation)
        return doc[name]

    # ── Lifecycle ─────────────────────────────────────────────

    def resolve_path(self, path: Path) -> Path:
        return path.with_suffix(".json")

    def open(self, path: Path) -> None:
        target = self.resolve_path(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            if target.exists():
                doc = self._read(target)
            else:
                doc = _empty_document()
                self._write(target, doc)
        except OSError as e:
            raise StorageError(f"open failed: {e}", operation="open") from e
        self._path = target
        self._doc = doc
        try:
            self._rebuild_index()
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            self._doc = None
            raise StorageError(f"open failed: malformed document: bad entry record ({e!r})",
                               operation="open") from e
        logger.debug("Opened flat file %s (%d entries)", target, len(self._by_id))

    @staticmethod
    def _read(path: Path) -> dict:
        try:
            doc = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise StorageError(f"open failed: malformed document: {e}", operation="open") from e
        if not isinstance(doc, dict) or doc.get("format") != FORMAT:
            raise StorageError("open failed: malformed document: unrecognised format",
                               operation="open")
        if not isinstance(doc.get("schema_version"), int) or not isinstance(doc.get("next_id"), int):
            raise StorageError("open failed: malformed document: bad header", operation="open")
        return doc

    @staticmethod
    def _write(path: Path, doc: dict) -> None:
        tmp = path.with_name(path.name + ".tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(doc, f, ensure_ascii=False, separators=(",", ":"))
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)

    def _save(self, operation: str) -> None:
        try:
            self._write(self.data_file, self._document())
        except OSError as e:
            raise StorageError(f"{operation} failed: {e}", operation=operation) from e

    def _rebuild_index(self) -> None:
        self._index = defaultdict(list)
        self._by_id = {}
        for record in self._document().get("entries", []):
            entry = Entry.from_row(record)
            if not isinstance(entry.timestamp, str) or not isinstance(entry.content, str):
                raise TypeError(f"entry {entry.id} has non-text fields")
            self._index_record(record)

    def _index_record(self, record: dict) -> None:
        self._by_id[record["id"]] = record
        bisect.insort(self._index[Category(record["category"])], (record["timestamp"], record["id"]))

    def close(self) -> None:
        with self._lock:
            self._doc = None
            self._by_id = {}
            self._index = defaultdict(list)

    def checkpoint(self) -> None:
        # Every write is already durable.
        pass

    def snapshot(self, dest: Path) -> None:
        with self._lock:
            try:
                dest.parent.mkdir(parents=True, exist_ok=True)
                self._write(dest, self._document())
            except OSError as e:
                raise StorageError(f"snapshot failed: {e}", operation="snapshot") from e

    # ── Schema ────────────────────────────────────────────────

    def schema_version(self) -> int:
        with self._lock:
            return int(self._document()["schema_version"])

    def apply_migrations(self, migrations: Sequence, target: int) -> None:
        with self._lock:
            staged = copy.deepcopy(self._document())
            for migration in migrations:
                for name in migration.collections:
                    staged.setdefault(name, [])
            staged["schema_version"] = target
            staged["applied_at"] = format_timestamp(utc_now())
            try:
                self._write(self.data_file, staged)
            except OSError as e:
                raise StorageError(f"migrate failed: {e}", operation="migrate") from e
            self._doc = staged
            self._rebuild_index()

    # ── Entries ───────────────────────────────────────────────

    def insert_entry(self, entry: Entry) -> Entry:
        with self._lock:
            doc = self._document()
            entries = self._collection(doc, "entries", "append")
            stored = Entry(
                id=doc["next_id"],
                category=entry.category,
                timestamp=entry.timestamp,
                tag=entry.tag,
                content=entry.content,
                created_at=format_timestamp(utc_now()),
                supersedes=entry.supersedes,
            )
            record = stored.to_row()
            entries.append(record)
            doc["next_id"] += 1
            try:
                self._save("append")
            except StorageError:
                entries.pop()
                doc["next_id"] -= 1
                raise
            self._index_record(record)
            return stored

    def get_entry(self, entry_id: int) -> Entry | None:
        with self._lock:
            self._collection(self._document(), "entries", "get_entry")
            record = self._by_id.get(entry_id)
            return Entry.from_row(record) if record else None

    def query_entries(self, query: EntryQuery) -> list[Entry]:
        with self._lock:
            self._collection(self._document(), "entries", "query")
            categories = [query.category] if query.category is not None else list(self._index)
            keys: list[tuple[str, int]] = []
            for category in categories:
                ordered = self._index.get(category, [])
                lo = bisect.bisect_left(ordered, (query.start,)) if query.start is not None else 0
                hi = bisect.bisect_left(ordered, (query.end,)) if query.end is not None else len(ordered)
                keys.extend(ordered[lo:hi])
            keys.sort(reverse=True)
            if query.limit is not None:
                keys = keys[: query.limit]
            return [Entry.from_row(self._by_id[entry_id]) for _, entry_id in keys]

    def search_entries(self, term: str, limit: int) -> list[Entry]:
        with self._lock:
            entries = self._collection(self._document(), "entries", "search")
            needle = term.casefold()
            matches = [r for r in entries if needle in r["content"].casefold()]
            matches.sort(key=lambda r: (r["timestamp"], r["id"]), reverse=True)
            return [Entry.from_row(r) for r in matches[:limit]]

    def count_entries(self) -> int:
        with self._lock:
            return len(self._collection(self._document(), "entries", "count"))

    # ── Metrics ───────────────────────────────────────────────

    def insert_token_metric(self, metric: TokenMetric) -> None:
        with self._lock:
            rows = self._collection(self._document(), "token_metrics", "token_metric")
            rows.append({
                "timestamp": metric.timestamp,
                "model": metric.model,
                "input_tokens": metric.input_tokens,
                "output_tokens": metric.output_tokens,
                "total_tokens": metric.total_tokens,
                "operation": metric.operation,
                "context_status": metric.context_status.value,
            })
            try:
                self._save("token_metric")
            except StorageError:
                rows.pop()
                raise

    def insert_query_metric(self, metric: QueryMetric) -> None:
        with self._lock:
            rows = self._collection(self._document(), "query_metrics", "query_metric")
            rows.append({
                "timestamp": metric.timestamp,
                "operation": metric.operation,
                "elapsed_ms": metric.elapsed_ms,
                "result_count": metric.result_count,
            })
            try:
                self._save("query_metric")
            except StorageError:
                rows.pop()
                raise

    def token_metrics(self, since: str) -> list[TokenMetric]:
        with self._lock:
            rows = self._collection(self._document(), "token_metrics", "token_metrics")
            return [
                TokenMetric(
                    timestamp=r["timestamp"],
                    model=r["model"],
                    input_tokens=r["input_tokens"],
                    output_tokens=r["output_tokens"],
                    operation=r["operation"],
                    context_status=ContextStatus(r["context_status"]),
                )
                for r in sorted(rows, key=lambda r: r["timestamp"])
                if r["timestamp"] >= since
            ]

    def query_metrics(self, since: str, operation: str | None = None) -> list[QueryMetric]:
        with self._lock:
            rows = self._collection(self._document(), "query_metrics", "query_metrics")
            return [
                QueryMetric(
                    timestamp=r["timestamp"],
                    operation=r["operation"],
                    elapsed_ms=r["elapsed_ms"],
                    result_count=r["result_count"],
                )
                for r in sorted(rows, key=lambda r: r["timestamp"])
                if r["timestamp"] >= since and (operation is None or r["operation"] == operation)
            ]
