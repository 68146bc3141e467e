"""SQL shared by the native and portable SQLite backends.

Both variants hold a DB-API connection opened with ``isolation_level=None``
(autocommit) and ``row_factory`` set to the engine's Row type. Functions here
take that connection explicitly; the backends own locking and error
translation.
"""

from __future__ import annotations

import dataclasses
from contextlib import contextmanager
from types import ModuleType
from typing import Iterator, Sequence

from membank.errors import StorageError
from membank.memory.models import (
    ContextStatus,
    Entry,
    EntryQuery,
    QueryMetric,
    TokenMetric,
    format_timestamp,
    utc_now,
)

_BOOTSTRAP = """
    CREATE TABLE IF NOT EXISTS schema_version (
        id INTEGER PRIMARY KEY CHECK (id = 1),
        version INTEGER NOT NULL,
        applied_at TEXT NOT NULL
    )
"""

_BASE_COLUMNS = ("id", "category", "timestamp", "tag", "content", "created_at")


@contextmanager
def translate_errors(engine: ModuleType, operation: str) -> Iterator[None]:
    """Re-raise engine and OS errors as StorageError, keeping the cause."""
    try:
        yield
    except engine.Error as e:
        raise StorageError(f"{operation} failed: {e}", operation=operation) from e
    except OSError as e:
        raise StorageError(f"{operation} failed: {e}", operation=operation) from e


def _contains_casefold(haystack: str | None, needle: str | None) -> int:
    if haystack is None or needle is None:
        return 0
    return int(needle.casefold() in haystack.casefold())


def prepare_connection(conn) -> None:
    """Register helper functions and make sure schema_version exists."""
    conn.create_function("contains_casefold", 2, _contains_casefold, deterministic=True)
    # Touch sqlite_master so a malformed header fails here, not on first query.
    conn.execute("SELECT count(*) FROM sqlite_master").fetchone()
    conn.execute(_BOOTSTRAP)


def read_version(conn) -> int:
    row = conn.execute("SELECT version FROM schema_version WHERE id = 1").fetchone()
    return int(row[0]) if row else 0


def entry_columns(conn) -> str:
    """Select list for entries; tolerates databases predating later columns."""
    existing = {row[1] for row in conn.execute("PRAGMA table_info(entries)").fetchall()}
    if not existing:
        return ""
    cols = list(_BASE_COLUMNS)
    cols.append("supersedes" if "supersedes" in existing else "NULL AS supersedes")
    return ", ".join(cols)


def migrate(conn, migrations: Sequence, target: int) -> None:
    conn.execute("BEGIN IMMEDIATE")
    try:
        for migration in migrations:
            for statement in migration.statements:
                conn.execute(statement)
        conn.execute(
            "INSERT OR REPLACE INTO schema_version (id, version, applied_at) VALUES (1, ?, ?)",
            (target, format_timestamp(utc_now())),
        )
        conn.execute("COMMIT")
    except BaseException:
        conn.execute("ROLLBACK")
        raise


def insert_entry(conn, entry: Entry, has_supersedes: bool) -> Entry:
    created_at = format_timestamp(utc_now())
    if has_supersedes:
        cursor = conn.execute(
            """INSERT INTO entries (category, timestamp, tag, content, created_at, supersedes)
               VALUES (?, ?, ?, ?, ?, ?)""",
            (entry.category.value, entry.timestamp, entry.tag, entry.content, created_at,
             entry.supersedes),
        )
    else:
        cursor = conn.execute(
            """INSERT INTO entries (category, timestamp, tag, content, created_at)
               VALUES (?, ?, ?, ?, ?)""",
            (entry.category.value, entry.timestamp, entry.tag, entry.content, created_at),
        )
    return dataclasses.replace(entry, id=cursor.lastrowid, created_at=created_at)


def get_entry(conn, columns: str, entry_id: int) -> Entry | None:
    row = conn.execute(f"SELECT {columns} FROM entries WHERE id = ?", (entry_id,)).fetchone()
    return Entry.from_row(row) if row else None


def query_entries(conn, columns: str, query: EntryQuery) -> list[Entry]:
    sql = f"SELECT {columns} FROM entries"
    conditions: list[str] = []
    params: list = []
    if query.category is not None:
        conditions.append("category = ?")
        params.append(query.category.value)
    if query.start is not None:
        conditions.append("timestamp >= ?")
        params.append(query.start)
    if query.end is not None:
        conditions.append("timestamp < ?")
        params.append(query.end)
    if conditions:
        sql += " WHERE " + " AND ".join(conditions)
    sql += " ORDER BY timestamp DESC, id DESC"
    if query.limit is not None:
        sql += " LIMIT ?"
        params.append(query.limit)
    return [Entry.from_row(row) for row in conn.execute(sql, params).fetchall()]


def search_entries(conn, columns: str, term: str, limit: int) -> list[Entry]:
    # Full scan: contains_casefold cannot use an index.
    rows = conn.execute(
        f"""SELECT {columns} FROM entries
            WHERE contains_casefold(content, ?)
            ORDER BY timestamp DESC, id DESC
            LIMIT ?""",
        (term, limit),
    ).fetchall()
    return [Entry.from_row(row) for row in rows]


def count_entries(conn) -> int:
    return int(conn.execute("SELECT count(*) FROM entries").fetchone()[0])


def insert_token_metric(conn, metric: TokenMetric) -> None:
    conn.execute(
        """INSERT INTO token_metrics
           (timestamp, model, input_tokens, output_tokens, total_tokens, operation,
            context_status, created_at)
           VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
        (
            metric.timestamp,
            metric.model,
            metric.input_tokens,
            metric.output_tokens,
            metric.total_tokens,
            metric.operation,
            metric.context_status.value,
            format_timestamp(utc_now()),
        ),
    )


def insert_query_metric(conn, metric: QueryMetric) -> None:
    conn.execute(
        """INSERT INTO query_metrics (timestamp, operation, elapsed_ms, result_count, created_at)
           VALUES (?, ?, ?, ?, ?)""",
        (metric.timestamp, metric.operation, metric.elapsed_ms, metric.result_count,
         format_timestamp(utc_now())),
    )


def token_metrics(conn, since: str) -> list[TokenMetric]:
    rows = conn.execute(
        """SELECT timestamp, model, input_tokens, output_tokens, operation, context_status
           FROM token_metrics WHERE timestamp >= ? ORDER BY timestamp ASC, id ASC""",
        (since,),
    ).fetchall()
    return [
        TokenMetric(
            timestamp=row["timestamp"],
            model=row["model"],
            input_tokens=row["input_tokens"],
            output_tokens=row["output_tokens"],
            operation=row["operation"],
            context_status=ContextStatus(row["context_status"]),
        )
        for row in rows
    ]


def query_metrics(conn, since: str, operation: str | None) -> list[QueryMetric]:
    sql = """SELECT timestamp, operation, elapsed_ms, result_count
             FROM query_metrics WHERE timestamp >= ?"""
    params: list = [since]
    if operation is not None:
        sql += " AND operation = ?"
        params.append(operation)
    sql += " ORDER BY timestamp ASC, id ASC"
    return [
        QueryMetric(
            timestamp=row["timestamp"],
            operation=row["operation"],
            elapsed_ms=row["elapsed_ms"],
            result_count=row["result_count"],
        )
        for row in conn.execute(sql, params).fetchall()
    ]
