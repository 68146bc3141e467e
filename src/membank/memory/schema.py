"""Versioned, backup-guarded schema evolution.

Migrations are additive only. Each one lists the SQL statements the
relational backends execute and the collections the flat-file backend
creates. The manager upgrades a backend from its stored version to the
latest in one all-or-nothing step, guarded by a byte copy of the data file
taken beforehand.
"""

from __future__ import annotations

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Sequence

from membank.backends.base import Backend
from membank.errors import MigrationError, StorageError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Migration:
    version: int
    description: str
    statements: tuple[str, ...]
    collections: tuple[str, ...] = ()


MIGRATIONS: tuple[Migration, ...] = (
    Migration(
        version=1,
        description="entries table",
        statements=(
            """CREATE TABLE IF NOT EXISTS entries (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                category TEXT NOT NULL
                    CHECK (category IN ('BRIEF', 'CONTEXT', 'PATTERN', 'DECISION', 'PROGRESS')),
                timestamp TEXT NOT NULL,
                tag TEXT,
                content TEXT NOT NULL,
                created_at TEXT NOT NULL
            )""",
            "CREATE INDEX IF NOT EXISTS idx_entries_category_ts ON entries(category, timestamp DESC)",
            "CREATE INDEX IF NOT EXISTS idx_entries_tag ON entries(tag)",
        ),
        collections=("entries",),
    ),
    Migration(
        version=2,
        description="token and query metrics",
        statements=(
            """CREATE TABLE IF NOT EXISTS token_metrics (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                model TEXT NOT NULL,
                input_tokens INTEGER NOT NULL,
                output_tokens INTEGER NOT NULL,
                total_tokens INTEGER NOT NULL,
                operation TEXT NOT NULL,
                context_status TEXT NOT NULL
                    CHECK (context_status IN ('healthy', 'warning', 'critical')),
                created_at TEXT NOT NULL
            )""",
            "CREATE INDEX IF NOT EXISTS idx_token_metrics_ts ON token_metrics(timestamp)",
            """CREATE TABLE IF NOT EXISTS query_metrics (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                timestamp TEXT NOT NULL,
                operation TEXT NOT NULL,
                elapsed_ms REAL NOT NULL,
                result_count INTEGER NOT NULL DEFAULT 0,
                created_at TEXT NOT NULL
            )""",
            "CREATE INDEX IF NOT EXISTS idx_query_metrics_ts ON query_metrics(timestamp)",
            "CREATE INDEX IF NOT EXISTS idx_query_metrics_op ON query_metrics(operation, timestamp)",
        ),
        collections=("token_metrics", "query_metrics"),
    ),
    Migration(
        version=3,
        description="entry supersession",
        statements=("ALTER TABLE entries ADD COLUMN supersedes INTEGER REFERENCES entries(id)",),
    ),
)


def backup_path_for(data_file: Path, version: int) -> Path:
    return data_file.with_name(f"{data_file.name}.v{version}.backup")


class SchemaManager:
    """Brings a freshly opened backend up to the latest schema version."""

    def __init__(self, migrations: Sequence[Migration] = MIGRATIONS) -> None:
        versions = [m.version for m in migrations]
        if versions != sorted(set(versions)) or (versions and versions[0] < 1):
            raise ValueError(f"migration versions must be unique, ascending and positive: {versions}")
        self.migrations = tuple(migrations)

    @property
    def latest_version(self) -> int:
        return self.migrations[-1].version if self.migrations else 0

    def pending(self, current: int) -> list[Migration]:
        return [m for m in self.migrations if m.version > current]

    def ensure(self, backend: Backend, existed: bool) -> int:
        """Migrate ``backend`` to the latest version and return it.

        ``existed`` says whether the data file was on disk before this open;
        only then is there anything worth backing up. On failure the backend
        is closed, the data file restored from the backup and MigrationError
        raised.
        """
        current = backend.schema_version()
        target = self.latest_version
        if current > target:
            raise MigrationError(
                f"database schema v{current} is newer than supported v{target}",
                from_version=current,
                to_version=target,
            )
        pending = self.pending(current)
        if not pending:
            return current

        data_file = backend.data_file
        backup: Path | None = None
        if existed and data_file.exists():
            backend.checkpoint()
            backup = backup_path_for(data_file, current)
            shutil.copy2(data_file, backup)
            logger.info("Backed up %s before migration to %s", data_file.name, backup.name)

        try:
            backend.apply_migrations(pending, target)
        except (StorageError, OSError) as e:
            logger.error("Migration v%d -> v%d failed: %s", current, target, e)
            self._restore(backend, data_file, backup)
            raise MigrationError(
                f"migration v{current} -> v{target} failed: {e}",
                from_version=current,
                to_version=target,
                backup_path=backup,
            ) from e

        for migration in pending:
            logger.info("Applied migration v%d: %s", migration.version, migration.description)
        if backup is not None:
            backup.unlink(missing_ok=True)
        return target

    @staticmethod
    def _restore(backend: Backend, data_file: Path, backup: Path | None) -> None:
        backend.close()
        if backup is None:
            return
        for suffix in ("-wal", "-shm"):
            data_file.with_name(data_file.name + suffix).unlink(missing_ok=True)
        shutil.copy2(backup, data_file)
        logger.info("Restored %s from %s", data_file.name, backup.name)
