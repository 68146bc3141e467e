"""Corruption detection, integrity checks and backup restore.

Recovery snapshots live in ``<data dir>/.backup/`` and are refreshed after
a successful open when the newest one is older than a day. When an
operation fails with a corruption signature, the store moves the damaged
file aside and restores the newest snapshot that passes verification.
"""

from __future__ import annotations

import json
import logging
import shutil
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from membank.backends.base import Backend
from membank.errors import CorruptionReport, RecoveryError

logger = logging.getLogger(__name__)

SNAPSHOT_DIRNAME = ".backup"
SQLITE_HEADER = b"SQLite format 3\x00"
ENTRY_KEYS = frozenset({"id", "category", "timestamp", "tag", "content", "created_at"})

_CORRUPT_SIGNATURES = (
    ("database disk image is malformed", "malformed database image"),
    ("file is not a database", "file is not a database"),
    ("malformed", "malformed data"),
    ("checksum", "checksum mismatch"),
    ("truncated", "truncated file"),
    ("unexpected end", "truncated file"),
    ("expecting value", "unparseable document"),
    ("unterminated string", "unparseable document"),
)

_FATAL_SIGNATURES = (
    ("disk i/o error", "disk I/O error"),
    ("readonly", "read-only storage"),
    ("read-only", "read-only storage"),
    ("permission denied", "permission denied"),
    ("disk is full", "disk full"),
    ("no space left", "disk full"),
)


def _error_chain(error: BaseException):
    seen: set[int] = set()
    current: BaseException | None = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def detect_corruption(error: BaseException) -> CorruptionReport:
    """Classify an error by matching known signatures across its cause chain."""
    for exc in _error_chain(error):
        if isinstance(exc, PermissionError):
            return CorruptionReport(False, False, "permission denied")
        message = str(exc).lower()
        for needle, reason in _FATAL_SIGNATURES:
            if needle in message:
                return CorruptionReport(False, False, reason)

    for exc in _error_chain(error):
        if isinstance(exc, json.JSONDecodeError):
            return CorruptionReport(True, True, f"unparseable document: {exc.msg}")
        message = str(exc).lower()
        for needle, reason in _CORRUPT_SIGNATURES:
            if needle in message:
                return CorruptionReport(True, True, reason)

    return CorruptionReport(False, False, "no corruption signature")


@dataclass
class IntegrityReport:
    path: Path
    valid: bool = True
    issues: list[str] = field(default_factory=list)

    def fail(self, issue: str) -> None:
        self.valid = False
        self.issues.append(issue)


def _verify_sqlite(path: Path, report: IntegrityReport) -> None:
    size = path.stat().st_size
    with open(path, "rb") as f:
        header = f.read(100)
    if len(header) < 100 or not header.startswith(SQLITE_HEADER):
        report.fail("missing SQLite header")
        return
    page_size = int.from_bytes(header[16:18], "big")
    if page_size == 1:
        page_size = 65536
    if page_size < 512 or page_size & (page_size - 1):
        report.fail(f"invalid page size {page_size}")
        return
    if size % page_size:
        report.fail(f"truncated: size {size} is not a multiple of page size {page_size}")
        return

    import sqlite3

    try:
        conn = sqlite3.connect(str(path))
        try:
            rows = conn.execute("PRAGMA integrity_check").fetchall()
        finally:
            conn.close()
    except sqlite3.Error as e:
        report.fail(f"integrity check failed: {e}")
        return
    messages = [row[0] for row in rows]
    if messages != ["ok"]:
        for message in messages:
            report.fail(message)


def _verify_json(path: Path, report: IntegrityReport) -> None:
    try:
        doc = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        report.fail(f"unparseable document: {e}")
        return
    if not isinstance(doc, dict) or not isinstance(doc.get("schema_version"), int):
        report.fail("missing schema_version")
        return
    for name in ("entries", "token_metrics", "query_metrics"):
        if name in doc and not isinstance(doc[name], list):
            report.fail(f"collection {name} is not a list")
    entries = doc.get("entries")
    if isinstance(entries, list) and not all(
        isinstance(r, dict) and ENTRY_KEYS <= r.keys() for r in entries
    ):
        report.fail("entry record is missing fields")


def verify_integrity(path: Path) -> IntegrityReport:
    report = IntegrityReport(path=path)
    try:
        if not path.exists():
            report.fail("file does not exist")
        elif path.stat().st_size == 0:
            report.fail("file is empty")
        elif path.suffix == ".json":
            _verify_json(path, report)
        else:
            _verify_sqlite(path, report)
    except OSError as e:
        report.fail(f"unreadable: {e}")
    return report


def attempt_recovery(path: Path, backup_path: Path | None) -> Path:
    """Replace a corrupt data file with a verified backup.

    Returns where the corrupt file was moved. Raises RecoveryError when
    there is no usable backup; the corrupt file is then left in place.
    """
    if backup_path is None or not backup_path.exists():
        raise RecoveryError(
            f"no backup available to recover {path.name}",
            CorruptionReport(True, False, "no backup available"),
        )
    check = verify_integrity(backup_path)
    if not check.valid:
        raise RecoveryError(
            f"backup {backup_path.name} failed verification: {'; '.join(check.issues)}",
            CorruptionReport(True, False, "backup failed verification"),
        )

    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
    aside = path.with_name(f"{path.name}.corrupt-{stamp}")
    try:
        if path.exists():
            path.replace(aside)
        for suffix in ("-wal", "-shm"):
            sidecar = path.with_name(path.name + suffix)
            if sidecar.exists():
                sidecar.replace(aside.with_name(aside.name + suffix))
        shutil.copy2(backup_path, path)
    except OSError as e:
        raise RecoveryError(
            f"restoring {path.name} from {backup_path.name} failed: {e}",
            CorruptionReport(True, False, "restore failed"),
        ) from e
    logger.warning("Recovered %s from %s (corrupt copy kept as %s)", path.name, backup_path.name, aside.name)
    return aside


# ── Snapshots ─────────────────────────────────────────────────


def snapshot_dir(data_file: Path) -> Path:
    return data_file.parent / SNAPSHOT_DIRNAME


def list_snapshots(data_file: Path) -> list[Path]:
    """Snapshots of ``data_file``, newest first."""
    directory = snapshot_dir(data_file)
    if not directory.is_dir():
        return []
    pattern = f"{data_file.stem}-*{data_file.suffix}"
    return sorted(directory.glob(pattern), key=lambda p: p.stat().st_mtime, reverse=True)


def latest_valid_snapshot(data_file: Path) -> Path | None:
    for candidate in list_snapshots(data_file):
        if verify_integrity(candidate).valid:
            return candidate
        logger.warning("Skipping invalid snapshot %s", candidate.name)
    return None


def snapshot_if_stale(backend: Backend, keep: int = 5, max_age_hours: float = 24) -> Path | None:
    """Take a snapshot when the newest is older than ``max_age_hours``. Keeps ``keep``."""
    data_file = backend.data_file
    existing = list_snapshots(data_file)
    if existing:
        age_hours = (time.time() - existing[0].stat().st_mtime) / 3600
        if age_hours < max_age_hours:
            return None
    if backend.count_entries() == 0:
        return None

    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%f")
    dest = snapshot_dir(data_file) / f"{data_file.stem}-{stamp}{data_file.suffix}"
    backend.snapshot(dest)
    logger.info("Recovery snapshot created: %s", dest.name)

    for old in list_snapshots(data_file)[keep:]:
        old.unlink()
        logger.debug("Rotated old snapshot: %s", old.name)
    return dest
