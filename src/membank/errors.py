"""Error taxonomy shared by the store, selector and metrics layers.

Callers receive either a typed result or one of these exceptions. Counting
and metrics failures are absorbed at their own boundary and never surface.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


class MembankError(Exception):
    """Base class for every error raised by membank."""


class ValidationError(MembankError):
    """A malformed entry or argument. Never retried, never partially applied."""

    def __init__(self, field: str, message: str) -> None:
        super().__init__(f"{field}: {message}")
        self.field = field
        self.message = message


class StorageError(MembankError):
    """I/O failure, lock contention or engine error in the active backend."""

    def __init__(self, message: str, operation: str | None = None) -> None:
        super().__init__(message)
        self.operation = operation


@dataclass(frozen=True)
class CorruptionReport:
    corrupted: bool
    recoverable: bool
    reason: str


class CorruptionError(StorageError):
    """Storage failure matching a known corruption signature that could not be repaired."""

    def __init__(self, message: str, report: CorruptionReport, operation: str | None = None) -> None:
        super().__init__(message, operation=operation)
        self.report = report


class RecoveryError(CorruptionError):
    """Restoring a known-good backup was impossible (missing or unverifiable backup)."""


class MigrationError(MembankError):
    """Schema upgrade failed; the pre-migration file has been restored."""

    def __init__(
        self,
        message: str,
        from_version: int,
        to_version: int,
        backup_path: Path | None = None,
    ) -> None:
        super().__init__(message)
        self.from_version = from_version
        self.to_version = to_version
        self.backup_path = backup_path


class CountingError(MembankError):
    """A token counting provider failed. Absorbed by the token counter."""


class MetricsError(MembankError):
    """A metric could not be written. Logged and swallowed by the aggregator."""
