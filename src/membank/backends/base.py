"""Backend protocol and shared types."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol, Sequence, runtime_checkable

if TYPE_CHECKING:
    from membank.memory.models import Entry, EntryQuery, QueryMetric, TokenMetric
    from membank.memory.schema import Migration


@dataclass(frozen=True)
class BackendInfo:
    """What the store is currently running on."""

    backend: str
    version: int
    engine_version: str
    path: Path | None = None


@runtime_checkable
class Backend(Protocol):
    """Capability interface every storage variant implements.

    All methods are blocking; the store runs them off the event loop and
    serializes mutations. Engine failures surface as StorageError with the
    engine exception chained.
    """

    @property
    def name(self) -> str: ...

    @property
    def supports_concurrent_reads(self) -> bool: ...

    @property
    def engine_version(self) -> str: ...

    @property
    def data_file(self) -> Path:
        """The file this backend persists to (may differ from the configured path)."""
        ...

    def resolve_path(self, path: Path) -> Path:
        """Where this backend would persist data configured at ``path``."""
        ...

    def open(self, path: Path) -> None: ...

    def schema_version(self) -> int: ...

    def apply_migrations(self, migrations: Sequence[Migration], target: int) -> None:
        """Apply all migrations and set the version to ``target``, all-or-nothing."""
        ...

    def insert_entry(self, entry: Entry) -> Entry: ...

    def get_entry(self, entry_id: int) -> Entry | None: ...

    def query_entries(self, query: EntryQuery) -> list[Entry]: ...

    def search_entries(self, term: str, limit: int) -> list[Entry]: ...

    def count_entries(self) -> int: ...

    def insert_token_metric(self, metric: TokenMetric) -> None: ...

    def insert_query_metric(self, metric: QueryMetric) -> None: ...

    def token_metrics(self, since: str) -> list[TokenMetric]: ...

    def query_metrics(self, since: str, operation: str | None = None) -> list[QueryMetric]: ...

    def checkpoint(self) -> None:
        """Make the data file on disk a complete, copyable image."""
        ...

    def snapshot(self, dest: Path) -> None: ...

    def close(self) -> None: ...
