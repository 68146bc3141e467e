"""Shared fixtures: one store per backend variant."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from membank.backends import FlatFileBackend, NativeBackend, PortableBackend
from membank.memory.models import Category, Entry


def portable_backend() -> PortableBackend:
    # No directory search: use pysqlite3 if installed, else the interpreter's sqlite3.
    return PortableBackend(search_dirs=[])


class UnavailableBackend(NativeBackend):
    """Behaves like a platform without a loadable engine."""

    def open(self, path: Path) -> None:
        raise ImportError("engine not available on this platform")


BACKENDS = {
    "native": NativeBackend,
    "portable": portable_backend,
    "flatfile": FlatFileBackend,
}


@pytest.fixture(params=list(BACKENDS))
def backend_factory(request):
    return BACKENDS[request.param]


@pytest.fixture
def data_path(tmp_path: Path) -> Path:
    return tmp_path / ".membank" / "memory.db"


NOW = datetime(2025, 6, 15, 12, 0, 0, tzinfo=timezone.utc)


def make_entry(
    content: str,
    category: Category | str = Category.CONTEXT,
    days_ago: float = 0,
    now: datetime = NOW,
    **kwargs,
) -> Entry:
    return Entry.create(category, content, now - timedelta(days=days_ago), **kwargs)
