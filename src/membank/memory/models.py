"""Entry and metric records persisted by the store."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum

from membank.errors import ValidationError


class Category(str, Enum):
    """Fixed classification used for indexing and priority weighting."""

    BRIEF = "BRIEF"
    CONTEXT = "CONTEXT"
    PATTERN = "PATTERN"
    DECISION = "DECISION"
    PROGRESS = "PROGRESS"

    @classmethod
    def parse(cls, value: str | Category) -> Category:
        if isinstance(value, Category):
            return value
        if not isinstance(value, str):
            raise ValidationError("category", f"expected a category name, got {value!r}")
        try:
            return cls(value.strip().upper())
        except ValueError:
            raise ValidationError("category", f"unknown category {value!r}") from None


class ContextStatus(str, Enum):
    HEALTHY = "healthy"
    WARNING = "warning"
    CRITICAL = "critical"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: str | datetime) -> datetime:
    """Parse an ISO-8601 string (or datetime) into an aware UTC datetime.

    Naive values are taken to be UTC. Raises TypeError for a non-string and
    ValueError for text that is not ISO-8601.
    """
    if isinstance(value, datetime):
        dt = value
    elif not isinstance(value, str):
        raise TypeError(f"expected an ISO-8601 string, got {type(value).__name__}")
    else:
        text = value.strip()
        if text.endswith(("Z", "z")):
            text = text[:-1] + "+00:00"
        dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def format_timestamp(value: str | datetime) -> str:
    """Normalise to the canonical ``YYYY-MM-DDTHH:MM:SS.mmmZ`` form."""
    dt = parse_timestamp(value)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def make_tag(label: str, timestamp: str | datetime) -> str:
    return f"[{label}:{parse_timestamp(timestamp).date().isoformat()}]"


@dataclass(frozen=True)
class Entry:
    """Immutable timestamped knowledge record.

    ``id`` and ``created_at`` are assigned by the store at insert time;
    entries built by callers carry ``None`` for both.
    """

    category: Category
    timestamp: str
    content: str
    tag: str | None = None
    id: int | None = None
    created_at: str | None = None
    supersedes: int | None = None

    @classmethod
    def create(
        cls,
        category: str | Category,
        content: str,
        timestamp: str | datetime | None = None,
        tag: str | None = None,
        *,
        supersedes: int | None = None,
        auto_tag: bool = False,
    ) -> Entry:
        cat = Category.parse(category)
        ts = format_timestamp(timestamp if timestamp is not None else utc_now())
        if tag is None and auto_tag:
            tag = make_tag(cat.value, ts)
        return cls(category=cat, timestamp=ts, content=content, tag=tag, supersedes=supersedes)

    @property
    def timestamp_dt(self) -> datetime | None:
        try:
            return parse_timestamp(self.timestamp)
        except (TypeError, ValueError):
            return None

    def to_row(self) -> dict:
        return {
            "id": self.id,
            "category": self.category.value,
            "timestamp": self.timestamp,
            "tag": self.tag,
            "content": self.content,
            "created_at": self.created_at,
            "supersedes": self.supersedes,
        }

    @classmethod
    def from_row(cls, row) -> Entry:
        keys = row.keys()
        return cls(
            id=row["id"],
            category=Category(row["category"]),
            timestamp=row["timestamp"],
            tag=row["tag"],
            content=row["content"],
            created_at=row["created_at"],
            supersedes=row["supersedes"] if "supersedes" in keys else None,
        )


@dataclass(frozen=True)
class TokenMetric:
    model: str
    input_tokens: int
    output_tokens: int
    operation: str
    context_status: ContextStatus = ContextStatus.HEALTHY
    timestamp: str = field(default_factory=lambda: format_timestamp(utc_now()))

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class QueryMetric:
    operation: str
    elapsed_ms: float
    result_count: int = 0
    timestamp: str = field(default_factory=lambda: format_timestamp(utc_now()))


@dataclass(frozen=True)
class EntryQuery:
    """Filter passed from the store to a backend."""

    category: Category | None = None
    start: str | None = None
    end: str | None = None
    limit: int | None = None
