"""Entry validation contract applied before every insert."""

from __future__ import annotations

import re
from datetime import date

from membank.errors import ValidationError
from membank.memory.models import Category, Entry, parse_timestamp

MAX_CONTENT_LENGTH = 1_000_000
MAX_TAG_LENGTH = 100

# Tag labels beyond the five categories mark logical deprecation entries.
TAG_LABELS = frozenset(c.value for c in Category) | {"DEPRECATED", "SUPERSEDED"}

_TAG_RE = re.compile(r"^\[([A-Z_]+):(\d{4})-(\d{2})-(\d{2})\]$")


def validate_tag(tag: str) -> None:
    if len(tag) > MAX_TAG_LENGTH:
        raise ValidationError("tag", f"exceeds {MAX_TAG_LENGTH} characters (actual: {len(tag)})")
    match = _TAG_RE.match(tag)
    if not match:
        raise ValidationError("tag", f"invalid format {tag!r}, expected [TYPE:YYYY-MM-DD]")
    label, year, month, day = match.groups()
    if label not in TAG_LABELS:
        raise ValidationError("tag", f"unknown tag type {label!r}")
    try:
        date(int(year), int(month), int(day))
    except ValueError:
        raise ValidationError("tag", f"invalid calendar date in {tag!r}")


def validate_entry(entry: Entry) -> None:
    """Raise ValidationError naming the first offending field."""
    if not isinstance(entry.category, Category):
        raise ValidationError("category", f"invalid category {entry.category!r}")

    if not entry.timestamp:
        raise ValidationError("timestamp", "missing timestamp")
    try:
        parse_timestamp(entry.timestamp)
    except (TypeError, ValueError):
        raise ValidationError("timestamp", f"not ISO-8601: {entry.timestamp!r}")

    if entry.tag is not None:
        validate_tag(entry.tag)

    if not isinstance(entry.content, str) or not entry.content:
        raise ValidationError("content", "must be a non-empty string")
    if len(entry.content) > MAX_CONTENT_LENGTH:
        raise ValidationError(
            "content",
            f"exceeds {MAX_CONTENT_LENGTH} characters (actual: {len(entry.content)})",
        )
    if "\x00" in entry.content:
        raise ValidationError("content", "contains NUL characters")

    if entry.supersedes is not None:
        if isinstance(entry.supersedes, bool) or not isinstance(entry.supersedes, int) or entry.supersedes < 1:
            raise ValidationError("supersedes", f"must be a positive entry id, got {entry.supersedes!r}")
