"""Tests for the entry model and validation contract."""

import pytest
from datetime import datetime, timezone

from membank.errors import ValidationError
from membank.memory.models import Category, Entry, format_timestamp, make_tag
from membank.memory.validation import MAX_CONTENT_LENGTH, validate_entry, validate_tag


def _entry(**overrides) -> Entry:
    fields = dict(category=Category.DECISION, timestamp="2025-03-01T10:00:00.000Z", content="Use WAL")
    fields.update(overrides)
    return Entry(**fields)


class TestTimestamps:
    def test_normalises_offset_to_utc(self):
        assert format_timestamp("2025-03-01T12:00:00+02:00") == "2025-03-01T10:00:00.000Z"

    def test_naive_is_utc(self):
        assert format_timestamp("2025-03-01T10:00:00") == "2025-03-01T10:00:00.000Z"

    def test_datetime_input(self):
        dt = datetime(2025, 3, 1, 10, 0, 0, 123456, tzinfo=timezone.utc)
        assert format_timestamp(dt) == "2025-03-01T10:00:00.123Z"

    def test_make_tag(self):
        assert make_tag("PATTERN", "2025-03-01T23:59:00Z") == "[PATTERN:2025-03-01]"


class TestEntryCreate:
    def test_parses_category_string(self):
        entry = Entry.create("decision", "content", "2025-03-01T10:00:00Z")
        assert entry.category is Category.DECISION
        assert entry.timestamp == "2025-03-01T10:00:00.000Z"
        assert entry.id is None

    def test_auto_tag(self):
        entry = Entry.create("BRIEF", "content", "2025-03-01T10:00:00Z", auto_tag=True)
        assert entry.tag == "[BRIEF:2025-03-01]"

    def test_unknown_category(self):
        with pytest.raises(ValidationError) as exc:
            Entry.create("NOTES", "content")
        assert exc.value.field == "category"

    def test_non_string_category(self):
        with pytest.raises(ValidationError) as exc:
            Category.parse(3)
        assert exc.value.field == "category"


class TestValidateEntry:
    def test_valid(self):
        validate_entry(_entry(tag="[DECISION:2025-03-01]"))

    def test_empty_content(self):
        with pytest.raises(ValidationError) as exc:
            validate_entry(_entry(content=""))
        assert exc.value.field == "content"

    def test_content_too_long(self):
        with pytest.raises(ValidationError) as exc:
            validate_entry(_entry(content="x" * (MAX_CONTENT_LENGTH + 1)))
        assert exc.value.field == "content"
        assert "exceeds" in exc.value.message

    def test_content_at_limit(self):
        validate_entry(_entry(content="x" * MAX_CONTENT_LENGTH))

    def test_nul_in_content(self):
        with pytest.raises(ValidationError, match="NUL"):
            validate_entry(_entry(content="a\x00b"))

    def test_bad_timestamp(self):
        with pytest.raises(ValidationError) as exc:
            validate_entry(_entry(timestamp="yesterday"))
        assert exc.value.field == "timestamp"

    def test_missing_timestamp(self):
        with pytest.raises(ValidationError) as exc:
            validate_entry(_entry(timestamp=""))
        assert exc.value.field == "timestamp"

    def test_category_must_be_enum(self):
        with pytest.raises(ValidationError) as exc:
            validate_entry(_entry(category="DECISION"))
        assert exc.value.field == "category"

    def test_supersedes_must_be_positive(self):
        with pytest.raises(ValidationError) as exc:
            validate_entry(_entry(supersedes=0))
        assert exc.value.field == "supersedes"

    def test_supersedes_rejects_bool(self):
        with pytest.raises(ValidationError):
            validate_entry(_entry(supersedes=True))


class TestValidateTag:
    @pytest.mark.parametrize("tag", [
        "[BRIEF:2025-01-31]",
        "[PROGRESS:2024-02-29]",
        "[DEPRECATED:2025-06-01]",
        "[SUPERSEDED:2025-06-01]",
    ])
    def test_accepts(self, tag):
        validate_tag(tag)

    @pytest.mark.parametrize("tag", [
        "BRIEF:2025-01-31",
        "[brief:2025-01-31]",
        "[BRIEF:2025-1-31]",
        "[NOTES:2025-01-31]",
        "[BRIEF:2025-02-30]",
        "[PROGRESS:2023-02-29]",
    ])
    def test_rejects(self, tag):
        with pytest.raises(ValidationError) as exc:
            validate_tag(tag)
        assert exc.value.field == "tag"

    def test_too_long(self):
        with pytest.raises(ValidationError, match="exceeds"):
            validate_tag("[" + "A" * 100 + ":2025-01-01]")
