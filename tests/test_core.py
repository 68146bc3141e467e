"""Tests for the Membank handle."""

import pytest
from pathlib import Path

from conftest import UnavailableBackend
from membank.backends import NativeBackend
from membank.config import MembankConfig, MetricsConfig, StorageConfig
from membank.context.tokens import TokenCounter
from membank.core import Membank
from membank.errors import StorageError, ValidationError
from membank.memory.models import Category, ContextStatus


@pytest.fixture
def config(tmp_path: Path) -> MembankConfig:
    return MembankConfig(
        storage=StorageConfig(workspace_root=tmp_path),
        metrics=MetricsConfig(debug=True),
    )


def make_bank(config: MembankConfig, **kwargs) -> Membank:
    kwargs.setdefault("counter", TokenCounter(config.tokens, use_tiktoken=False))
    kwargs.setdefault("backends", [NativeBackend])
    return Membank(config, **kwargs)


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_start_creates_workspace_file(self, config, tmp_path):
        bank = make_bank(config)
        assert await bank.start() is True
        assert (tmp_path / ".membank" / "memory.db").exists()
        assert bank.get_backend_info().backend == "native"
        await bank.close()

    @pytest.mark.asyncio
    async def test_context_manager(self, config):
        async with make_bank(config) as bank:
            await bank.add(Category.BRIEF, "Project goal: ship v1")
            assert await bank.count_entries() == 1
        assert not bank.store.initialized

    @pytest.mark.asyncio
    async def test_start_without_backend(self, config):
        bank = make_bank(config, backends=[UnavailableBackend])
        assert await bank.start() is False
        with pytest.raises(StorageError):
            await bank.add(Category.BRIEF, "nowhere to go")


class TestEntries:
    @pytest.mark.asyncio
    async def test_add_tags_entry(self, config):
        async with make_bank(config) as bank:
            entry_id = await bank.add("decision", "Use WAL mode", timestamp="2025-06-01T09:00:00Z")
            entry = await bank.get_entry(entry_id)
            assert entry.category is Category.DECISION
            assert entry.tag == "[DECISION:2025-06-01]"

    @pytest.mark.asyncio
    async def test_add_unknown_category(self, config):
        async with make_bank(config) as bank:
            with pytest.raises(ValidationError) as exc:
                await bank.add("NOTES", "content")
            assert exc.value.field == "category"

    @pytest.mark.asyncio
    async def test_queries_are_timed(self, config):
        async with make_bank(config) as bank:
            await bank.add(Category.CONTEXT, "searchable content")
            await bank.full_text_search("searchable")
            await bank.get_recent()
            await bank.metrics.flush()
            operations = {s.operation for s in await bank.get_tool_metrics()}
            assert {"append", "full_text_search", "get_recent"} <= operations

    @pytest.mark.asyncio
    async def test_deprecate_keeps_original(self, config):
        async with make_bank(config) as bank:
            old = await bank.add(Category.PATTERN, "Retry three times")
            new = await bank.deprecate(old, "retries hide real failures")

            original = await bank.get_entry(old)
            replacement = await bank.get_entry(new)
            assert original.content == "Retry three times"
            assert replacement.supersedes == old
            assert replacement.category is Category.PATTERN
            assert replacement.tag.startswith("[DEPRECATED:")
            assert "retries hide real failures" in replacement.content

    @pytest.mark.asyncio
    async def test_deprecate_missing(self, config):
        async with make_bank(config) as bank:
            with pytest.raises(ValidationError):
                await bank.deprecate(404, "gone")


class TestContext:
    @pytest.mark.asyncio
    async def test_select_context_skips_superseded(self, config):
        async with make_bank(config) as bank:
            old = await bank.add(Category.PATTERN, "Cache invalidation by TTL")
            await bank.deprecate(old, "cache invalidation now event driven")
            kept = await bank.add(Category.BRIEF, "Cache layer sits in front of the API")

            result = await bank.select_context("cache invalidation", token_budget=1000)
            ids = {e.id for e in result.selected}
            assert old not in ids
            assert kept in ids
            assert result.total_tokens <= 1000

    @pytest.mark.asyncio
    async def test_select_context_category_filter(self, config):
        async with make_bank(config) as bank:
            await bank.add(Category.BRIEF, "cache brief")
            await bank.add(Category.PROGRESS, "cache progress")
            result = await bank.select_context("cache", 1000, categories=["progress"])
            assert [e.category for e in result.selected] == [Category.PROGRESS]

    @pytest.mark.asyncio
    async def test_selection_records_token_usage(self, config):
        async with make_bank(config) as bank:
            await bank.add(Category.CONTEXT, "cache notes " * 10)
            result = await bank.select_context("cache", 1000)
            await bank.metrics.flush()
            dashboard = await bank.get_dashboard_metrics()
            assert dashboard.call_count == 1
            assert dashboard.total_tokens == result.total_tokens

    @pytest.mark.asyncio
    async def test_count_tokens_and_budget(self, config):
        async with make_bank(config) as bank:
            count = await bank.count_tokens("x" * 40)
            assert count.count == 10
            assert bank.get_context_budget(0).status is ContextStatus.HEALTHY


class TestMaintenance:
    @pytest.mark.asyncio
    async def test_verify(self, config):
        async with make_bank(config) as bank:
            await bank.add(Category.PROGRESS, "Milestone 1 done")
            report = await bank.verify()
            assert report.valid, report.issues
