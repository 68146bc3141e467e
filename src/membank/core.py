"""Membank handle: one explicit owner for the store and the context pipeline.

Responsibilities:
1. Own the EntryStore lifecycle (open on start, flush on close)
2. Route every store and selector call through metrics timing
3. Build candidate pools for budgeted context selection
4. Logical deprecation on top of an append-only store
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Sequence

from membank.backends import BackendInfo
from membank.config import MembankConfig
from membank.context.scorer import RelevanceScorer
from membank.context.selector import ContextSelector, SelectionResult
from membank.context.tokens import ContextBudget, TokenCount, TokenCounter, get_context_budget
from membank.errors import ValidationError
from membank.memory.models import Category, Entry, make_tag, utc_now
from membank.memory.recovery import IntegrityReport
from membank.memory.store import BackendFactory, EntryStore
from membank.metrics import DashboardMetrics, MetricsAggregator, OperationStats

logger = logging.getLogger(__name__)


class Membank:
    """Core handle, created once at startup and passed to whatever needs memory."""

    def __init__(
        self,
        config: MembankConfig | None = None,
        *,
        store: EntryStore | None = None,
        counter: TokenCounter | None = None,
        backends: Sequence[BackendFactory] | None = None,
    ) -> None:
        self.config = config or MembankConfig()
        self.store = store or EntryStore(
            backends=backends,
            snapshot_keep=self.config.storage.snapshot_keep,
            snapshot_max_age_hours=self.config.storage.snapshot_max_age_hours,
        )
        self.counter = counter or TokenCounter(self.config.tokens)
        self.scorer = RelevanceScorer()
        self.selector = ContextSelector(self.counter, self.scorer)
        self.metrics = MetricsAggregator(self.store, self.config.metrics)

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self) -> bool:
        ok = await self.store.init(self.config.data_path)
        if ok:
            info = self.store.get_backend_info()
            logger.info("Membank started on %s backend (schema v%d)", info.backend, info.version)
        return ok

    async def close(self) -> None:
        """Flush pending metrics, then close the store."""
        await self.metrics.close()
        await self.store.close()

    async def __aenter__(self) -> Membank:
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # ── Entries ───────────────────────────────────────────────

    async def append(self, entry: Entry) -> int:
        async with self.metrics.timed("append") as t:
            entry_id = await self.store.append(entry)
            t.result_count = 1
        return entry_id

    async def add(
        self,
        category: Category | str,
        content: str,
        *,
        tag: str | None = None,
        timestamp: str | datetime | None = None,
        supersedes: int | None = None,
    ) -> int:
        """Create and append an entry, tagging it with its category and date."""
        try:
            entry = Entry.create(
                category, content, timestamp, tag, supersedes=supersedes, auto_tag=True
            )
        except (TypeError, ValueError) as e:
            raise ValidationError("timestamp", str(e)) from e
        return await self.append(entry)

    async def get_entry(self, entry_id: int) -> Entry | None:
        return await self.store.get_entry(entry_id)

    async def query_by_category(self, category: Category | str, limit: int = 50) -> list[Entry]:
        async with self.metrics.timed("query_by_category") as t:
            entries = await self.store.query_by_category(category, limit)
            t.result_count = len(entries)
        return entries

    async def query_by_date_range(
        self, category: Category | str | None, start: str | None, end: str | None
    ) -> list[Entry]:
        async with self.metrics.timed("query_by_date_range") as t:
            entries = await self.store.query_by_date_range(category, start, end)
            t.result_count = len(entries)
        return entries

    async def full_text_search(self, term: str, limit: int = 50) -> list[Entry]:
        async with self.metrics.timed("full_text_search") as t:
            entries = await self.store.full_text_search(term, limit)
            t.result_count = len(entries)
        return entries

    async def get_recent(self, category: Category | str | None = None, count: int = 20) -> list[Entry]:
        async with self.metrics.timed("get_recent") as t:
            entries = await self.store.get_recent(category, count)
            t.result_count = len(entries)
        return entries

    async def count_entries(self) -> int:
        return await self.store.count_entries()

    def get_backend_info(self) -> BackendInfo:
        return self.store.get_backend_info()

    async def deprecate(self, entry_id: int, reason: str) -> int:
        """Append an entry that supersedes ``entry_id``. The original stays stored."""
        target = await self.store.get_entry(entry_id)
        if target is None:
            raise ValidationError("entry_id", f"entry {entry_id} does not exist")
        now = utc_now()
        entry = Entry.create(
            target.category,
            f"Deprecated entry {entry_id}: {reason}",
            now,
            make_tag("DEPRECATED", now),
            supersedes=entry_id,
        )
        new_id = await self.append(entry)
        logger.info("Entry %d deprecated by %d", entry_id, new_id)
        return new_id

    # ── Context ───────────────────────────────────────────────

    async def count_tokens(self, text: str, model_id: str | None = None) -> TokenCount:
        return await self.counter.count_tokens(text, model_id)

    def get_context_budget(self, used_tokens: int) -> ContextBudget:
        return get_context_budget(used_tokens, self.config.tokens.context_window)

    async def select_for_budget(
        self,
        pool: Iterable[Entry],
        query_terms: str | Sequence[str],
        token_budget: int,
        model_id: str | None = None,
        min_score: float | None = None,
    ) -> SelectionResult:
        model = model_id or self.config.tokens.model
        async with self.metrics.timed("select_for_budget") as t:
            result = await self.selector.select_for_budget(
                pool, query_terms, token_budget, model, min_score
            )
            t.result_count = result.selected_count
        self.metrics.record_token_usage(model, result.total_tokens, operation="select_for_budget")
        return result

    async def select_context(
        self,
        query: str | Sequence[str],
        token_budget: int,
        model_id: str | None = None,
        categories: Iterable[Category | str] | None = None,
        per_category_limit: int = 100,
    ) -> SelectionResult:
        """Select from the most recent entries of each category, skipping superseded ones."""
        wanted = [Category.parse(c) for c in categories] if categories else list(Category)
        pool: list[Entry] = []
        for category in wanted:
            pool.extend(await self.store.get_recent(category, per_category_limit))
        superseded = {e.supersedes for e in pool if e.supersedes is not None}
        pool = [e for e in pool if e.id not in superseded]
        return await self.select_for_budget(pool, query, token_budget, model_id)

    # ── Metrics & maintenance ─────────────────────────────────

    async def get_tool_metrics(self, window_days: int = 7) -> list[OperationStats]:
        return await self.metrics.get_tool_metrics(window_days)

    async def get_dashboard_metrics(self) -> DashboardMetrics:
        return await self.metrics.get_dashboard_metrics()

    async def verify(self) -> IntegrityReport:
        await self.metrics.flush()
        return await self.store.verify()
