"""Sampled operation timing and token usage, written off the hot path.

Measurements go onto a bounded queue without waiting and are persisted by
a background worker through the store. A full queue drops the sample and a
failed write is logged; neither ever reaches the measured call.
"""

from __future__ import annotations

import asyncio
import logging
import random
import time
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, AsyncIterator, Callable

from membank.config import MetricsConfig
from membank.context.tokens import get_context_budget
from membank.errors import MembankError, MetricsError
from membank.memory.models import (
    ContextStatus,
    QueryMetric,
    TokenMetric,
    format_timestamp,
    utc_now,
)

if TYPE_CHECKING:
    from membank.memory.store import EntryStore

logger = logging.getLogger(__name__)

TREND_THRESHOLD_PCT = 5.0


@dataclass(frozen=True)
class OperationStats:
    operation: str
    count: int
    total_ms: float
    average_ms: float
    max_ms: float


@dataclass(frozen=True)
class DashboardMetrics:
    total_tokens: int
    average_tokens_per_call: float
    call_count: int
    context_status: ContextStatus | None
    token_trend: str
    average_query_ms: float
    operations: tuple[OperationStats, ...] = ()
    last_updated: str = ""


@dataclass
class Timing:
    """Handle yielded by ``timed``; set ``result_count`` before leaving the block."""

    operation: str
    result_count: int = 0
    elapsed_ms: float = 0.0


def token_trend(metrics: list[TokenMetric]) -> str:
    """Compare average usage of the older and newer half of ``metrics``."""
    if len(metrics) < 2:
        return "stable"
    mid = len(metrics) // 2
    first = sum(m.total_tokens for m in metrics[:mid]) / mid
    second = sum(m.total_tokens for m in metrics[mid:]) / (len(metrics) - mid)
    if first == 0:
        return "increasing" if second > 0 else "stable"
    change = (second - first) / first * 100
    if change > TREND_THRESHOLD_PCT:
        return "increasing"
    if change < -TREND_THRESHOLD_PCT:
        return "decreasing"
    return "stable"


def summarize(metrics: list[QueryMetric]) -> list[OperationStats]:
    grouped: dict[str, list[float]] = defaultdict(list)
    for metric in metrics:
        grouped[metric.operation].append(metric.elapsed_ms)
    return [
        OperationStats(
            operation=operation,
            count=len(samples),
            total_ms=sum(samples),
            average_ms=sum(samples) / len(samples),
            max_ms=max(samples),
        )
        for operation, samples in sorted(grouped.items())
    ]


class MetricsAggregator:
    """Best-effort metrics channel in front of the store."""

    def __init__(
        self,
        store: EntryStore,
        config: MetricsConfig | None = None,
        *,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.store = store
        self.config = config or MetricsConfig()
        self._rng = rng or random.Random()
        self._clock = clock
        self._queue: asyncio.Queue | None = None
        self._worker: asyncio.Task | None = None
        self._cache: dict[tuple, tuple[float, object]] = {}
        self.dropped = 0
        self.failed = 0

    # ── Producer side ─────────────────────────────────────────

    def should_sample(self) -> bool:
        if self.config.debug:
            return True
        return self._rng.random() < self.config.sample_rate

    def _enqueue(self, metric: QueryMetric | TokenMetric) -> bool:
        if self._queue is None:
            self._queue = asyncio.Queue(maxsize=self.config.queue_size)
        if self._worker is None or self._worker.done():
            self._worker = asyncio.get_running_loop().create_task(
                self._run(), name="membank-metrics"
            )
        try:
            self._queue.put_nowait(metric)
        except asyncio.QueueFull:
            self.dropped += 1
            logger.debug("Metrics queue full, dropped %s sample", type(metric).__name__)
            return False
        return True

    def record_query(self, operation: str, elapsed_ms: float, result_count: int = 0) -> bool:
        """Queue a timing sample if this call is sampled. Returns whether it was queued."""
        if not self.should_sample():
            return False
        return self._enqueue(
            QueryMetric(operation=operation, elapsed_ms=elapsed_ms, result_count=result_count)
        )

    def record_token_usage(
        self,
        model: str,
        input_tokens: int,
        output_tokens: int = 0,
        operation: str = "select_context",
        context_status: ContextStatus | None = None,
    ) -> bool:
        """Queue a token usage record. Not sampled."""
        if context_status is None:
            context_status = get_context_budget(input_tokens + output_tokens).status
        return self._enqueue(
            TokenMetric(
                model=model,
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                operation=operation,
                context_status=context_status,
            )
        )

    @asynccontextmanager
    async def timed(self, operation: str) -> AsyncIterator[Timing]:
        """Time the enclosed block and record it when it completes normally."""
        timing = Timing(operation=operation)
        start = time.perf_counter()
        yield timing
        timing.elapsed_ms = (time.perf_counter() - start) * 1000
        self.record_query(operation, timing.elapsed_ms, timing.result_count)

    # ── Consumer side ─────────────────────────────────────────

    async def _write(self, metric: QueryMetric | TokenMetric) -> None:
        try:
            if isinstance(metric, TokenMetric):
                await self.store.record_token_metric(metric)
            else:
                await self.store.record_query_metric(metric)
        except MembankError as e:
            raise MetricsError(f"writing {type(metric).__name__} failed: {e}") from e

    async def _run(self) -> None:
        assert self._queue is not None
        while True:
            metric = await self._queue.get()
            try:
                if metric is None:
                    return
                await self._write(metric)
            except MetricsError as e:
                self.failed += 1
                logger.warning("%s", e)
            except Exception as e:
                self.failed += 1
                logger.error("Metrics write error: %s", e)
            finally:
                self._queue.task_done()

    async def flush(self) -> None:
        """Wait until every queued sample has been written (or failed)."""
        if self._queue is not None and self._worker is not None and not self._worker.done():
            await self._queue.join()

    async def close(self) -> None:
        if self._queue is None or self._worker is None or self._worker.done():
            return
        await self._queue.put(None)
        await self._worker
        self._worker = None

    # ── Read side ─────────────────────────────────────────────

    def _cached(self, key: tuple):
        item = self._cache.get(key)
        if item is not None and self._clock() - item[0] < self.config.cache_seconds:
            return item[1]
        return None

    def clear_cache(self) -> None:
        self._cache.clear()

    async def get_tool_metrics(self, window_days: int = 7) -> list[OperationStats]:
        key = ("tool", window_days)
        cached = self._cached(key)
        if cached is not None:
            return cached
        since = format_timestamp(utc_now() - timedelta(days=window_days))
        try:
            stats = summarize(await self.store.query_metrics(since))
        except MembankError as e:
            logger.warning("Reading query metrics failed: %s", e)
            return []
        self._cache[key] = (self._clock(), stats)
        return stats

    async def get_dashboard_metrics(self, window_days: int = 7) -> DashboardMetrics:
        key = ("dashboard", window_days)
        cached = self._cached(key)
        if cached is not None:
            return cached
        since = format_timestamp(utc_now() - timedelta(days=window_days))
        try:
            tokens = await self.store.token_metrics(since)
            queries = await self.store.query_metrics(since)
        except MembankError as e:
            logger.warning("Reading dashboard metrics failed: %s", e)
            return DashboardMetrics(0, 0.0, 0, None, "stable", 0.0)

        total = sum(m.total_tokens for m in tokens)
        latest = tokens[-1] if tokens else None
        dashboard = DashboardMetrics(
            total_tokens=total,
            average_tokens_per_call=total / len(tokens) if tokens else 0.0,
            call_count=len(tokens),
            context_status=latest.context_status if latest else None,
            token_trend=token_trend(tokens),
            average_query_ms=(sum(m.elapsed_ms for m in queries) / len(queries)) if queries else 0.0,
            operations=tuple(summarize(queries)),
            last_updated=latest.timestamp if latest else format_timestamp(utc_now()),
        )
        self._cache[key] = (self._clock(), dashboard)
        return dashboard
