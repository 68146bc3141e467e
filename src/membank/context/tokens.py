"""Token counting with provider tokenizers and an offline fallback.

Counting chain, first success wins:

1. Anthropic ``messages.count_tokens`` for Claude models when an API key
   is configured (exact).
2. ``tiktoken``: exact for OpenAI models it knows, a ``cl100k_base``
   estimate for anything else.
3. ``ceil(len(text) / chars_per_token)`` (estimate).

Results are cached per ``(sha256(text), model)`` with a fixed capacity and
TTL. Nothing raised by a provider escapes ``count_tokens``.
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import math
import time
from collections import OrderedDict
from dataclasses import dataclass, replace
from typing import Callable

import tiktoken

from membank.config import TokenConfig
from membank.errors import CountingError
from membank.memory.models import ContextStatus

logger = logging.getLogger(__name__)

FALLBACK_ENCODING = "cl100k_base"
OUTPUT_RESERVE = 0.20
HEALTHY_REMAINING = 50_000
WARNING_REMAINING = 10_000


@dataclass(frozen=True)
class TokenCount:
    count: int
    exact: bool
    cached: bool = False
    source: str = "heuristic"


@dataclass(frozen=True)
class ContextBudget:
    """Input budget left in a context window after reserving room for output."""

    total: int
    used: int
    remaining: int
    percent_used: float
    status: ContextStatus
    recommendations: tuple[str, ...] = ()


def get_context_budget(used_tokens: int, context_window: int = 200_000) -> ContextBudget:
    available = int(context_window * (1 - OUTPUT_RESERVE))
    remaining = available - used_tokens
    percent = (used_tokens / available * 100) if available > 0 else 100.0

    if remaining > HEALTHY_REMAINING:
        status = ContextStatus.HEALTHY
        recommendations: tuple[str, ...] = ()
    elif remaining > WARNING_REMAINING:
        status = ContextStatus.WARNING
        recommendations = (
            "Context budget below 50K tokens",
            "Consider summarizing long contexts",
        )
    else:
        status = ContextStatus.CRITICAL
        recommendations = (
            "Context budget nearly exhausted (below 10K tokens)",
            "Start a new conversation or drop non-essential context",
        )

    return ContextBudget(
        total=available,
        used=used_tokens,
        remaining=max(0, remaining),
        percent_used=min(100.0, percent),
        status=status,
        recommendations=recommendations,
    )


class TokenCounter:
    """Counts tokens for a model, degrading to estimates rather than failing."""

    def __init__(
        self,
        config: TokenConfig | None = None,
        *,
        client=None,
        use_tiktoken: bool = True,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config or TokenConfig()
        self._client = client
        self._use_tiktoken = use_tiktoken
        self._clock = clock
        self._cache: OrderedDict[tuple[str, str], tuple[float, TokenCount]] = OrderedDict()
        self._encodings: dict[str, tuple[tiktoken.Encoding, bool]] = {}
        self._hits = 0
        self._misses = 0

    # ── Cache ─────────────────────────────────────────────────

    def _cache_get(self, key: tuple[str, str]) -> TokenCount | None:
        item = self._cache.get(key)
        if item is None:
            return None
        stored_at, result = item
        if self._clock() - stored_at > self.config.cache_ttl:
            del self._cache[key]
            return None
        return result

    def _cache_put(self, key: tuple[str, str], result: TokenCount) -> None:
        self._cache.pop(key, None)
        if self.config.cache_size <= 0:
            return
        while len(self._cache) >= self.config.cache_size:
            self._cache.popitem(last=False)
        self._cache[key] = (self._clock(), result)

    def cache_stats(self) -> dict:
        return {
            "size": len(self._cache),
            "max_size": self.config.cache_size,
            "ttl_seconds": self.config.cache_ttl,
            "hits": self._hits,
            "misses": self._misses,
        }

    def clear_cache(self) -> None:
        self._cache.clear()

    # ── Providers ─────────────────────────────────────────────

    def _anthropic_client(self):
        if self._client is None:
            import anthropic

            self._client = anthropic.Anthropic(api_key=self.config.anthropic_api_key)
        return self._client

    async def _count_anthropic(self, text: str, model: str) -> TokenCount | None:
        if not model.startswith("claude"):
            return None
        if self._client is None and not self.config.anthropic_api_key:
            return None
        try:
            client = self._anthropic_client()
            response = await asyncio.to_thread(
                client.messages.count_tokens,
                model=model,
                messages=[{"role": "user", "content": text}],
            )
        except Exception as e:
            raise CountingError(f"Anthropic token count failed: {e}") from e
        return TokenCount(count=int(response.input_tokens), exact=True, source="anthropic")

    def _encoding(self, model: str) -> tuple[tiktoken.Encoding, bool]:
        if model not in self._encodings:
            try:
                self._encodings[model] = (tiktoken.encoding_for_model(model), True)
            except KeyError:
                self._encodings[model] = (tiktoken.get_encoding(FALLBACK_ENCODING), False)
        return self._encodings[model]

    def _count_tiktoken(self, text: str, model: str) -> TokenCount | None:
        if not self._use_tiktoken:
            return None
        try:
            encoding, exact = self._encoding(model)
            count = len(encoding.encode(text, disallowed_special=()))
        except Exception as e:
            # Encodings are fetched on first use and may be unavailable offline.
            raise CountingError(f"tiktoken count failed: {e}") from e
        return TokenCount(count=count, exact=exact, source="tiktoken")

    def estimate(self, text: str) -> TokenCount:
        count = math.ceil(len(text) / self.config.chars_per_token) if text else 0
        return TokenCount(count=count, exact=False, source="heuristic")

    # ── Public API ────────────────────────────────────────────

    async def count_tokens(self, text: str, model_id: str | None = None) -> TokenCount:
        model = model_id or self.config.model
        if not text:
            return TokenCount(count=0, exact=True, source="empty")

        key = (hashlib.sha256(text.encode("utf-8")).hexdigest(), model)
        cached = self._cache_get(key)
        if cached is not None:
            self._hits += 1
            return replace(cached, cached=True)
        self._misses += 1

        result: TokenCount | None = None
        try:
            result = await self._count_anthropic(text, model)
        except CountingError as e:
            logger.warning("%s; falling back", e)
        if result is None:
            try:
                result = self._count_tiktoken(text, model)
            except CountingError as e:
                logger.debug("%s; using heuristic", e)
                self._use_tiktoken = False
        if result is None:
            result = self.estimate(text)

        self._cache_put(key, result)
        return result

    def apply_margin(self, result: TokenCount) -> int:
        """Cost to charge against a budget: estimates are inflated and rounded up."""
        if result.exact:
            return result.count
        # Rounded first so 10 * 1.1 charges 11, not 12.
        return math.ceil(round(result.count * self.config.estimate_margin, 6))
