"""Relevance scoring: keyword match × recency × category priority.

Keyword matching is lexical only. Query terms are weighted by inverse
document frequency over the candidate pool so a rare term counts for more
than one that appears everywhere; call ``prepare`` with the pool before
scoring, otherwise every term weighs the same.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Sequence

from membank.memory.models import Category, Entry, parse_timestamp, utc_now

STOPWORDS = frozenset({
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for",
    "of", "is", "are", "was", "were", "be", "been", "being", "have", "has",
    "had", "do", "does", "did", "will", "would", "could", "should", "may",
    "might", "must", "can", "this", "that", "these", "those", "i", "you",
    "he", "she", "it", "we", "they", "what", "which", "who", "when", "where",
    "why", "how", "all", "each", "every", "both", "few", "more", "most",
    "other", "some", "such", "no", "nor", "not", "only", "same", "so",
    "than", "too", "very",
})

MIN_TERM_LENGTH = 3

PRIORITY_WEIGHTS = {
    Category.BRIEF: 1.5,
    Category.PATTERN: 1.4,
    Category.CONTEXT: 1.3,
    Category.DECISION: 1.2,
    Category.PROGRESS: 1.0,
}

# (upper bound on whole days of age, weight); ages beyond the last bound get OLDEST_WEIGHT.
RECENCY_TIERS = ((6, 1.0), (30, 0.7), (90, 0.3))
OLDEST_WEIGHT = 0.1

_WORD_RE = re.compile(r"\w+")


def extract_terms(query: str | Iterable[str]) -> list[str]:
    """Lower-cased, de-duplicated query terms without stopwords or short words."""
    if isinstance(query, str):
        raw = _WORD_RE.findall(query)
    else:
        raw = [word for part in query for word in _WORD_RE.findall(part)]
    terms: list[str] = []
    for word in raw:
        word = word.lower()
        if len(word) >= MIN_TERM_LENGTH and word not in STOPWORDS and word not in terms:
            terms.append(word)
    return terms


def recency_weight(timestamp: str | None, now: datetime | None = None) -> float:
    if not timestamp:
        return OLDEST_WEIGHT
    try:
        when = parse_timestamp(timestamp)
    except (TypeError, ValueError):
        return OLDEST_WEIGHT
    age_days = math.floor(((now or utc_now()) - when).total_seconds() / 86400)
    if age_days < 0:
        return 1.0
    for bound, weight in RECENCY_TIERS:
        if age_days <= bound:
            return weight
    return OLDEST_WEIGHT


def priority_weight(category: Category) -> float:
    return PRIORITY_WEIGHTS.get(category, 1.0)


@dataclass(frozen=True)
class ScoredEntry:
    entry: Entry
    keyword_score: float
    recency_weight: float
    priority_weight: float
    score: float
    reason: str = ""


def rank_key(scored: ScoredEntry) -> tuple[float, float, int]:
    """Sort key: score descending, newer timestamp, then lower id."""
    when = scored.entry.timestamp_dt
    newest_first = -when.timestamp() if when is not None else math.inf
    entry_id = scored.entry.id if scored.entry.id is not None else 0
    return (-scored.score, newest_first, entry_id)


class RelevanceScorer:
    """Scores entries against a set of query terms."""

    def __init__(self) -> None:
        self._patterns: dict[str, re.Pattern] = {}
        self._weights: dict[str, float] = {}

    def _pattern(self, term: str) -> re.Pattern:
        pattern = self._patterns.get(term)
        if pattern is None:
            pattern = re.compile(rf"\b{re.escape(term)}\b", re.IGNORECASE)
            self._patterns[term] = pattern
        return pattern

    def prepare(self, query_terms: Sequence[str], pool: Sequence[Entry]) -> None:
        """Compute IDF weights for ``query_terms`` over ``pool``.

        ``idf = ln((N + 1) / (df + 1)) + 1``, always positive, so a term
        present in every entry still counts.
        """
        n = len(pool)
        self._weights = {}
        for term in query_terms:
            pattern = self._pattern(term)
            df = sum(1 for entry in pool if pattern.search(entry.content))
            self._weights[term] = math.log((n + 1) / (df + 1)) + 1.0

    def keyword_score(self, content: str, query_terms: Sequence[str]) -> float:
        """Weighted fraction of ``query_terms`` found in ``content`` as whole words.

        With no query terms every entry scores 1.0, so ranking falls back to
        recency times priority.
        """
        if not query_terms:
            return 1.0
        total = 0.0
        matched = 0.0
        for term in query_terms:
            weight = self._weights.get(term, 1.0)
            total += weight
            if self._pattern(term).search(content):
                matched += weight
        return matched / total if total else 0.0

    def score(self, entry: Entry, query_terms: Sequence[str], now: datetime | None = None) -> float:
        return self.score_entry(entry, query_terms, now).score

    def score_entry(
        self, entry: Entry, query_terms: Sequence[str], now: datetime | None = None
    ) -> ScoredEntry:
        keyword = self.keyword_score(entry.content, query_terms)
        recency = recency_weight(entry.timestamp, now)
        priority = priority_weight(entry.category)
        return ScoredEntry(
            entry=entry,
            keyword_score=keyword,
            recency_weight=recency,
            priority_weight=priority,
            score=keyword * recency * priority,
            reason=self.explain(keyword, recency, priority),
        )

    def score_entries(
        self, entries: Sequence[Entry], query_terms: Sequence[str], now: datetime | None = None
    ) -> list[ScoredEntry]:
        now = now or utc_now()
        return [self.score_entry(entry, query_terms, now) for entry in entries]

    @staticmethod
    def rank(scored: Iterable[ScoredEntry]) -> list[ScoredEntry]:
        """Highest score first; ties go to the newer entry, then the lower id."""
        return sorted(scored, key=rank_key)

    @staticmethod
    def filter_by_threshold(scored: Iterable[ScoredEntry], threshold: float = 0.1) -> list[ScoredEntry]:
        return [s for s in scored if s.score >= threshold]

    def top(self, scored: Iterable[ScoredEntry], n: int = 10) -> list[ScoredEntry]:
        return self.rank(scored)[:n]

    @staticmethod
    def explain(keyword: float, recency: float, priority: float) -> str:
        factors: list[str] = []
        if keyword > 0.7:
            factors.append("highly relevant keywords")
        elif keyword > 0.4:
            factors.append("moderately relevant")
        elif keyword > 0:
            factors.append("weakly relevant")
        else:
            factors.append("no keyword match")

        if recency >= 1.0:
            factors.append("recent (< 7 days)")
        elif recency >= 0.7:
            factors.append("fairly recent")
        else:
            factors.append("aging")

        if priority > 1.3:
            factors.append("high priority")
        return "; ".join(factors)
