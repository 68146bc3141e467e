"""Greedy, budget-bounded context selection.

Candidates are scored, ranked and then taken in rank order while their
token cost still fits. The walk stops at the first entry that would
overflow the budget; nothing after it is considered and no entry is ever
truncated. This is a greedy approximation, not an optimal packing.

Token counts are taken lazily, only for entries the walk reaches, so a
large pool costs one scoring pass plus as many counts as fit.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, Sequence

from membank.context.scorer import RelevanceScorer, extract_terms, rank_key
from membank.context.tokens import TokenCounter
from membank.errors import ValidationError
from membank.memory.models import Entry, utc_now

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SelectionResult:
    selected: list[Entry]
    considered_count: int
    selected_count: int
    total_tokens: int
    coverage_ratio: float
    exact: bool = True
    scores: dict[int, float] = field(default_factory=dict)


class ContextSelector:
    def __init__(self, counter: TokenCounter, scorer: RelevanceScorer | None = None) -> None:
        self.counter = counter
        self.scorer = scorer or RelevanceScorer()

    async def select_for_budget(
        self,
        pool: Iterable[Entry],
        query_terms: str | Sequence[str],
        token_budget: int,
        model_id: str | None = None,
        min_score: float | None = None,
        now: datetime | None = None,
    ) -> SelectionResult:
        """Pick the highest-ranked entries whose summed cost fits ``token_budget``.

        ``selected`` keeps the order the entries had in ``pool``. Estimated
        counts are charged with the counter's safety margin, so the budget
        holds even when no exact tokenizer is reachable.
        """
        if isinstance(token_budget, bool) or not isinstance(token_budget, int) or token_budget < 0:
            raise ValidationError("token_budget", f"must be a non-negative integer, got {token_budget!r}")

        candidates = list(pool)
        terms = extract_terms(query_terms)
        now = now or utc_now()

        self.scorer.prepare(terms, candidates)
        scored = self.scorer.score_entries(candidates, terms, now)
        order = sorted(range(len(scored)), key=lambda i: rank_key(scored[i]))

        chosen: list[int] = []
        total = 0
        exact = True
        for index in order:
            if min_score is not None and scored[index].score < min_score:
                continue
            count = await self.counter.count_tokens(candidates[index].content, model_id)
            cost = self.counter.apply_margin(count)
            if total + cost > token_budget:
                logger.debug(
                    "Budget %d reached at rank %d (cost %d, used %d)",
                    token_budget, len(chosen), cost, total,
                )
                break
            chosen.append(index)
            total += cost
            exact = exact and count.exact

        chosen.sort()
        selected = [candidates[i] for i in chosen]
        considered = len(candidates)
        return SelectionResult(
            selected=selected,
            considered_count=considered,
            selected_count=len(selected),
            total_tokens=total,
            coverage_ratio=len(selected) / considered if considered else 0.0,
            exact=exact,
            scores={
                candidates[i].id: scored[i].score for i in chosen if candidates[i].id is not None
            },
        )
