"""Final ranking and result filtering.

Strategy weights (times the per-strategy boost from SearchOptions):

  exact     1.0
  metadata  0.9
  fuzzy     keyword_weight  (default 0.4)
  semantic  semantic_weight (default 0.6)

A hybrid candidate takes the largest weight among its tags.

  weighted = score * weight
  final    = 0.4 * weighted + 0.6 * rerank_score   (when reranked)
           = weighted                              (otherwise)
  final is clamped to [0, 1].
"""

from __future__ import annotations

from dataclasses import dataclass, field

from formulary.rag.models import Candidate, SearchOptions, Strategy

METADATA_PENALTY = 0.9
WEIGHTED_SHARE = 0.4
RERANK_SHARE = 0.6


def strategy_weight(candidate: Candidate, options: SearchOptions) -> float:
    base = {
        Strategy.EXACT: 1.0,
        Strategy.METADATA: METADATA_PENALTY,
        Strategy.FUZZY: options.keyword_weight,
        Strategy.SEMANTIC: options.semantic_weight,
    }
    if not candidate.strategy_tags:
        return 1.0
    return max(base[s] * options.boost(s) for s in candidate.strategy_tags)


def _clamp(value: float) -> float:
    return min(1.0, max(0.0, value))


class FinalRanker:
    def rank(self, candidates: list[Candidate], options: SearchOptions) -> list[Candidate]:
        """Set ``final_score`` on every candidate and sort descending.

        Ties are broken by strategy priority (exact > metadata > fuzzy >
        semantic), then by document id.
        """
        ranked = []
        for c in candidates:
            weighted = c.score * strategy_weight(c, options)
            if c.rerank_score is not None:
                final = WEIGHTED_SHARE * weighted + RERANK_SHARE * c.rerank_score
            else:
                final = weighted
            ranked.append(c.evolve(final_score=_clamp(final)))
        ranked.sort(key=lambda c: (-(c.final_score or 0.0), c.best_strategy_rank,
                                   c.document_id or ""))
        return ranked


@dataclass
class FilterResult:
    """Filtered candidates plus the counts needed to explain an empty result.

    Attributes:
        candidates: Survivors, at most ``top_k``.
        total: Candidates before filtering.
        below_threshold: Candidates dropped for ``final_score < threshold``.
        truncated: Candidates above the threshold dropped by the ``top_k`` cap.
    """

    candidates: list[Candidate] = field(default_factory=list)
    total: int = 0
    below_threshold: int = 0
    truncated: int = 0


class ResultFilter:
    def apply(self, candidates: list[Candidate], threshold: float, top_k: int) -> FilterResult:
        passing = [c for c in candidates if (c.final_score or 0.0) >= threshold]
        kept = passing[:top_k]
        return FilterResult(
            candidates=kept,
            total=len(candidates),
            below_threshold=len(candidates) - len(passing),
            truncated=len(passing) - len(kept),
        )
