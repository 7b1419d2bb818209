"""Second-pass relevance scoring of merged candidates.

A reranker is any callable ``(query, documents) -> scores`` returning one
score in [0, 1] per document. Two are provided:

- ``term_overlap_scores``: share of query terms found in the document text.
  Substring containment, so unsegmented Thai text still matches.
- ``LiteLLMRerankScorer``: cross-encoder call via ``litellm.rerank``.

combined_score = 0.3 * score + 0.7 * rerank_score
"""

from __future__ import annotations

import logging
import re
from typing import Callable

from formulary.errors import RerankFailure
from formulary.rag import llm_client
from formulary.rag.models import Candidate

logger = logging.getLogger(__name__)

ORIGINAL_WEIGHT = 0.3
RERANK_WEIGHT = 0.7

RelevanceScorer = Callable[[str, list[str]], list[float]]

_TERM_SPLIT_RE = re.compile(r"[\s,;:.!?()\[\]\"']+")


def _query_terms(query: str) -> list[str]:
    terms: list[str] = []
    for term in _TERM_SPLIT_RE.split(query.lower()):
        if len(term) >= 2 and term not in terms:
            terms.append(term)
    return terms


def term_overlap_scores(query: str, documents: list[str]) -> list[float]:
    """Fraction of distinct query terms (2+ chars) contained in each document."""
    terms = _query_terms(query)
    if not terms:
        return [0.0] * len(documents)
    scores = []
    for doc in documents:
        lowered = doc.lower()
        scores.append(sum(1 for t in terms if t in lowered) / len(terms))
    return scores


class LiteLLMRerankScorer:
    """Cross-encoder scorer backed by a LiteLLM rerank model."""

    def __init__(self, model: str, num_retries: int = 3) -> None:
        self.model = model
        self._num_retries = num_retries

    def __call__(self, query: str, documents: list[str]) -> list[float]:
        return llm_client.rerank(self.model, query, documents, num_retries=self._num_retries)


class Reranker:
    """Attach rerank and combined scores to candidates and reorder them.

    On any scorer failure the input list is returned unchanged.
    """

    def __init__(self, scorer: RelevanceScorer | None = None) -> None:
        self._scorer = scorer or term_overlap_scores

    def rerank(self, query: str, candidates: list[Candidate]) -> list[Candidate]:
        if not candidates:
            return candidates
        try:
            scores = self._score(query, candidates)
        except Exception as exc:
            logger.warning("Rerank failed, keeping original order: %s", exc)
            return candidates

        reranked = [
            c.evolve(
                rerank_score=s,
                combined_score=ORIGINAL_WEIGHT * c.score + RERANK_WEIGHT * s,
            )
            for c, s in zip(candidates, scores)
        ]
        reranked.sort(key=lambda c: (-(c.combined_score or 0.0), c.best_strategy_rank,
                                     c.document_id or ""))
        return reranked

    def _score(self, query: str, candidates: list[Candidate]) -> list[float]:
        scores = list(self._scorer(query, [c.content for c in candidates]))
        if len(scores) != len(candidates):
            raise RerankFailure(
                f"scorer returned {len(scores)} scores for {len(candidates)} candidates"
            )
        return [min(1.0, max(0.0, float(s))) for s in scores]
