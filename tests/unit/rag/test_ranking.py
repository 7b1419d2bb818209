"""Tests for FinalRanker and ResultFilter."""

from __future__ import annotations

import pytest

from formulary.rag.models import Candidate, SearchOptions, Strategy
from formulary.rag.ranking import FinalRanker, ResultFilter, strategy_weight


def _c(doc_id, score, *strategies, rerank=None) -> Candidate:
    return Candidate(doc_id, doc_id, score, frozenset(strategies), rerank_score=rerank)


# ------------------------------------------------------------------
# Weights
# ------------------------------------------------------------------

@pytest.mark.parametrize("strategies,weight", [
    ((Strategy.EXACT,), 1.0),
    ((Strategy.METADATA,), 0.9),
    ((Strategy.FUZZY,), 0.4),
    ((Strategy.SEMANTIC,), 0.6),
    ((Strategy.FUZZY, Strategy.SEMANTIC), 0.6),
])
def test_strategy_weight(strategies, weight):
    assert strategy_weight(_c("A", 1.0, *strategies), SearchOptions()) == pytest.approx(weight)


def test_strategy_weight_applies_boost():
    options = SearchOptions(boost_weights={Strategy.SEMANTIC: 1.5})
    assert strategy_weight(_c("A", 1.0, Strategy.SEMANTIC), options) == pytest.approx(0.9)
    assert strategy_weight(_c("A", 1.0, Strategy.EXACT), options) == pytest.approx(1.0)


def test_configured_semantic_weight():
    options = SearchOptions(semantic_weight=0.8, keyword_weight=0.2)
    assert strategy_weight(_c("A", 1.0, Strategy.SEMANTIC), options) == pytest.approx(0.8)
    assert strategy_weight(_c("A", 1.0, Strategy.FUZZY), options) == pytest.approx(0.2)


# ------------------------------------------------------------------
# FinalRanker
# ------------------------------------------------------------------

def test_final_score_without_rerank():
    ranked = FinalRanker().rank([_c("A", 0.72, Strategy.FUZZY, Strategy.SEMANTIC)],
                                SearchOptions())
    assert ranked[0].final_score == pytest.approx(0.72 * 0.6)


def test_final_score_with_rerank():
    ranked = FinalRanker().rank([_c("A", 0.8, Strategy.SEMANTIC, rerank=0.5)], SearchOptions())
    assert ranked[0].final_score == pytest.approx(0.4 * 0.8 * 0.6 + 0.6 * 0.5)


def test_final_score_is_clamped():
    options = SearchOptions(boost_weights={Strategy.EXACT: 3.0})
    ranked = FinalRanker().rank([_c("A", 1.38, Strategy.EXACT)], options)
    assert ranked[0].final_score == 1.0


def test_rank_sorts_descending_with_strategy_tiebreak():
    ranked = FinalRanker().rank(
        [
            _c("S", 1.0, Strategy.SEMANTIC),
            _c("F", 0.5, Strategy.FUZZY),
            _c("E", 0.6, Strategy.EXACT),
            _c("M", 0.5, Strategy.METADATA),
        ],
        SearchOptions(),
    )
    # E and S tie at 0.6; exact outranks semantic
    assert [c.document_id for c in ranked] == ["E", "S", "M", "F"]
    scores = [c.final_score for c in ranked]
    assert scores == sorted(scores, reverse=True)
    assert all(0.0 <= s <= 1.0 for s in scores)


# ------------------------------------------------------------------
# ResultFilter
# ------------------------------------------------------------------

def _ranked(*scores) -> list[Candidate]:
    return [
        Candidate(f"D{i}", "", s, frozenset({Strategy.EXACT}), final_score=s)
        for i, s in enumerate(scores)
    ]


def test_filter_threshold_and_top_k():
    result = ResultFilter().apply(_ranked(0.9, 0.8, 0.5, 0.2, 0.1), threshold=0.3, top_k=2)
    assert [c.final_score for c in result.candidates] == [0.9, 0.8]
    assert result.total == 5
    assert result.below_threshold == 2
    assert result.truncated == 1


def test_filter_everything_below_threshold():
    result = ResultFilter().apply(_ranked(0.4, 0.2), threshold=0.9, top_k=10)
    assert result.candidates == []
    assert result.total == 2
    assert result.below_threshold == 2


def test_filter_threshold_is_inclusive():
    result = ResultFilter().apply(_ranked(0.3), threshold=0.3, top_k=10)
    assert len(result.candidates) == 1
