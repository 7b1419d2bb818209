"""Tests for the exact, metadata, fuzzy and semantic strategies."""

from __future__ import annotations

import logging

import pytest
from conftest import InMemoryRecordStore, StaticVectorStore, semantic_hit

from formulary.db.models import IngredientRecord
from formulary.errors import BackendUnavailable
from formulary.rag.classifier import QueryClassifier
from formulary.rag.models import SearchOptions, Strategy
from formulary.rag.strategies import (
    ExactMatchStrategy,
    FuzzyMatchStrategy,
    MetadataFilterStrategy,
    SemanticVectorStrategy,
    similarity,
)


def _classify(query: str):
    return QueryClassifier().classify(query)


class _BrokenStore:
    def find(self, flt, limit):
        raise BackendUnavailable("records", "database is locked")


# ------------------------------------------------------------------
# Exact
# ------------------------------------------------------------------

def test_exact_code_scores_one(record_store):
    results = ExactMatchStrategy(record_store).execute(_classify("RM000001"), SearchOptions())
    assert [c.document_id for c in results] == ["RM000001"]
    assert results[0].score == 1.0
    assert results[0].strategy_tags == frozenset({Strategy.EXACT})
    assert results[0].matched_fields == frozenset({"code"})


def test_exact_code_with_separator(record_store):
    results = ExactMatchStrategy(record_store).execute(_classify("rm-000001"), SearchOptions())
    assert results[0].document_id == "RM000001"
    assert results[0].score == 1.0


def test_exact_trade_name_containment(record_store):
    results = ExactMatchStrategy(record_store).execute(
        _classify("Ginger Extract"), SearchOptions()
    )
    assert [(c.document_id, c.score) for c in results] == [("RM000002", 0.95)]
    assert results[0].matched_fields == frozenset({"trade_name"})


def test_exact_inci_name_containment(record_store):
    results = ExactMatchStrategy(record_store).execute(
        _classify('"sodium hyaluronate"'), SearchOptions()
    )
    assert [(c.document_id, c.score) for c in results] == [("RM000001", 0.9)]


def test_exact_falls_back_to_raw_query(record_store):
    results = ExactMatchStrategy(record_store).execute(_classify("niacinamide"), SearchOptions())
    assert [c.document_id for c in results] == ["RM000003"]


def test_exact_raw_query_matches_unpatterned_code():
    store = InMemoryRecordStore([IngredientRecord(code="ABC123", trade_name="Squalane")])
    classification = _classify("ABC123")
    assert classification.entities.codes == []

    results = ExactMatchStrategy(store).execute(classification, SearchOptions())
    assert [(c.document_id, c.score) for c in results] == [("ABC123", 1.0)]
    assert results[0].matched_fields == frozenset({"code"})


def test_exact_candidate_content_and_metadata(record_store):
    candidate = ExactMatchStrategy(record_store).execute(
        _classify("RM000001"), SearchOptions()
    )[0]
    assert "Trade Name: Hyaluronic Acid Powder" in candidate.content
    assert candidate.metadata["category"] == "humectant"
    assert candidate.metadata["code"] == "RM000001"


def test_exact_unavailable_without_store():
    assert ExactMatchStrategy(None).available is False


# ------------------------------------------------------------------
# Metadata
# ------------------------------------------------------------------

def test_metadata_code_lookup(record_store):
    results = MetadataFilterStrategy(record_store).execute(_classify("RM000001"), SearchOptions())
    assert [(c.document_id, c.score) for c in results] == [("RM000001", 0.8)]
    assert results[0].strategy_tags == frozenset({Strategy.METADATA})


def test_metadata_scoped_by_category(record_store):
    strategy = MetadataFilterStrategy(record_store)
    assert strategy.execute(_classify("RM000001"), SearchOptions(category="extract")) == []
    hit = strategy.execute(_classify("RM000001"), SearchOptions(category="Humectant"))
    assert hit[0].matched_fields == frozenset({"code", "category"})


def test_metadata_exact_name(record_store):
    results = MetadataFilterStrategy(record_store).execute(
        _classify('"aloe vera gel"'), SearchOptions()
    )
    assert [c.document_id for c in results] == ["RC00A008"]


def test_metadata_needs_an_identifier(record_store):
    results = MetadataFilterStrategy(record_store).execute(
        _classify("something soothing"), SearchOptions(category="extract")
    )
    assert results == []
    assert record_store.calls == []


# ------------------------------------------------------------------
# Fuzzy
# ------------------------------------------------------------------

@pytest.mark.parametrize("a,b,expected", [
    ("Ginger", "ginger", 1.0),
    ("ginger", "Ginger Extract", 0.8),
    ("hyaluronc", "hyaluronic", 0.9),
    ("", "anything", 0.0),
])
def test_similarity(a, b, expected):
    assert similarity(a, b) == pytest.approx(expected)


def test_similarity_short_strings_skip_containment():
    assert similarity("ab", "abc") < 0.8


def test_fuzzy_tolerates_typo(record_store):
    results = FuzzyMatchStrategy(record_store).execute(_classify("Ginger Extrat"), SearchOptions())
    assert [c.document_id for c in results] == ["RM000002"]
    assert results[0].score == pytest.approx(0.9 * (1 - 1 / 14))
    assert results[0].matched_fields == frozenset({"trade_name"})
    assert results[0].strategy_tags == frozenset({Strategy.FUZZY})


def test_fuzzy_threshold_is_respected(record_store):
    results = FuzzyMatchStrategy(record_store).execute(
        _classify("Ginger Extrat"), SearchOptions(fuzzy_threshold=0.9)
    )
    assert results == []


def test_fuzzy_scan_scoped_by_category(record_store):
    FuzzyMatchStrategy(record_store).execute(_classify("ginger"), SearchOptions(category="active"))
    scope = record_store.calls[0].all_of
    assert [(m.field, m.value) for m in scope] == [("category", "active")]


def test_fuzzy_truncates_to_top_k(record_store):
    results = FuzzyMatchStrategy(record_store).execute(
        _classify("RM00000"), SearchOptions(top_k=2)
    )
    assert len(results) == 2
    assert results[0].score >= results[1].score


# ------------------------------------------------------------------
# Semantic
# ------------------------------------------------------------------

def test_semantic_keeps_best_chunk_per_record(embedder):
    store = StaticVectorStore([
        semantic_hit("RM000001", 0.82, text="Hyaluronic Acid: Benefits - moisturizing"),
        semantic_hit("RM000001", 0.70),
        semantic_hit("RM000002", 0.65),
        semantic_hit("RM000003", 0.40),
    ])
    results = SemanticVectorStrategy(store, embedder).execute(
        _classify("moisturizing"), SearchOptions()
    )
    assert [(c.document_id, c.score) for c in results] == [("RM000001", 0.82), ("RM000002", 0.65)]
    assert results[0].content == "Hyaluronic Acid: Benefits - moisturizing"
    assert "text" not in results[0].metadata
    assert results[0].matched_fields == frozenset({"code"})


def test_semantic_embeds_at_most_three_expansions(embedder):
    store = StaticVectorStore([])
    classification = _classify("สารให้ความชุ่มชื้น")
    SemanticVectorStrategy(store, embedder).execute(classification, SearchOptions())
    assert embedder.texts == classification.expanded_queries[:3]
    assert any("moisturizing" in t for t in embedder.texts)


def test_semantic_passes_metadata_filter(embedder):
    store = StaticVectorStore([semantic_hit("RM000002", 0.9, category="extract")])
    SemanticVectorStrategy(store, embedder).execute(
        _classify("ginger"), SearchOptions(category="extract", exclude_owner="user-1")
    )
    assert store.filters[0] == {"category": "extract", "exclude_owner": "user-1"}


def test_semantic_unavailable_without_embedder():
    assert SemanticVectorStrategy(StaticVectorStore([]), None).available is False


@pytest.mark.parametrize("executor", [
    ExactMatchStrategy(None),
    MetadataFilterStrategy(None),
    FuzzyMatchStrategy(None),
    SemanticVectorStrategy(StaticVectorStore([]), None),
])
def test_run_without_backend_fails_cleanly(executor):
    outcome = executor.run(_classify("RM000001 Aqua Soothe"), SearchOptions())
    assert outcome.failed
    assert outcome.candidates == []
    assert "backend unavailable" in outcome.error


# ------------------------------------------------------------------
# Failure handling
# ------------------------------------------------------------------

def test_backend_failure_yields_empty_outcome(caplog):
    strategy = ExactMatchStrategy(_BrokenStore())
    with caplog.at_level(logging.WARNING, logger="formulary"):
        outcome = strategy.run(_classify("RM000001"), SearchOptions())
    assert outcome.failed
    assert outcome.candidates == []
    assert "database is locked" in outcome.error
    assert "exact strategy failed" in caplog.text


def test_execute_swallows_backend_failure():
    assert ExactMatchStrategy(_BrokenStore()).execute(_classify("x"), SearchOptions()) == []
