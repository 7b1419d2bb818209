"""The four retrieval strategies: exact, metadata, fuzzy and semantic.

Every executor satisfies ``execute(classification, options) -> list[Candidate]``
and tolerates backend failure: the error is logged at WARNING and the
strategy contributes no candidates.

Scores (raw, before final ranking):

  exact     1.0 code equals, 0.95 trade-name containment, 0.9 INCI containment, else 0.8
  metadata  0.8 flat
  fuzzy     max over fields of field_weight * similarity (code 1.0, trade 0.9, INCI 0.85)
  semantic  cosine similarity of the best chunk per record
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import ClassVar

from rapidfuzz.distance import Levenshtein

from formulary.db.models import (
    FieldMatch,
    IngredientRecord,
    MatchMode,
    RecordFilter,
)
from formulary.errors import BackendUnavailable
from formulary.rag.backends import Embedder, RecordStore, VectorStore
from formulary.rag.classifier import normalize_code
from formulary.rag.models import Candidate, QueryClassification, SearchOptions, Strategy

logger = logging.getLogger(__name__)

EXACT_CODE_SCORE = 1.0
TRADE_NAME_SCORE = 0.95
INCI_NAME_SCORE = 0.9
PARTIAL_SCORE = 0.8
METADATA_SCORE = 0.8

FUZZY_FIELD_WEIGHTS: dict[str, float] = {
    "code": 1.0,
    "trade_name": 0.9,
    "inci_name": 0.85,
}

SEMANTIC_MAX_QUERIES = 3


@dataclass
class StrategyOutcome:
    """Result of one strategy run. ``error`` is set when the strategy failed."""

    strategy: Strategy
    candidates: list[Candidate] = field(default_factory=list)
    error: str | None = None
    elapsed_ms: float = 0.0

    @property
    def failed(self) -> bool:
        return self.error is not None


class StrategyExecutor(ABC):
    """Base class for a retrieval strategy."""

    strategy: ClassVar[Strategy]

    @property
    @abstractmethod
    def available(self) -> bool:
        """True when the backend this strategy needs is configured."""

    @abstractmethod
    def _search(
        self, classification: QueryClassification, options: SearchOptions
    ) -> list[Candidate]:
        """Run the strategy. May raise; ``run`` turns errors into empty results."""

    def execute(
        self, classification: QueryClassification, options: SearchOptions
    ) -> list[Candidate]:
        return self.run(classification, options).candidates

    def run(
        self, classification: QueryClassification, options: SearchOptions
    ) -> StrategyOutcome:
        start = time.perf_counter()
        try:
            candidates = self._search(classification, options)
        except Exception as exc:
            elapsed = (time.perf_counter() - start) * 1000
            logger.warning("%s strategy failed: %s", self.strategy.value, exc)
            return StrategyOutcome(self.strategy, [], error=str(exc) or type(exc).__name__,
                                   elapsed_ms=elapsed)
        elapsed = (time.perf_counter() - start) * 1000
        logger.debug("%s strategy: %d candidates in %.1f ms",
                     self.strategy.value, len(candidates), elapsed)
        return StrategyOutcome(self.strategy, candidates, elapsed_ms=elapsed)


def _record_candidate(
    record: IngredientRecord,
    score: float,
    strategy: Strategy,
    matched_fields: frozenset[str] = frozenset(),
) -> Candidate:
    return Candidate(
        document_id=record.code,
        content=record.to_text(),
        score=score,
        strategy_tags=frozenset({strategy}),
        metadata=record.to_metadata(),
        matched_fields=matched_fields,
    )


def _code_terms(classification: QueryClassification) -> list[str]:
    """Normalised codes followed by their as-written forms, deduplicated."""
    terms: list[str] = []
    for code in (*classification.entities.codes, *classification.entities.raw_codes):
        if code not in terms:
            terms.append(code)
    return terms


def _scope_filters(options: SearchOptions) -> tuple[FieldMatch, ...]:
    clauses: list[FieldMatch] = []
    if options.category:
        clauses.append(FieldMatch("category", options.category, MatchMode.EQUALS))
    if options.source:
        clauses.append(FieldMatch("source", options.source, MatchMode.EQUALS))
    return tuple(clauses)


# ------------------------------------------------------------------
# Exact match
# ------------------------------------------------------------------


class ExactMatchStrategy(StrategyExecutor):
    """Case-insensitive OR-lookup of codes and names against the identifier fields.

    With no extracted entities the raw query is matched against the code
    and both name fields.
    """

    strategy = Strategy.EXACT

    def __init__(self, store: RecordStore | None, limit: int = 10) -> None:
        self._store = store
        self._limit = limit

    @property
    def available(self) -> bool:
        return self._store is not None

    def _search(
        self, classification: QueryClassification, options: SearchOptions
    ) -> list[Candidate]:
        if self._store is None:
            raise BackendUnavailable("records", "no record store configured")
        codes = _code_terms(classification)
        names = list(classification.entities.names)
        raw_query = not codes and not names
        if raw_query:
            names = [classification.query]

        clauses: list[FieldMatch] = []
        for code in codes:
            clauses.append(FieldMatch("code", code))
            clauses.append(FieldMatch("trade_name", code))
        for name in names:
            clauses.append(FieldMatch("trade_name", name))
            clauses.append(FieldMatch("inci_name", name))
        if raw_query:
            clauses.append(FieldMatch("code", classification.query.strip()))

        records = self._store.find(RecordFilter(any_of=tuple(clauses)), limit=self._limit)

        wanted_codes = {normalize_code(c) for c in codes}
        if raw_query:
            wanted_codes.add(normalize_code(classification.query.strip()))
        terms = [t.lower() for t in (*codes, *names)]
        candidates = []
        for record in records:
            score, matched = _exact_score(record, wanted_codes, terms)
            candidates.append(_record_candidate(record, score, self.strategy, matched))
        candidates.sort(key=lambda c: (-c.score, c.document_id))
        return candidates


def _exact_score(
    record: IngredientRecord, wanted_codes: set[str], terms: list[str]
) -> tuple[float, frozenset[str]]:
    if normalize_code(record.code) in wanted_codes:
        return EXACT_CODE_SCORE, frozenset({"code"})
    trade = (record.trade_name or "").lower()
    if trade and any(t in trade for t in terms):
        return TRADE_NAME_SCORE, frozenset({"trade_name"})
    inci = (record.inci_name or "").lower()
    if inci and any(t in inci for t in terms):
        return INCI_NAME_SCORE, frozenset({"inci_name"})
    return PARTIAL_SCORE, frozenset({"code"})


# ------------------------------------------------------------------
# Metadata filter
# ------------------------------------------------------------------


class MetadataFilterStrategy(StrategyExecutor):
    """Structured lookup: code-in-list / exact name, scoped by category and source.

    Needs at least one extracted identifier; a scope filter alone would match
    every record in the scope.
    """

    strategy = Strategy.METADATA

    def __init__(self, store: RecordStore | None) -> None:
        self._store = store

    @property
    def available(self) -> bool:
        return self._store is not None

    def _search(
        self, classification: QueryClassification, options: SearchOptions
    ) -> list[Candidate]:
        if self._store is None:
            raise BackendUnavailable("records", "no record store configured")
        codes = _code_terms(classification)
        names = classification.entities.names
        if not codes and not names:
            return []

        any_of: list[FieldMatch] = []
        if codes:
            any_of.append(FieldMatch("code", tuple(codes), MatchMode.IN))
        for name in names:
            any_of.append(FieldMatch("trade_name", name, MatchMode.EQUALS))
            any_of.append(FieldMatch("inci_name", name, MatchMode.EQUALS))

        flt = RecordFilter(any_of=tuple(any_of), all_of=_scope_filters(options))
        records = self._store.find(flt, limit=options.top_k)
        return [
            _record_candidate(r, METADATA_SCORE, self.strategy, _metadata_fields(r, options))
            for r in records
        ]


def _metadata_fields(record: IngredientRecord, options: SearchOptions) -> frozenset[str]:
    fields = {"code"}
    if options.category:
        fields.add("category")
    if options.source:
        fields.add("source")
    return frozenset(fields)


# ------------------------------------------------------------------
# Fuzzy match
# ------------------------------------------------------------------


def similarity(a: str, b: str) -> float:
    """Case-insensitive similarity in [0, 1].

    1.0 for equal strings, 0.8 when one contains the other (3+ characters),
    otherwise normalised Levenshtein similarity.
    """
    s1, s2 = a.lower().strip(), b.lower().strip()
    if not s1 or not s2:
        return 0.0
    if s1 == s2:
        return 1.0
    if min(len(s1), len(s2)) >= 3 and (s1 in s2 or s2 in s1):
        return 0.8
    return Levenshtein.normalized_similarity(s1, s2)


class FuzzyMatchStrategy(StrategyExecutor):
    """Edit-distance-tolerant matching of the query terms against identifier fields."""

    strategy = Strategy.FUZZY

    def __init__(self, store: RecordStore | None, scan_limit: int = 500) -> None:
        self._store = store
        self._scan_limit = scan_limit

    @property
    def available(self) -> bool:
        return self._store is not None

    def _search(
        self, classification: QueryClassification, options: SearchOptions
    ) -> list[Candidate]:
        if self._store is None:
            raise BackendUnavailable("records", "no record store configured")
        terms: list[str] = []
        for term in (classification.query, *_code_terms(classification),
                     *classification.entities.names):
            if term and term not in terms:
                terms.append(term)

        records = self._store.find(
            RecordFilter(all_of=_scope_filters(options)), limit=self._scan_limit
        )

        candidates: list[Candidate] = []
        for record in records:
            best, best_field = 0.0, ""
            for field_name, weight in FUZZY_FIELD_WEIGHTS.items():
                value = getattr(record, field_name)
                if not value:
                    continue
                for term in terms:
                    score = weight * similarity(term, value)
                    if score > best:
                        best, best_field = score, field_name
            if best > options.fuzzy_threshold:
                candidates.append(
                    _record_candidate(record, best, self.strategy, frozenset({best_field}))
                )

        candidates.sort(key=lambda c: (-c.score, c.document_id))
        return candidates[: options.top_k]


# ------------------------------------------------------------------
# Semantic vector
# ------------------------------------------------------------------


class SemanticVectorStrategy(StrategyExecutor):
    """Embed up to three expanded queries and query the vector store.

    Hits are grouped by record code; each record keeps its best-scoring chunk.
    """

    strategy = Strategy.SEMANTIC

    def __init__(self, vectors: VectorStore | None, embedder: Embedder | None) -> None:
        self._vectors = vectors
        self._embedder = embedder

    @property
    def available(self) -> bool:
        return self._vectors is not None and self._embedder is not None

    def _search(
        self, classification: QueryClassification, options: SearchOptions
    ) -> list[Candidate]:
        if self._vectors is None or self._embedder is None:
            raise BackendUnavailable("vectors", "no vector store or embedder configured")
        metadata_filter = {
            k: v
            for k, v in (
                ("category", options.category),
                ("source", options.source),
                ("exclude_owner", options.exclude_owner),
            )
            if v is not None
        }
        queries = classification.expanded_queries[:SEMANTIC_MAX_QUERIES] or [classification.query]

        best: dict[str, Candidate] = {}
        for query in queries:
            embedding = self._embedder.embed(query)
            hits = self._vectors.query(embedding, options.top_k * 2, metadata_filter)
            for hit in hits:
                if hit.score < options.similarity_threshold:
                    continue
                metadata = dict(hit.metadata)
                text = metadata.pop("text", "")
                doc_id = str(metadata.get("record_code") or hit.id)
                current = best.get(doc_id)
                if current is not None and current.score >= hit.score:
                    continue
                best[doc_id] = Candidate(
                    document_id=doc_id,
                    content=text,
                    score=hit.score,
                    strategy_tags=frozenset({self.strategy}),
                    metadata=metadata,
                    matched_fields=frozenset(metadata.get("source_fields", ())),
                )

        candidates = sorted(best.values(), key=lambda c: (-c.score, c.document_id))
        return candidates[: options.top_k]
