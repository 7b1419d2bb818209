"""Request/response models for the hybrid search pipeline."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Iterator

from formulary.errors import ConfigurationError, SearchUnavailable


class Strategy(str, Enum):
    """The closed set of retrieval strategies."""

    EXACT = "exact"
    METADATA = "metadata"
    FUZZY = "fuzzy"
    SEMANTIC = "semantic"


# Tie-break order: lower wins.
STRATEGY_PRIORITY: dict[Strategy, int] = {
    Strategy.EXACT: 0,
    Strategy.METADATA: 1,
    Strategy.FUZZY: 2,
    Strategy.SEMANTIC: 3,
}


class QueryType(str, Enum):
    EXACT_CODE = "exact_code"
    NATURAL_LANGUAGE = "natural_language"
    MIXED = "mixed"


class SearchStrategyHint(str, Enum):
    """Retrieval approach the classifier considers most promising."""

    EXACT_MATCH = "exact_match"
    FUZZY_MATCH = "fuzzy_match"
    SEMANTIC_SEARCH = "semantic_search"
    HYBRID = "hybrid"


class Language(str, Enum):
    THAI = "thai"
    ENGLISH = "english"
    MIXED = "mixed"


# ------------------------------------------------------------------
# Classification
# ------------------------------------------------------------------


@dataclass
class ExtractedEntities:
    """Identifiers pulled out of a query.

    Attributes:
        codes: Normalised material codes (upper case, separators removed).
        raw_codes: Codes as written in the query.
        names: Trade/INCI name candidates.
        properties: Functional properties (moisturizing, anti-aging, ...).
    """

    codes: list[str] = field(default_factory=list)
    raw_codes: list[str] = field(default_factory=list)
    names: list[str] = field(default_factory=list)
    properties: list[str] = field(default_factory=list)

    def is_empty(self) -> bool:
        return not (self.codes or self.names)


@dataclass
class QueryClassification:
    """Per-request classification of a raw query. Never persisted."""

    query: str
    query_type: QueryType
    entities: ExtractedEntities
    search_strategy: SearchStrategyHint
    expanded_queries: list[str]
    confidence: float
    language: Language = Language.ENGLISH
    matched_patterns: list[str] = field(default_factory=list)

    @classmethod
    def fallback(cls, query: str) -> QueryClassification:
        """Safe default used when classification fails."""
        return cls(
            query=query,
            query_type=QueryType.NATURAL_LANGUAGE,
            entities=ExtractedEntities(),
            search_strategy=SearchStrategyHint.SEMANTIC_SEARCH,
            expanded_queries=[query],
            confidence=0.1,
        )


# ------------------------------------------------------------------
# Candidates
# ------------------------------------------------------------------


@dataclass
class Candidate:
    """One scored search result.

    ``score`` is the raw strategy score, later replaced by the personalised
    score. ``final_score`` is set by the final ranker and is the value the
    threshold filter compares against.
    """

    document_id: str | None
    content: str
    score: float
    strategy_tags: frozenset[Strategy]
    metadata: dict[str, Any] = field(default_factory=dict)
    matched_fields: frozenset[str] = frozenset()
    rerank_score: float | None = None
    combined_score: float | None = None
    final_score: float | None = None

    @property
    def is_hybrid(self) -> bool:
        return len(self.strategy_tags) > 1

    @property
    def label(self) -> str:
        """``hybrid`` for multi-strategy hits, else the single strategy name."""
        if self.is_hybrid:
            return "hybrid"
        return next(iter(self.strategy_tags)).value if self.strategy_tags else "unknown"

    @property
    def best_strategy_rank(self) -> int:
        """Highest-priority strategy among the tags (lower = stronger)."""
        return min((STRATEGY_PRIORITY[s] for s in self.strategy_tags), default=len(Strategy))

    def evolve(self, **changes: Any) -> Candidate:
        return replace(self, **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "document_id": self.document_id,
            "content": self.content,
            "score": self.score,
            "final_score": self.final_score,
            "rerank_score": self.rerank_score,
            "combined_score": self.combined_score,
            "strategy": self.label,
            "strategy_tags": sorted(s.value for s in self.strategy_tags),
            "matched_fields": sorted(self.matched_fields),
            "metadata": self.metadata,
        }


# ------------------------------------------------------------------
# Options
# ------------------------------------------------------------------


class Complexity(str, Enum):
    BASIC = "basic"
    INTERMEDIATE = "intermediate"
    ADVANCED = "advanced"


@dataclass
class UserPreferences:
    """Caller-supplied preferences used by the personalization stage."""

    categories: list[str] = field(default_factory=list)
    interests: list[str] = field(default_factory=list)
    complexity: Complexity | None = None


@dataclass
class SearchOptions:
    """Per-request search options. Every field has a default.

    Attributes:
        top_k: Maximum number of results returned.
        threshold: Minimum final score a result needs to be returned.
        similarity_threshold: Minimum vector similarity for semantic hits.
        enable_exact: Run the exact-match strategy.
        enable_metadata: Run the metadata-filter strategy.
        enable_fuzzy: Run the fuzzy-match strategy.
        enable_semantic: Run the semantic vector strategy.
        boost_weights: Per-strategy multiplier applied by the final ranker.
        fuzzy_threshold: Minimum fuzzy similarity to keep a record.
        semantic_weight: Final-ranking weight for semantic-tagged candidates.
        keyword_weight: Final-ranking weight for keyword (fuzzy) candidates.
        rerank: Run the reranker stage.
        short_circuit_exact: Return exact hits alone when one scores >= 0.95.
        timeout: Seconds to wait for strategies before merging what finished.
        category: Restrict metadata and semantic strategies to one category.
        source: Restrict metadata and semantic strategies to one source tag.
        exclude_owner: Drop semantic chunks owned by this user id.
        user_id: Caller identity; personalization needs it with ``preferences``.
        preferences: User preferences for personalization.
        fallback: Pre-supplied candidates used when every strategy fails.
        cancel_event: Set by the caller to abandon in-flight strategies.
    """

    top_k: int = 10
    threshold: float = 0.3
    similarity_threshold: float = 0.5
    enable_exact: bool = True
    enable_metadata: bool = True
    enable_fuzzy: bool = True
    enable_semantic: bool = True
    boost_weights: dict[Strategy, float] = field(
        default_factory=lambda: {s: 1.0 for s in Strategy}
    )
    fuzzy_threshold: float = 0.6
    semantic_weight: float = 0.6
    keyword_weight: float = 0.4
    rerank: bool = False
    short_circuit_exact: bool = True
    timeout: float = 30.0
    category: str | None = None
    source: str | None = None
    exclude_owner: str | None = None
    user_id: str | None = None
    preferences: UserPreferences | None = None
    fallback: list[Candidate] = field(default_factory=list)
    cancel_event: threading.Event | None = None

    @property
    def enabled_strategies(self) -> list[Strategy]:
        flags = {
            Strategy.EXACT: self.enable_exact,
            Strategy.METADATA: self.enable_metadata,
            Strategy.FUZZY: self.enable_fuzzy,
            Strategy.SEMANTIC: self.enable_semantic,
        }
        return [s for s in Strategy if flags[s]]

    def boost(self, strategy: Strategy) -> float:
        return self.boost_weights.get(strategy, 1.0)

    def validate(self) -> None:
        """Raise ConfigurationError for an invalid combination of options."""
        if not self.enabled_strategies:
            raise ConfigurationError("At least one search strategy must be enabled")
        if self.top_k < 1:
            raise ConfigurationError(f"top_k must be >= 1, got {self.top_k}")
        for name in ("threshold", "similarity_threshold", "fuzzy_threshold",
                     "semantic_weight", "keyword_weight"):
            value = getattr(self, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"{name} must be in [0, 1], got {value}")
        for strategy, weight in self.boost_weights.items():
            if weight < 0:
                raise ConfigurationError(
                    f"boost weight for '{Strategy(strategy).value}' must be >= 0, got {weight}"
                )
        if self.timeout <= 0:
            raise ConfigurationError(f"timeout must be > 0, got {self.timeout}")

    @classmethod
    def from_config(cls, cfg: Any, **overrides: Any) -> SearchOptions:
        """Build options from ``FormularyConfig`` defaults plus *overrides*."""
        s = cfg.search
        options = cls(
            top_k=s.top_k,
            threshold=s.threshold,
            similarity_threshold=s.similarity_threshold,
            boost_weights={Strategy(k): float(v) for k, v in s.boost_weights.items()},
            fuzzy_threshold=s.fuzzy_threshold,
            semantic_weight=s.semantic_weight,
            keyword_weight=s.keyword_weight,
            rerank=cfg.rerank.enabled,
            short_circuit_exact=s.short_circuit_exact,
            timeout=s.timeout,
        )
        return replace(options, **overrides) if overrides else options


# ------------------------------------------------------------------
# Response
# ------------------------------------------------------------------


class SearchStatus(str, Enum):
    OK = "ok"
    NO_MATCHES = "no_matches"  # strategies ran, nothing found
    BELOW_THRESHOLD = "below_threshold"  # found candidates, none passed the threshold
    UNAVAILABLE = "unavailable"  # every strategy failed, no fallback


@dataclass
class SearchResponse:
    """Ordered search result plus pipeline diagnostics. Iterates over candidates."""

    candidates: list[Candidate]
    classification: QueryClassification
    status: SearchStatus
    total_candidates: int = 0
    strategy_counts: dict[Strategy, int] = field(default_factory=dict)
    failed_strategies: list[Strategy] = field(default_factory=list)
    timed_out_strategies: list[Strategy] = field(default_factory=list)
    short_circuited: bool = False
    reranked: bool = False
    personalized: bool = False
    elapsed_ms: float = 0.0

    def __iter__(self) -> Iterator[Candidate]:
        return iter(self.candidates)

    def __len__(self) -> int:
        return len(self.candidates)

    @property
    def filtered_out(self) -> int:
        """Candidates that were found but removed by the threshold or top-k cap."""
        return self.total_candidates - len(self.candidates)

    def raise_for_status(self) -> None:
        """Raise SearchUnavailable if the response reports total pipeline failure."""
        if self.status is SearchStatus.UNAVAILABLE:
            failed = ", ".join(s.value for s in self.failed_strategies) or "all"
            raise SearchUnavailable(f"Search unavailable: strategies failed ({failed})")
