"""Hybrid search engine.

Pipeline per request:

  classify -> {exact, metadata, fuzzy, semantic in parallel} -> merge
           -> rerank (optional) -> personalize (optional) -> final rank -> filter

Strategies run on an engine-owned thread pool. The caller's timeout and
cancel event bound the wait; strategies still running at that point are
abandoned and whatever finished is merged. With ``short_circuit_exact`` an
exact hit scoring >= 0.95 ends the wait and only the exact results are used.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field, replace
from typing import Any

from formulary.db.repository import Repository
from formulary.errors import ConfigurationError
from formulary.rag.backends import (
    Embedder,
    LiteLLMEmbedder,
    RecordStore,
    SqliteRecordStore,
    SqliteVectorStore,
    VectorStore,
)
from formulary.rag.classifier import QueryClassifier
from formulary.rag.merger import ResultMerger
from formulary.rag.models import (
    Candidate,
    QueryClassification,
    SearchOptions,
    SearchResponse,
    SearchStatus,
    Strategy,
)
from formulary.rag.personalization import PersonalizationAdjuster
from formulary.rag.ranking import FinalRanker, ResultFilter
from formulary.rag.reranker import LiteLLMRerankScorer, Reranker
from formulary.rag.strategies import (
    ExactMatchStrategy,
    FuzzyMatchStrategy,
    MetadataFilterStrategy,
    SemanticVectorStrategy,
    StrategyExecutor,
    StrategyOutcome,
)

logger = logging.getLogger(__name__)

SHORT_CIRCUIT_SCORE = 0.95

# How often the wait loop checks the caller's cancel event.
_CANCEL_POLL_SECONDS = 0.05


@dataclass
class SearchMetrics:
    """Process-level counters, updated after every search."""

    total_searches: int = 0
    average_latency_ms: float = 0.0
    rerank_usage: int = 0
    unavailable: int = 0
    strategy_distribution: dict[str, int] = field(
        default_factory=lambda: {s.value: 0 for s in Strategy}
    )

    def as_dict(self) -> dict[str, Any]:
        return {
            "total_searches": self.total_searches,
            "average_latency_ms": round(self.average_latency_ms, 2),
            "rerank_usage": self.rerank_usage,
            "unavailable": self.unavailable,
            "strategy_distribution": dict(self.strategy_distribution),
        }


class HybridSearchEngine:
    """Run the hybrid retrieval pipeline over injected backends.

    Args:
        record_store: Backend for exact, metadata and fuzzy strategies.
        vector_store: Backend for the semantic strategy.
        embedder: Query embedding service for the semantic strategy.
        reranker: Reranker used when ``options.rerank`` is set.
        defaults: Options used when ``search`` is called without options.
        max_workers: Threads per strategy pool. Each strategy gets its own pool,
            so a hung backend only starves its own strategy.
        exact_limit: Maximum records fetched by the exact strategy.
        fuzzy_scan_limit: Maximum records scanned by the fuzzy strategy.
    """

    def __init__(
        self,
        record_store: RecordStore | None = None,
        vector_store: VectorStore | None = None,
        embedder: Embedder | None = None,
        *,
        classifier: QueryClassifier | None = None,
        merger: ResultMerger | None = None,
        reranker: Reranker | None = None,
        personalizer: PersonalizationAdjuster | None = None,
        ranker: FinalRanker | None = None,
        result_filter: ResultFilter | None = None,
        defaults: SearchOptions | None = None,
        max_workers: int = 4,
        exact_limit: int = 10,
        fuzzy_scan_limit: int = 500,
    ) -> None:
        self._executors: dict[Strategy, StrategyExecutor] = {
            Strategy.EXACT: ExactMatchStrategy(record_store, limit=exact_limit),
            Strategy.METADATA: MetadataFilterStrategy(record_store),
            Strategy.FUZZY: FuzzyMatchStrategy(record_store, scan_limit=fuzzy_scan_limit),
            Strategy.SEMANTIC: SemanticVectorStrategy(vector_store, embedder),
        }
        self._classifier = classifier or QueryClassifier()
        self._merger = merger or ResultMerger()
        self._reranker = reranker or Reranker()
        self._personalizer = personalizer or PersonalizationAdjuster()
        self._ranker = ranker or FinalRanker()
        self._filter = result_filter or ResultFilter()
        self.defaults = defaults or SearchOptions()

        self._pools: dict[Strategy, ThreadPoolExecutor] = {
            strategy: ThreadPoolExecutor(
                max_workers=max_workers,
                thread_name_prefix=f"formulary-{strategy.value}",
            )
            for strategy in self._executors
        }
        self._metrics = SearchMetrics()
        self._metrics_lock = threading.Lock()
        self._closed = False

    @classmethod
    def from_config(cls, cfg: Any, conn: sqlite3.Connection) -> HybridSearchEngine:
        """Build an engine over the SQLite knowledge base and LiteLLM services.

        The record store and vector store share *conn* and one lock.
        """
        repo = Repository(conn)
        lock = threading.Lock()
        scorer = LiteLLMRerankScorer(cfg.rerank.model) if cfg.rerank.model else None
        return cls(
            record_store=SqliteRecordStore(repo, lock),
            vector_store=SqliteVectorStore(
                repo, cfg.embedding.model, cfg.embedding.dimensions, lock
            ),
            embedder=LiteLLMEmbedder(cfg.embedding.model),
            reranker=Reranker(scorer),
            defaults=SearchOptions.from_config(cfg),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        """Shut down the strategy pools. In-flight strategies are abandoned."""
        if not self._closed:
            self._closed = True
            for pool in self._pools.values():
                pool.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> HybridSearchEngine:
        return self

    def __exit__(self, *args: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def available_strategies(self) -> list[Strategy]:
        return [s for s, ex in self._executors.items() if ex.available]

    def metrics(self) -> dict[str, Any]:
        with self._metrics_lock:
            return self._metrics.as_dict()

    def search(self, query: str, options: SearchOptions | None = None) -> SearchResponse:
        """Run the full pipeline for *query*.

        Raises:
            ConfigurationError: If *options* are invalid or no enabled strategy
                has a backend. Raised before any backend call.
        """
        if self._closed:
            raise RuntimeError("HybridSearchEngine is closed")
        options = options or replace(self.defaults)
        options.validate()
        runnable = self._runnable(options)

        start = time.perf_counter()
        classification = self._classifier.classify(query)
        if not query or not query.strip():
            response = SearchResponse([], classification, SearchStatus.NO_MATCHES)
            return self._finish(response, start)

        outcomes, timed_out, short_circuited = self._run_strategies(
            runnable, classification, options
        )
        failed = [s for s, o in outcomes.items() if o.failed]
        succeeded = [s for s, o in outcomes.items() if not o.failed]

        if short_circuited:
            result_lists = [outcomes[Strategy.EXACT].candidates]
        else:
            result_lists = [outcomes[s].candidates for s in Strategy if s in outcomes]

        if not succeeded:
            if not options.fallback:
                logger.warning("Search unavailable: no strategy completed for %r", query)
                response = SearchResponse(
                    [],
                    classification,
                    SearchStatus.UNAVAILABLE,
                    failed_strategies=failed,
                    timed_out_strategies=timed_out,
                )
                return self._finish(response, start)
            logger.warning("All strategies failed, using %d fallback candidates",
                           len(options.fallback))
            result_lists = [options.fallback]

        response = self._post_process(classification, result_lists, options)
        response.strategy_counts = {s: len(o.candidates) for s, o in outcomes.items()}
        response.failed_strategies = failed
        response.timed_out_strategies = timed_out
        response.short_circuited = short_circuited
        return self._finish(response, start)

    def search_and_format(self, query: str, options: SearchOptions | None = None) -> str:
        """Run ``search`` and render the result as plain text."""
        return format_response(self.search(query, options))

    # ------------------------------------------------------------------
    # Strategy fan-out
    # ------------------------------------------------------------------

    def _runnable(self, options: SearchOptions) -> list[StrategyExecutor]:
        runnable = []
        for strategy in options.enabled_strategies:
            executor = self._executors[strategy]
            if executor.available:
                runnable.append(executor)
            else:
                logger.debug("Skipping %s strategy: no backend configured", strategy.value)
        if not runnable:
            raise ConfigurationError(
                "No enabled search strategy has a configured backend "
                f"(enabled: {', '.join(s.value for s in options.enabled_strategies)})"
            )
        return runnable

    def _run_strategies(
        self,
        runnable: list[StrategyExecutor],
        classification: QueryClassification,
        options: SearchOptions,
    ) -> tuple[dict[Strategy, StrategyOutcome], list[Strategy], bool]:
        futures: dict[Future[StrategyOutcome], Strategy] = {
            self._pools[ex.strategy].submit(ex.run, classification, options): ex.strategy
            for ex in runnable
        }
        outcomes: dict[Strategy, StrategyOutcome] = {}
        pending = set(futures)
        deadline = time.monotonic() + options.timeout
        short_circuited = False
        cancel = options.cancel_event

        while pending and not short_circuited:
            if cancel is not None and cancel.is_set():
                logger.info("Search cancelled with %d strategies in flight", len(pending))
                break
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logger.warning(
                    "Search timed out after %.1fs; abandoning: %s",
                    options.timeout,
                    ", ".join(sorted(futures[f].value for f in pending)),
                )
                break
            timeout = min(remaining, _CANCEL_POLL_SECONDS) if cancel is not None else remaining
            done, pending = wait(pending, timeout=timeout, return_when=FIRST_COMPLETED)
            for future in done:
                outcome = future.result()
                outcomes[outcome.strategy] = outcome
                if (
                    options.short_circuit_exact
                    and outcome.strategy is Strategy.EXACT
                    and any(c.score >= SHORT_CIRCUIT_SCORE for c in outcome.candidates)
                ):
                    short_circuited = True

        for future in pending:
            future.cancel()

        if short_circuited:
            logger.debug("Exact match >= %.2f, skipping remaining strategies",
                         SHORT_CIRCUIT_SCORE)
            return outcomes, [], True

        timed_out = [s for s in Strategy if s in {futures[f] for f in pending}]
        return outcomes, timed_out, False

    # ------------------------------------------------------------------
    # Post-merge stages
    # ------------------------------------------------------------------

    def _post_process(
        self,
        classification: QueryClassification,
        result_lists: list[list[Candidate]],
        options: SearchOptions,
    ) -> SearchResponse:
        candidates = self._merger.merge(*result_lists)
        logger.debug("Merged into %d candidates", len(candidates))

        reranked = False
        if options.rerank and candidates:
            candidates = self._reranker.rerank(classification.query, candidates)
            reranked = any(c.rerank_score is not None for c in candidates)

        personalized = False
        if options.user_id and options.preferences is not None:
            adjusted = self._personalizer.apply(candidates, options.preferences)
            personalized = any(a is not c for a, c in zip(adjusted, candidates))
            candidates = adjusted

        ranked = self._ranker.rank(candidates, options)
        filtered = self._filter.apply(ranked, options.threshold, options.top_k)

        if filtered.candidates:
            status = SearchStatus.OK
        elif filtered.total == 0:
            status = SearchStatus.NO_MATCHES
        else:
            status = SearchStatus.BELOW_THRESHOLD
            logger.debug("All %d candidates below threshold %.2f",
                         filtered.total, options.threshold)

        return SearchResponse(
            candidates=filtered.candidates,
            classification=classification,
            status=status,
            total_candidates=filtered.total,
            reranked=reranked,
            personalized=personalized,
        )

    def _finish(self, response: SearchResponse, start: float) -> SearchResponse:
        response.elapsed_ms = (time.perf_counter() - start) * 1000
        with self._metrics_lock:
            m = self._metrics
            m.total_searches += 1
            m.average_latency_ms += (response.elapsed_ms - m.average_latency_ms) / m.total_searches
            if response.reranked:
                m.rerank_usage += 1
            if response.status is SearchStatus.UNAVAILABLE:
                m.unavailable += 1
            for strategy in response.strategy_counts:
                if strategy not in response.failed_strategies:
                    m.strategy_distribution[strategy.value] += 1
        logger.debug("Search %r: %s, %d results in %.1f ms",
                     response.classification.query, response.status.value,
                     len(response), response.elapsed_ms)
        return response


# ------------------------------------------------------------------
# Formatting
# ------------------------------------------------------------------

_FORMAT_FIELDS: tuple[tuple[str, str], ...] = (
    ("code", "Material Code"),
    ("inci_name", "INCI Name"),
    ("supplier", "Supplier"),
    ("company", "Company"),
    ("cost", "Cost"),
    ("benefits", "Benefits"),
    ("details", "Details"),
)


def format_response(response: SearchResponse) -> str:
    """Render *response* as numbered plain text."""
    query = response.classification.query
    if response.status is SearchStatus.UNAVAILABLE:
        return "Search is currently unavailable: every search strategy failed."
    if response.status is SearchStatus.NO_MATCHES:
        return f'No matching ingredients found for "{query}".'
    if response.status is SearchStatus.BELOW_THRESHOLD:
        return (
            f'No results for "{query}" passed the relevance threshold '
            f"({response.total_candidates} candidates found below it)."
        )

    blocks = []
    for i, c in enumerate(response.candidates, start=1):
        meta = c.metadata
        title = meta.get("trade_name") or meta.get("code") or c.document_id or "Unknown material"
        lines = [f"{i}. {title} (match: {c.label}, score: {c.final_score or 0.0:.3f})"]
        for key, label in _FORMAT_FIELDS:
            if meta.get(key):
                lines.append(f"   {label}: {meta[key]}")
        if c.matched_fields:
            lines.append(f"   Matched fields: {', '.join(sorted(c.matched_fields))}")
        blocks.append("\n".join(lines))
    return f'Search results for "{query}":\n\n' + "\n\n".join(blocks)
