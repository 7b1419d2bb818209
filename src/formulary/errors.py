"""Formulary error taxonomy.

Only ``ConfigurationError`` is meant to reach a caller of the search engine.
The other failures are recovered inside the pipeline and surface as log
warnings or as fields of the ``SearchResponse``.
"""

from __future__ import annotations


class FormularyError(Exception):
    """Base class for all Formulary errors."""


class ConfigurationError(FormularyError, ValueError):
    """Invalid or missing configuration. Raised before any backend call."""


class BackendUnavailable(FormularyError):
    """A record store, vector store or embedding service call failed.

    Attributes:
        backend: Short backend name (``records``, ``vectors``, ``embedding``).
    """

    def __init__(self, backend: str, message: str) -> None:
        super().__init__(f"{backend} backend unavailable: {message}")
        self.backend = backend


class ClassificationFailure(FormularyError):
    """Query classification failed. Never propagated out of the classifier."""


class RerankFailure(FormularyError):
    """The reranker could not score the candidates."""


class PersonalizationFailure(FormularyError):
    """User preferences could not be applied."""


class SearchUnavailable(FormularyError):
    """Every enabled strategy failed and no fallback candidates were supplied.

    Raised only by ``SearchResponse.raise_for_status()``; ``search()`` itself
    reports the condition through ``SearchResponse.status``.
    """
