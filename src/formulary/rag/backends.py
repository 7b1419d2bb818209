"""Backend contracts used by the search engine, plus their SQLite/LiteLLM adapters.

The engine only depends on the three Protocols below. Adapters are built once
per process (see ``HybridSearchEngine.from_config``) and injected at engine
construction; tests inject in-memory fakes instead.
"""

from __future__ import annotations

import sqlite3
import threading
from typing import Any, Protocol, runtime_checkable

from formulary.db.models import Chunk, IngredientRecord, RecordFilter, VectorHit
from formulary.db.repository import Repository
from formulary.db.vectors import (
    ensure_vec_table,
    model_to_slug,
    vec_table_exists,
    vec_table_name,
)
from formulary.errors import BackendUnavailable
from formulary.rag import llm_client


# ------------------------------------------------------------------
# Contracts
# ------------------------------------------------------------------


@runtime_checkable
class RecordStore(Protocol):
    def find(self, flt: RecordFilter, limit: int) -> list[IngredientRecord]: ...


@runtime_checkable
class VectorStore(Protocol):
    def query(
        self,
        embedding: list[float],
        top_k: int,
        metadata_filter: dict[str, Any] | None = None,
    ) -> list[VectorHit]: ...


@runtime_checkable
class Embedder(Protocol):
    def embed(self, text: str) -> list[float]: ...


# ------------------------------------------------------------------
# SQLite adapters
# ------------------------------------------------------------------


class SqliteRecordStore:
    """RecordStore over the ``records`` table."""

    def __init__(self, repo: Repository, lock: threading.Lock | None = None) -> None:
        self._repo = repo
        self._lock = lock or threading.Lock()

    def find(self, flt: RecordFilter, limit: int) -> list[IngredientRecord]:
        try:
            with self._lock:
                return self._repo.find_records(flt, limit=limit)
        except sqlite3.Error as exc:
            raise BackendUnavailable("records", str(exc)) from exc


class SqliteVectorStore:
    """VectorStore over a per-model sqlite-vec table.

    Scores are cosine similarities, ``1 - distance`` clamped to [0, 1].
    Supported ``metadata_filter`` keys: ``category``, ``source``,
    ``exclude_owner``.
    """

    def __init__(
        self,
        repo: Repository,
        model: str,
        dimensions: int,
        lock: threading.Lock | None = None,
    ) -> None:
        self._repo = repo
        self._model = model
        self._dimensions = dimensions
        self._slug = model_to_slug(model)
        self._lock = lock or threading.Lock()

    @property
    def table(self) -> str:
        return vec_table_name(self._slug)

    def query(
        self,
        embedding: list[float],
        top_k: int,
        metadata_filter: dict[str, Any] | None = None,
    ) -> list[VectorHit]:
        flt = metadata_filter or {}
        try:
            with self._lock:
                if not vec_table_exists(self._repo.connection, self.table):
                    raise BackendUnavailable(
                        "vectors",
                        f"no embeddings for model '{self._model}'. "
                        "Run 'formulary ingest' first to populate the vector index.",
                    )
                rows = self._repo.search_vec(
                    self.table,
                    embedding,
                    limit=top_k,
                    category=flt.get("category"),
                    source=flt.get("source"),
                    exclude_owner=flt.get("exclude_owner"),
                )
        except sqlite3.Error as exc:
            raise BackendUnavailable("vectors", str(exc)) from exc

        return [_to_hit(chunk, distance) for chunk, distance in rows]

    def upsert(self, chunks: list[Chunk], embeddings: list[list[float]]) -> list[int]:
        """Store *chunks* with their *embeddings*. Returns the new chunk rowids."""
        if len(chunks) != len(embeddings):
            raise ValueError(
                f"{len(chunks)} chunks but {len(embeddings)} embeddings"
            )
        rowids: list[int] = []
        try:
            with self._lock:
                table = ensure_vec_table(self._repo.connection, self._slug, self._dimensions)
                for chunk, embedding in zip(chunks, embeddings):
                    rowid = self._repo.add_chunk(chunk)
                    self._repo.add_embedding(table, rowid, embedding)
                    rowids.append(rowid)
        except sqlite3.Error as exc:
            raise BackendUnavailable("vectors", str(exc)) from exc
        return rowids

    def delete_record(self, code: str) -> int:
        """Drop every chunk and embedding of *code*. Returns chunks removed."""
        try:
            with self._lock:
                return self._repo.delete_chunks_by_record(code)
        except sqlite3.Error as exc:
            raise BackendUnavailable("vectors", str(exc)) from exc


def _to_hit(chunk: Chunk, distance: float) -> VectorHit:
    score = max(0.0, min(1.0, 1.0 - float(distance)))
    metadata = dict(chunk.metadata)
    metadata.setdefault("record_code", chunk.record_code)
    metadata["chunk_type"] = chunk.chunk_type.value
    metadata["source_fields"] = sorted(chunk.source_fields)
    metadata["text"] = chunk.text
    return VectorHit(id=chunk.id, score=score, metadata=metadata)


# ------------------------------------------------------------------
# Embedding adapter
# ------------------------------------------------------------------


class LiteLLMEmbedder:
    """Embedder backed by ``litellm.embedding``.

    Any provider error (auth, rate limit, connection, timeout) is reported as
    ``BackendUnavailable``.
    """

    def __init__(self, model: str, num_retries: int = 3) -> None:
        self.model = model
        self._num_retries = num_retries

    def embed(self, text: str) -> list[float]:
        try:
            return llm_client.embed(self.model, text, num_retries=self._num_retries)
        except Exception as exc:
            raise BackendUnavailable("embedding", str(exc)) from exc

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        try:
            return llm_client.embed_batch(self.model, texts, num_retries=self._num_retries)
        except Exception as exc:
            raise BackendUnavailable("embedding", str(exc)) from exc
