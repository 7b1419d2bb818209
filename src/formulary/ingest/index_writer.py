"""Index writer: record -> chunks -> embeddings -> vector store.

Re-ingesting a record replaces it wholesale: the record row is upserted,
every previous chunk and embedding for its code is deleted, and the new
chunk set is embedded and written.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from formulary.db.models import IngredientRecord
from formulary.db.repository import Repository
from formulary.errors import BackendUnavailable
from formulary.ingest.chunker import ChunkBuilder
from formulary.rag.backends import LiteLLMEmbedder, SqliteVectorStore

logger = logging.getLogger(__name__)


@dataclass
class IndexResult:
    """Outcome of one ``IndexWriter.write`` call."""

    records: int = 0
    chunks: int = 0
    replaced_chunks: int = 0
    failed: list[str] = field(default_factory=list)


class IndexWriter:
    """Write records and their embedded chunks into the knowledge base.

    Args:
        repo:     Open Repository instance (record rows).
        store:    Vector store receiving chunks + embeddings.
        embedder: Embedding adapter; texts are embedded per record in one batch.
        builder:  Chunk builder (defaults to ``ChunkBuilder()``).
    """

    def __init__(
        self,
        repo: Repository,
        store: SqliteVectorStore,
        embedder: LiteLLMEmbedder,
        builder: ChunkBuilder | None = None,
    ) -> None:
        self._repo = repo
        self._store = store
        self._embedder = embedder
        self._builder = builder or ChunkBuilder()

    def write(self, records: list[IngredientRecord]) -> IndexResult:
        """Index *records*. A record whose embedding fails is recorded in ``failed``.

        Raises:
            BackendUnavailable: If the vector store itself is unreachable.
        """
        result = IndexResult()
        for record in records:
            chunks = self._builder.chunk_record(record)
            try:
                embeddings = self._embedder.embed_batch([c.text for c in chunks])
            except BackendUnavailable as exc:
                logger.warning("Embedding failed for %s: %s", record.code, exc)
                result.failed.append(record.code)
                continue

            self._repo.upsert_record(record)
            result.replaced_chunks += self._store.delete_record(record.code)
            self._store.upsert(chunks, embeddings)

            result.records += 1
            result.chunks += len(chunks)
            logger.debug("Indexed %s: %d chunks", record.code, len(chunks))
        return result

    def remove(self, code: str) -> int:
        """Delete *code* and all of its chunks/embeddings. Returns chunks removed."""
        removed = self._store.delete_record(code)
        self._repo.delete_record(code)
        return removed
