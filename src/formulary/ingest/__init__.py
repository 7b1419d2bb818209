"""Formulary ingest pipeline: record loader, chunk builder, index writer."""

from formulary.ingest.chunker import ChunkBuilder, ChunkerConfig, chunk_stats
from formulary.ingest.index_writer import IndexResult, IndexWriter
from formulary.ingest.records import load_records

__all__ = [
    "ChunkBuilder",
    "ChunkerConfig",
    "IndexResult",
    "IndexWriter",
    "chunk_stats",
    "load_records",
]
