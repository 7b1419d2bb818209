"""Shared pytest fixtures."""

from __future__ import annotations

import pytest

from formulary.db.connection import Database
from formulary.db.models import IngredientRecord, RecordFilter, RecordKind, VectorHit
from formulary.db.repository import Repository
from formulary.db.schema import initialize


@pytest.fixture
def tmp_db(tmp_path):
    """File-based DB in tmp_path with schema initialized, closed after test."""
    db = Database(tmp_path / ".formulary.db")
    conn = db.connect()
    initialize(conn)
    yield conn
    conn.close()


# ------------------------------------------------------------------
# Sample data
# ------------------------------------------------------------------


def sample_records() -> list[IngredientRecord]:
    return [
        IngredientRecord(
            code="RM000001",
            trade_name="Hyaluronic Acid Powder",
            inci_name="Sodium Hyaluronate",
            supplier="BioChem Co",
            company="BioChem Holdings",
            cost="4500 THB/kg",
            benefits="Deep moisturizing and hydrating",
            category="humectant",
        ),
        IngredientRecord(
            code="RM000002",
            trade_name="Ginger Extract",
            inci_name="Zingiber Officinale Root Extract",
            supplier="Herbal Source",
            benefits="Soothing, anti-inflammatory",
            category="extract",
        ),
        IngredientRecord(
            code="RM000003",
            trade_name="Niacinamide PC",
            inci_name="Niacinamide",
            benefits="Brightening and whitening",
            category="active",
        ),
        IngredientRecord(
            code="RC00A008",
            trade_name="Aloe Vera Gel",
            inci_name="Aloe Barbadensis Leaf Juice",
            benefits="Soothing moisturizing gel",
            category="extract",
            kind=RecordKind.REGISTRY,
            source="registry",
        ),
    ]


# ------------------------------------------------------------------
# In-memory backends
# ------------------------------------------------------------------


class InMemoryRecordStore:
    """RecordStore over a list, evaluating filters in Python."""

    def __init__(self, records: list[IngredientRecord]) -> None:
        self.records = list(records)
        self.calls: list[RecordFilter] = []

    def find(self, flt: RecordFilter, limit: int) -> list[IngredientRecord]:
        self.calls.append(flt)
        hits = [r for r in self.records if flt.matches(r)]
        return sorted(hits, key=lambda r: r.code)[:limit]


class StaticVectorStore:
    """VectorStore returning canned hits, honouring the category filter."""

    def __init__(self, hits: list[VectorHit]) -> None:
        self.hits = list(hits)
        self.filters: list[dict] = []

    def query(self, embedding, top_k, metadata_filter=None):
        flt = metadata_filter or {}
        self.filters.append(flt)
        hits = self.hits
        if "category" in flt:
            hits = [h for h in hits if h.metadata.get("category") == flt["category"]]
        return sorted(hits, key=lambda h: -h.score)[:top_k]


class RecordingEmbedder:
    """Embedder returning a fixed vector and remembering what it embedded."""

    def __init__(self, dimensions: int = 4) -> None:
        self.dimensions = dimensions
        self.texts: list[str] = []

    def embed(self, text: str) -> list[float]:
        self.texts.append(text)
        return [0.1] * self.dimensions

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        self.texts.extend(texts)
        return [[0.1 * (i + 1)] * self.dimensions for i in range(len(texts))]


def semantic_hit(code: str, score: float, text: str = "", **metadata) -> VectorHit:
    meta = {"record_code": code, "code": code, "text": text or f"Material Code: {code}",
            "source_fields": ["code"], **metadata}
    return VectorHit(id=f"{code}_combined", score=score, metadata=meta)


@pytest.fixture
def records() -> list[IngredientRecord]:
    return sample_records()


@pytest.fixture
def record_store(records) -> InMemoryRecordStore:
    return InMemoryRecordStore(records)


@pytest.fixture
def embedder() -> RecordingEmbedder:
    return RecordingEmbedder()


@pytest.fixture
def cli_env(tmp_path, monkeypatch):
    """Run CLI commands from tmp_path with no global config and no API keys."""
    monkeypatch.setattr("formulary.config._GLOBAL_CONFIG_PATH", tmp_path / "no-global.yaml")
    for var in ("OPENAI_API_KEY", "FORMULARY_DB", "FORMULARY_EMBEDDING_MODEL",
                "FORMULARY_RERANK_MODEL"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


def make_db(path, records=None):
    """Create an initialized knowledge base at *path* holding *records*."""
    conn = Database(path).connect()
    initialize(conn)
    repo = Repository(conn)
    for record in records or []:
        repo.upsert_record(record)
    conn.close()
    return path
