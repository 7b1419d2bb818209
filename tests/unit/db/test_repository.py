"""Tests for the Repository: records, filters, chunks and vec search."""

from __future__ import annotations

import pytest

from formulary.db.models import (
    Chunk,
    ChunkType,
    FieldMatch,
    IngredientRecord,
    MatchMode,
    RecordFilter,
    RecordKind,
)
from formulary.db.repository import Repository
from formulary.db.vectors import ensure_vec_table, model_to_slug


@pytest.fixture
def repo(tmp_db):
    return Repository(tmp_db)


def _record(code="RM000001", trade="Hyaluronic Acid", inci="Sodium Hyaluronate", **kw):
    return IngredientRecord(code=code, trade_name=trade, inci_name=inci, **kw)


def _chunk(code="RM000001", suffix="combined", text="hello world", **meta):
    return Chunk(
        id=f"{code}_{suffix}",
        record_code=code,
        text=text,
        chunk_type=ChunkType.COMBINED_CONTEXT,
        priority=0.85,
        source_fields=frozenset({"code", "trade_name"}),
        metadata=meta,
    )


# ------------------------------------------------------------------
# Records
# ------------------------------------------------------------------

def test_upsert_and_get_record(repo):
    repo.upsert_record(_record(category="humectant", locale={"benefits": "ชุ่มชื้น"}))
    result = repo.get_record("RM000001")
    assert result is not None
    assert result.trade_name == "Hyaluronic Acid"
    assert result.category == "humectant"
    assert result.kind is RecordKind.STOCK
    assert result.locale == {"benefits": "ชุ่มชื้น"}


def test_get_record_not_found(repo):
    assert repo.get_record("nonexistent") is None


def test_upsert_record_replaces_existing(repo):
    repo.upsert_record(_record(trade="Old Name"))
    repo.upsert_record(_record(trade="New Name"))
    assert repo.count_records() == 1
    assert repo.get_record("RM000001").trade_name == "New Name"


def test_list_records_ordered_by_code(repo):
    repo.upsert_record(_record(code="RM000002"))
    repo.upsert_record(_record(code="RM000001"))
    assert [r.code for r in repo.list_records()] == ["RM000001", "RM000002"]
    assert len(repo.list_records(limit=1)) == 1


def test_delete_record(repo):
    repo.upsert_record(_record())
    repo.delete_record("RM000001")
    assert repo.get_record("RM000001") is None


def test_extra_fields_round_trip(repo):
    repo.upsert_record(_record(extra={"moq": 25, "origin": "KR"}))
    assert repo.get_record("RM000001").extra == {"moq": 25, "origin": "KR"}


# ------------------------------------------------------------------
# find_records
# ------------------------------------------------------------------

@pytest.fixture
def populated(repo):
    repo.upsert_record(_record("RM000001", "Hyaluronic Acid", "Sodium Hyaluronate",
                               category="humectant"))
    repo.upsert_record(_record("RM000002", "Ginger Extract", "Zingiber Officinale Root Extract",
                               category="extract"))
    repo.upsert_record(_record("RC00A008", "Aloe Vera Gel", "Aloe Barbadensis Leaf Juice",
                               category="extract", source="registry"))
    return repo


def test_find_records_contains_is_case_insensitive(populated):
    flt = RecordFilter(any_of=(FieldMatch("trade_name", "ginger"),))
    assert [r.code for r in populated.find_records(flt)] == ["RM000002"]


def test_find_records_any_of_is_or(populated):
    flt = RecordFilter(any_of=(
        FieldMatch("code", "rm000001"),
        FieldMatch("inci_name", "aloe"),
    ))
    assert {r.code for r in populated.find_records(flt)} == {"RM000001", "RC00A008"}


def test_find_records_all_of_scopes_any_of(populated):
    flt = RecordFilter(
        any_of=(FieldMatch("inci_name", "extract"), FieldMatch("inci_name", "aloe")),
        all_of=(FieldMatch("source", "registry", MatchMode.EQUALS),),
    )
    assert [r.code for r in populated.find_records(flt)] == ["RC00A008"]


def test_find_records_in_mode(populated):
    flt = RecordFilter(any_of=(FieldMatch("code", ("RM000002", "rc00a008"), MatchMode.IN),))
    assert {r.code for r in populated.find_records(flt)} == {"RM000002", "RC00A008"}


def test_find_records_equals_mode_rejects_partial(populated):
    flt = RecordFilter(any_of=(FieldMatch("trade_name", "ginger", MatchMode.EQUALS),))
    assert populated.find_records(flt) == []


def test_find_records_empty_filter_matches_all(populated):
    assert len(populated.find_records(RecordFilter(), limit=10)) == 3


def test_find_records_respects_limit(populated):
    assert len(populated.find_records(RecordFilter(), limit=2)) == 2


def test_find_records_escapes_like_wildcards(populated):
    flt = RecordFilter(any_of=(FieldMatch("trade_name", "%"),))
    assert populated.find_records(flt) == []


def test_find_records_rejects_unknown_field(populated):
    flt = RecordFilter(any_of=(FieldMatch("extra", "x"),))
    with pytest.raises(ValueError, match="cannot be used"):
        populated.find_records(flt)


def test_filter_matches_agrees_with_sql(populated):
    flt = RecordFilter(
        any_of=(FieldMatch("trade_name", "a"),),
        all_of=(FieldMatch("category", "extract", MatchMode.EQUALS),),
    )
    sql = {r.code for r in populated.find_records(flt)}
    python = {r.code for r in populated.list_records() if flt.matches(r)}
    assert sql == python


# ------------------------------------------------------------------
# Chunks
# ------------------------------------------------------------------

def test_add_chunk_returns_rowid(repo):
    rowid = repo.add_chunk(_chunk())
    assert isinstance(rowid, int)
    assert rowid >= 1


def test_get_chunk_by_rowid(repo):
    rowid = repo.add_chunk(_chunk(text="Ginger", category="extract"))
    chunk = repo.get_chunk_by_rowid(rowid)
    assert chunk is not None
    assert chunk.text == "Ginger"
    assert chunk.chunk_type is ChunkType.COMBINED_CONTEXT
    assert chunk.source_fields == frozenset({"code", "trade_name"})
    assert chunk.metadata == {"category": "extract"}


def test_count_chunks_by_type(repo):
    repo.add_chunk(_chunk(suffix="a"))
    repo.add_chunk(_chunk(suffix="b"))
    assert repo.count_chunks() == 2
    assert repo.count_chunks_by_type() == {"combined_context": 2}


def test_delete_chunks_by_record_removes_embeddings(repo, tmp_db):
    table = ensure_vec_table(tmp_db, model_to_slug("test/model"), dimensions=4)
    rowid = repo.add_chunk(_chunk())
    repo.add_embedding(table, rowid, [0.1, 0.2, 0.3, 0.4])
    repo.add_chunk(_chunk(code="RM000002"))

    assert repo.delete_chunks_by_record("RM000001") == 1
    assert repo.list_chunks_by_record("RM000001") == []
    assert len(repo.list_chunks_by_record("RM000002")) == 1
    count = tmp_db.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0]
    assert count == 0


def test_delete_chunks_by_record_unknown_code(repo):
    assert repo.delete_chunks_by_record("missing") == 0


# ------------------------------------------------------------------
# Vec search
# ------------------------------------------------------------------

@pytest.fixture
def vec_repo(repo, tmp_db):
    table = ensure_vec_table(tmp_db, model_to_slug("test/model"), dimensions=4)
    rows = [
        (_chunk("RM000001", text="hyaluronic", category="humectant", source="in_stock"),
         [1.0, 0.0, 0.0, 0.0]),
        (_chunk("RM000002", text="ginger", category="extract", source="in_stock"),
         [0.0, 1.0, 0.0, 0.0]),
        (_chunk("RC00A008", text="aloe", category="extract", source="registry",
                owner_id="user-1"),
         [0.0, 0.9, 0.1, 0.0]),
    ]
    for chunk, embedding in rows:
        repo.add_embedding(table, repo.add_chunk(chunk), embedding)
    return repo, table


def test_search_vec_orders_by_distance(vec_repo):
    repo, table = vec_repo
    results = repo.search_vec(table, [0.0, 1.0, 0.0, 0.0], limit=3)
    assert [c.record_code for c, _ in results] == ["RM000002", "RC00A008", "RM000001"]
    distances = [d for _, d in results]
    assert distances == sorted(distances)
    assert distances[0] == pytest.approx(0.0, abs=1e-6)


def test_search_vec_category_filter(vec_repo):
    repo, table = vec_repo
    results = repo.search_vec(table, [1.0, 0.0, 0.0, 0.0], limit=5, category="EXTRACT")
    assert {c.record_code for c, _ in results} == {"RM000002", "RC00A008"}


def test_search_vec_source_filter(vec_repo):
    repo, table = vec_repo
    results = repo.search_vec(table, [0.0, 1.0, 0.0, 0.0], limit=5, source="registry")
    assert [c.record_code for c, _ in results] == ["RC00A008"]


def test_search_vec_exclude_owner(vec_repo):
    repo, table = vec_repo
    results = repo.search_vec(table, [0.0, 1.0, 0.0, 0.0], limit=5, exclude_owner="user-1")
    assert "RC00A008" not in {c.record_code for c, _ in results}
