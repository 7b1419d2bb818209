"""Tests for ChunkBuilder: layout, truncation, detail splitting, locale chunks."""

from __future__ import annotations

import pytest

from formulary.db.models import ChunkType, IngredientRecord
from formulary.ingest.chunker import (
    TRUNCATION_MARKER,
    ChunkBuilder,
    ChunkerConfig,
    chunk_stats,
)


def _full_record(**overrides) -> IngredientRecord:
    values = dict(
        code="RM000001",
        trade_name="Hyaluronic Acid Powder",
        inci_name="Sodium Hyaluronate",
        supplier="BioChem Co",
        company="BioChem Holdings",
        cost="4500 THB/kg",
        benefits="Deep moisturizing",
        details="Low molecular weight grade.",
        category="humectant",
        function="skin conditioning",
    )
    values.update(overrides)
    return IngredientRecord(**values)


@pytest.fixture
def builder() -> ChunkBuilder:
    return ChunkBuilder()


# ------------------------------------------------------------------
# Layout
# ------------------------------------------------------------------

def test_full_record_chunk_ids(builder):
    chunks = builder.chunk_record(_full_record())
    assert [c.id for c in chunks] == [
        "RM000001_primary_id",
        "RM000001_code_exact",
        "RM000001_tech_specs",
        "RM000001_commercial",
        "RM000001_benefits",
        "RM000001_details_0",
        "RM000001_combined",
    ]


def test_chunk_types_and_priorities(builder):
    by_id = {c.id: c for c in builder.chunk_record(_full_record())}
    assert by_id["RM000001_code_exact"].chunk_type is ChunkType.CODE_EXACT
    assert by_id["RM000001_code_exact"].priority == 1.0
    assert by_id["RM000001_primary_id"].priority == 1.0
    assert by_id["RM000001_tech_specs"].priority == 0.9
    assert by_id["RM000001_combined"].priority == 0.85
    assert by_id["RM000001_commercial"].priority == 0.8
    assert by_id["RM000001_benefits"].priority == 0.7


def test_primary_identifier_contains_labeled_and_raw_forms(builder):
    chunk = builder.chunk_record(_full_record())[0]
    assert "Material Code: RM000001" in chunk.text
    assert "Trade Name: Hyaluronic Acid Powder" in chunk.text
    assert "INCI: Sodium Hyaluronate" in chunk.text
    assert chunk.source_fields == frozenset({"code", "trade_name", "inci_name"})


def test_code_exact_text(builder):
    chunk = builder.chunk_record(_full_record())[1]
    assert chunk.text == "RM000001 Hyaluronic Acid Powder"


def test_benefits_uses_display_name(builder):
    chunk = next(c for c in builder.chunk_record(_full_record()) if c.id.endswith("_benefits"))
    assert chunk.text == "Hyaluronic Acid Powder: Benefits - Deep moisturizing"


def test_combined_context_in_field_priority_order(builder):
    combined = builder.chunk_record(_full_record())[-1]
    assert combined.text.index("Material Code") < combined.text.index("Trade Name")
    assert combined.text.index("Category") < combined.text.index("Benefits")
    assert combined.text.index("Cost") < combined.text.index("Details")


def test_commercial_needs_two_fields(builder):
    sparse = IngredientRecord(code="RM000009", trade_name="Solo")
    ids = [c.id for c in builder.chunk_record(sparse)]
    assert "RM000009_commercial" not in ids
    assert "RM000009_benefits" not in ids
    assert "RM000009_details_0" not in ids


def test_metadata_carries_record_fields(builder):
    chunk = builder.chunk_record(_full_record())[0]
    assert chunk.record_code == "RM000001"
    assert chunk.metadata["record_code"] == "RM000001"
    assert chunk.metadata["category"] == "humectant"
    assert chunk.metadata["chunk_type"] == "primary_identifier"
    assert chunk.metadata["source"] == "in_stock"


def test_chunking_is_deterministic(builder):
    record = _full_record(details="x " * 600)
    assert builder.chunk_record(record) == builder.chunk_record(record)


def test_record_without_code_rejected(builder):
    with pytest.raises(ValueError, match="without a code"):
        builder.chunk_record(IngredientRecord(code="  "))


# ------------------------------------------------------------------
# Size limits
# ------------------------------------------------------------------

def test_long_field_is_truncated_with_marker(builder):
    record = _full_record(benefits="moisture " * 200)
    for chunk in builder.chunk_record(record):
        assert len(chunk.text) <= builder.config.max_chunk_size
    benefits = next(c for c in builder.chunk_record(record) if c.id.endswith("_benefits"))
    assert benefits.text.endswith(TRUNCATION_MARKER)


def test_long_details_split_into_windows():
    builder = ChunkBuilder(ChunkerConfig(max_chunk_size=100, overlap=20, max_split_chunks=3))
    record = _full_record(details="a" * 150)
    details = [c for c in builder.chunk_record(record) if "_details_" in c.id]
    assert len(details) >= 2
    assert [c.metadata["chunk_index"] for c in details] == list(range(len(details)))
    assert all(c.metadata["is_split"] for c in details)
    assert all(len(c.text) <= 100 for c in details)


def test_detail_windows_capped():
    builder = ChunkBuilder(ChunkerConfig(max_chunk_size=50, overlap=0, max_split_chunks=2))
    chunks = builder.chunk_record(_full_record(details="word " * 200))
    assert len([c for c in chunks if "_details_" in c.id]) == 2
    assert len(chunks) <= 7 + 2


def test_overlap_must_be_smaller_than_chunk_size():
    with pytest.raises(ValueError, match="overlap"):
        ChunkBuilder(ChunkerConfig(max_chunk_size=100, overlap=100))


# ------------------------------------------------------------------
# Locale chunk
# ------------------------------------------------------------------

def test_locale_chunk_for_thai_content(builder):
    record = _full_record(locale={"benefits": "ให้ความชุ่มชื้น"})
    locale = builder.chunk_record(record)[-1]
    assert locale.id == "RM000001_locale"
    assert locale.chunk_type is ChunkType.LOCALE
    assert "ประโยชน์: ให้ความชุ่มชื้น" in locale.text
    assert "รหัสสาร: RM000001" in locale.text
    assert locale.metadata["language"] == "thai"


def test_locale_chunk_when_core_field_is_thai(builder):
    record = _full_record(benefits="บำรุงผิว")
    assert builder.chunk_record(record)[-1].chunk_type is ChunkType.LOCALE


def test_no_locale_chunk_for_english_only_record(builder):
    assert all(c.chunk_type is not ChunkType.LOCALE for c in builder.chunk_record(_full_record()))


# ------------------------------------------------------------------
# Config + stats
# ------------------------------------------------------------------

def test_custom_priorities_from_config():
    from formulary.config import FormularyConfig

    cfg = FormularyConfig()
    cfg.chunking.priorities["descriptive"] = 0.5
    builder = ChunkBuilder(ChunkerConfig.from_config(cfg))
    benefits = next(c for c in builder.chunk_record(_full_record()) if c.id.endswith("_benefits"))
    assert benefits.priority == 0.5


def test_chunk_stats(builder):
    chunks = builder.chunk_record(_full_record())
    stats = chunk_stats(chunks)
    assert stats.total_chunks == len(chunks)
    assert stats.by_type["descriptive"] == 2
    assert stats.total_characters == sum(len(c.text) for c in chunks)
    assert stats.priority_distribution[1.0] == 2


def test_chunk_stats_empty():
    assert chunk_stats([]).total_chunks == 0
