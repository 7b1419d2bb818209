"""Record chunker: one ingredient record -> several typed, weighted chunks.

Chunk layout per record (ids are ``{code}_{suffix}``):

  primary_id     code, trade name, INCI; labeled and raw forms
  code_exact     code + trade name
  tech_specs     INCI, category, function, trade name
  commercial     code, supplier, company, cost (needs >= 2 of them)
  benefits       benefits text
  details_{i}    details, fixed-window split when longer than max_chunk_size
  combined       every present field in FIELD_PRIORITY order
  locale         Thai-labeled primary fields (only for records with Thai content)

At most ``max_split_chunks`` detail windows are emitted, so a record never
yields more than 7 + max_split_chunks chunks.
"""

from __future__ import annotations

import re
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

from formulary.config import DEFAULT_CHUNK_PRIORITIES
from formulary.db.models import (
    FIELD_LABELS,
    Chunk,
    ChunkType,
    IngredientRecord,
)

TRUNCATION_MARKER = "..."

LOCALE_LABELS: dict[str, str] = {
    "code": "รหัสสาร",
    "trade_name": "ชื่อการค้า",
    "inci_name": "ชื่อ INCI",
    "supplier": "ซัพพลายเออร์",
    "benefits": "ประโยชน์",
}

_THAI_RE = re.compile(r"[\u0E00-\u0E7F]")


@dataclass
class ChunkerConfig:
    max_chunk_size: int = 500
    overlap: int = 50
    max_split_chunks: int = 3
    priorities: dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_CHUNK_PRIORITIES)
    )

    @classmethod
    def from_config(cls, cfg: Any) -> ChunkerConfig:
        c = cfg.chunking
        return cls(
            max_chunk_size=c.max_chunk_size,
            overlap=c.overlap,
            max_split_chunks=c.max_split_chunks,
            priorities=dict(c.priorities),
        )


class ChunkBuilder:
    """Build index chunks for ingredient records.

    Output is a pure function of the record and the config: chunking the same
    record twice yields equal chunks in the same order.
    """

    def __init__(self, config: ChunkerConfig | None = None) -> None:
        self.config = config or ChunkerConfig()
        if self.config.max_chunk_size <= len(TRUNCATION_MARKER):
            raise ValueError("max_chunk_size must be larger than the truncation marker")
        if not 0 <= self.config.overlap < self.config.max_chunk_size:
            raise ValueError("overlap must be in [0, max_chunk_size)")
        if self.config.max_split_chunks < 1:
            raise ValueError("max_split_chunks must be >= 1")

    def chunk_record(self, record: IngredientRecord) -> list[Chunk]:
        """Return all chunks for *record*, in layout order.

        Raises:
            ValueError: If the record has no code.
        """
        if not record.code or not record.code.strip():
            raise ValueError("Cannot chunk a record without a code")
        fields = record.present_fields()
        base_meta = _base_metadata(record)

        chunks: list[Chunk | None] = [
            self._primary_identifier(record.code, fields, base_meta),
            self._code_exact(record.code, fields, base_meta),
            self._technical_specs(record.code, fields, base_meta),
            self._commercial_info(record.code, fields, base_meta),
            self._benefits(record.code, fields, base_meta),
        ]
        chunks.extend(self._details(record.code, fields, base_meta))
        chunks.append(self._combined_context(record.code, fields, base_meta))
        chunks.append(self._locale(record, fields, base_meta))
        return [c for c in chunks if c is not None]

    # ------------------------------------------------------------------
    # Chunk strategies
    # ------------------------------------------------------------------

    def _primary_identifier(
        self, code: str, fields: dict[str, str], meta: dict[str, Any]
    ) -> Chunk | None:
        parts: list[str] = []
        sources: list[str] = []
        if "code" in fields:
            parts += [f"Material Code: {fields['code']}", f"Code: {fields['code']}", fields["code"]]
            sources.append("code")
        if "trade_name" in fields:
            parts += [f"Trade Name: {fields['trade_name']}", fields["trade_name"]]
            sources.append("trade_name")
        if "inci_name" in fields:
            parts += [f"INCI Name: {fields['inci_name']}", f"INCI: {fields['inci_name']}"]
            sources.append("inci_name")
        if not parts:
            return None
        return self._make(code, "primary_id", ChunkType.PRIMARY_IDENTIFIER, ". ".join(parts),
                          sources, meta)

    def _code_exact(
        self, code: str, fields: dict[str, str], meta: dict[str, Any]
    ) -> Chunk | None:
        if "code" not in fields:
            return None
        text = f"{fields['code']} {fields.get('trade_name', '')}".strip()
        sources = ["code", "trade_name"] if "trade_name" in fields else ["code"]
        return self._make(code, "code_exact", ChunkType.CODE_EXACT, text, sources, meta)

    def _technical_specs(
        self, code: str, fields: dict[str, str], meta: dict[str, Any]
    ) -> Chunk | None:
        names = [f for f in ("inci_name", "category", "function", "trade_name") if f in fields]
        if not names:
            return None
        text = ". ".join(f"{FIELD_LABELS[f]}: {fields[f]}" for f in names)
        return self._make(code, "tech_specs", ChunkType.TECHNICAL_SPECS, text, names, meta)

    def _commercial_info(
        self, code: str, fields: dict[str, str], meta: dict[str, Any]
    ) -> Chunk | None:
        names = [f for f in ("code", "supplier", "company", "cost") if f in fields]
        if len(names) < 2:
            return None
        labels = {"code": "Material"}
        text = ". ".join(f"{labels.get(f, FIELD_LABELS[f])}: {fields[f]}" for f in names)
        return self._make(code, "commercial", ChunkType.COMMERCIAL_INFO, text, names, meta)

    def _benefits(
        self, code: str, fields: dict[str, str], meta: dict[str, Any]
    ) -> Chunk | None:
        if "benefits" not in fields:
            return None
        text = f"{_display_name(fields)}: Benefits - {fields['benefits']}"
        return self._make(code, "benefits", ChunkType.DESCRIPTIVE, text, ["benefits"], meta)

    def _details(
        self, code: str, fields: dict[str, str], meta: dict[str, Any]
    ) -> list[Chunk]:
        if "details" not in fields:
            return []
        text = f"{_display_name(fields)}: Details - {fields['details']}"
        windows = self._split_fixed_window(text)
        if len(windows) == 1:
            return [self._make(code, "details_0", ChunkType.DESCRIPTIVE, windows[0],
                               ["details"], {**meta, "chunk_index": 0})]
        return [
            self._make(
                code,
                f"details_{i}",
                ChunkType.DESCRIPTIVE,
                window,
                ["details"],
                {**meta, "chunk_index": i, "is_split": True},
            )
            for i, window in enumerate(windows[: self.config.max_split_chunks])
        ]

    def _combined_context(
        self, code: str, fields: dict[str, str], meta: dict[str, Any]
    ) -> Chunk | None:
        if not fields:
            return None
        text = ". ".join(f"{FIELD_LABELS[f]}: {v}" for f, v in fields.items())
        return self._make(code, "combined", ChunkType.COMBINED_CONTEXT, text, list(fields), meta)

    def _locale(
        self, record: IngredientRecord, fields: dict[str, str], meta: dict[str, Any]
    ) -> Chunk | None:
        if not _has_locale_content(record, fields):
            return None
        parts: list[str] = []
        sources: list[str] = []
        for name, label in LOCALE_LABELS.items():
            value = record.locale.get(name) or fields.get(name)
            if value:
                parts.append(f"{label}: {value}")
                sources.append(name)
        if not parts:
            return None
        return self._make(record.code, "locale", ChunkType.LOCALE, ". ".join(parts), sources,
                          {**meta, "language": "thai"})

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _make(
        self,
        code: str,
        suffix: str,
        chunk_type: ChunkType,
        text: str,
        sources: list[str],
        meta: dict[str, Any],
    ) -> Chunk:
        text = self._truncate(text)
        return Chunk(
            id=f"{code}_{suffix}",
            record_code=code,
            text=text,
            chunk_type=chunk_type,
            priority=self.config.priorities.get(
                chunk_type.value, DEFAULT_CHUNK_PRIORITIES[chunk_type.value]
            ),
            source_fields=frozenset(sources),
            metadata={**meta, "chunk_type": chunk_type.value},
        )

    def _truncate(self, text: str) -> str:
        limit = self.config.max_chunk_size
        if len(text) <= limit:
            return text
        return text[: limit - len(TRUNCATION_MARKER)].rstrip() + TRUNCATION_MARKER

    def _split_fixed_window(self, text: str) -> list[str]:
        """Split *text* into windows of max_chunk_size stepping by size - overlap.

        Segments are stripped; empty segments are omitted.
        """
        size = self.config.max_chunk_size
        if len(text) <= size:
            return [text]
        step = size - self.config.overlap

        segments: list[str] = []
        pos = 0
        length = len(text)
        while pos < length:
            end = min(pos + size, length)
            segment = text[pos:end].strip()
            if segment:
                segments.append(segment)
            if end >= length:
                break
            pos += step
        return segments


def _base_metadata(record: IngredientRecord) -> dict[str, Any]:
    meta = record.to_metadata()
    meta["record_code"] = record.code
    return meta


def _display_name(fields: dict[str, str]) -> str:
    return fields.get("trade_name") or fields.get("code", "")


def _has_locale_content(record: IngredientRecord, fields: dict[str, str]) -> bool:
    if any(v and str(v).strip() for v in record.locale.values()):
        return True
    return any(_THAI_RE.search(v) for v in fields.values())


# ------------------------------------------------------------------
# Statistics
# ------------------------------------------------------------------


@dataclass
class ChunkStats:
    total_chunks: int = 0
    by_type: dict[str, int] = field(default_factory=dict)
    total_characters: int = 0
    avg_character_count: float = 0.0
    priority_distribution: dict[float, int] = field(default_factory=dict)


def chunk_stats(chunks: list[Chunk]) -> ChunkStats:
    """Summarise *chunks*: counts by type, character totals, priority buckets (0.1 wide)."""
    if not chunks:
        return ChunkStats()
    by_type = Counter(c.chunk_type.value for c in chunks)
    buckets = Counter(int(c.priority * 10 + 1e-9) / 10 for c in chunks)
    total_chars = sum(c.char_count for c in chunks)
    return ChunkStats(
        total_chunks=len(chunks),
        by_type=dict(sorted(by_type.items())),
        total_characters=total_chars,
        avg_character_count=total_chars / len(chunks),
        priority_distribution=dict(sorted(buckets.items())),
    )
