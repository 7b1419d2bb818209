"""Domain models for the Formulary storage layer."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# Core record fields, in field-priority order (used by combined-context chunks).
FIELD_PRIORITY: tuple[str, ...] = (
    "code",
    "trade_name",
    "inci_name",
    "category",
    "function",
    "benefits",
    "supplier",
    "company",
    "cost",
    "details",
)

FIELD_LABELS: dict[str, str] = {
    "code": "Material Code",
    "trade_name": "Trade Name",
    "inci_name": "INCI Name",
    "category": "Category",
    "function": "Function",
    "benefits": "Benefits",
    "supplier": "Supplier",
    "company": "Company",
    "cost": "Cost",
    "details": "Details",
}


class RecordKind(str, Enum):
    """Record variants held in the knowledge base."""

    STOCK = "stock"  # materials physically in stock
    REGISTRY = "registry"  # registered ingredients, not necessarily stocked


@dataclass
class IngredientRecord:
    """An ingredient entity. ``code`` is the unique primary identifier.

    ``locale`` maps a core field name to its second-language rendering
    (e.g. ``{"benefits": "ให้ความชุ่มชื้น"}``). ``extra`` keeps vendor-specific
    fields that have no typed slot.
    """

    code: str
    trade_name: str | None = None
    inci_name: str | None = None
    supplier: str | None = None
    company: str | None = None
    cost: str | None = None
    benefits: str | None = None
    details: str | None = None
    category: str | None = None
    function: str | None = None
    kind: RecordKind = RecordKind.STOCK
    source: str = "in_stock"
    locale: dict[str, str] = field(default_factory=dict)
    extra: dict[str, Any] = field(default_factory=dict)

    def present_fields(self) -> dict[str, str]:
        """Return the non-empty core fields in field-priority order."""
        values: dict[str, str] = {}
        for name in FIELD_PRIORITY:
            value = getattr(self, name)
            if value is not None and str(value).strip():
                values[name] = str(value).strip()
        return values

    def to_text(self) -> str:
        """Labeled single-string rendering used as candidate content."""
        return ". ".join(
            f"{FIELD_LABELS[name]}: {value}" for name, value in self.present_fields().items()
        )

    def to_metadata(self) -> dict[str, Any]:
        meta: dict[str, Any] = dict(self.present_fields())
        meta["kind"] = self.kind.value
        meta["source"] = self.source
        if self.locale:
            meta["locale"] = dict(self.locale)
        if self.extra:
            meta["extra"] = dict(self.extra)
        return meta


class ChunkType(str, Enum):
    PRIMARY_IDENTIFIER = "primary_identifier"
    CODE_EXACT = "code_exact"
    TECHNICAL_SPECS = "technical_specs"
    COMMERCIAL_INFO = "commercial_info"
    DESCRIPTIVE = "descriptive"
    COMBINED_CONTEXT = "combined_context"
    LOCALE = "locale"


@dataclass
class Chunk:
    """An indexable text unit derived from one IngredientRecord."""

    id: str
    record_code: str
    text: str
    chunk_type: ChunkType
    priority: float
    source_fields: frozenset[str] = frozenset()
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def char_count(self) -> int:
        return len(self.text)


class MatchMode(str, Enum):
    EQUALS = "equals"
    CONTAINS = "contains"
    IN = "in"


@dataclass(frozen=True)
class FieldMatch:
    """Case-insensitive predicate on one record field."""

    field: str
    value: str | tuple[str, ...]
    mode: MatchMode = MatchMode.CONTAINS


@dataclass(frozen=True)
class RecordFilter:
    """Filter predicate understood by record stores.

    ``any_of`` clauses are OR-ed together, ``all_of`` clauses are AND-ed with
    that disjunction. An empty filter matches every record.
    """

    any_of: tuple[FieldMatch, ...] = ()
    all_of: tuple[FieldMatch, ...] = ()

    def matches(self, record: IngredientRecord) -> bool:
        """Evaluate the predicate in Python (used by in-memory stores)."""
        if self.any_of and not any(_field_matches(record, m) for m in self.any_of):
            return False
        return all(_field_matches(record, m) for m in self.all_of)


def _field_matches(record: IngredientRecord, match: FieldMatch) -> bool:
    raw = getattr(record, match.field, None)
    if isinstance(raw, Enum):
        raw = raw.value
    if raw is None:
        return False
    value = str(raw).lower()
    if match.mode is MatchMode.IN:
        options = match.value if isinstance(match.value, tuple) else (match.value,)
        return value in {o.lower() for o in options}
    if match.mode is MatchMode.EQUALS:
        return value == str(match.value).lower()
    return str(match.value).lower() in value


@dataclass
class VectorHit:
    """One nearest-neighbour match returned by a vector store."""

    id: str
    score: float
    metadata: dict[str, Any] = field(default_factory=dict)
