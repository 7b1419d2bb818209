"""Query classification: identifier extraction, query typing and expansion.

Pattern table (weight feeds the confidence score):

  exact_code        RM000001, RM-000001, RC00A008, RDSAM00171     1.0
  material_code     AB-1234, ABC_123456                           0.95
  trade_code        ABC-XY                                        0.9
  inquiry keywords  material code / trade name / INCI (+ Thai)    0.85-0.9
  domain keywords   supplier, cost, benefit, extract, ...         0.7-0.8

confidence = mean(weights) + min(0.05 * n_patterns, 0.2), capped at 1.0;
0.1 when no pattern matched.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass

from formulary.errors import ClassificationFailure
from formulary.rag.models import (
    ExtractedEntities,
    Language,
    QueryClassification,
    QueryType,
    SearchStrategyHint,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class _Pattern:
    regex: re.Pattern[str]
    type: str
    weight: float


def _p(pattern: str, type_: str, weight: float, flags: int = 0) -> _Pattern:
    return _Pattern(re.compile(pattern, flags), type_, weight)


_I = re.IGNORECASE

QUERY_PATTERNS: tuple[_Pattern, ...] = (
    # Codes
    _p(r"\bRM[-_]?\d{6}\b", "exact_code", 1.0, _I),
    _p(r"\bRC[-_]?[A-Z0-9]{6,}\b", "exact_code", 1.0, _I),
    _p(r"\bRD[-_]?[A-Z]{2,}[0-9]{3,}\b", "exact_code", 1.0, _I),
    _p(r"\b[A-Z]{2,4}[-_]?\d{3,6}\b", "material_code", 0.95),
    _p(r"\b[A-Z]{3,}-[A-Z]{2,}\b", "trade_code", 0.9),
    # Inquiries
    _p(r"คืออะไร|ชื่ออะไร|มีอะไรบ้าง|หาอะไร", "thai_question", 0.85),
    _p(r"รหัส(?:สาร|วัตถุดิบ)?|material\s*code|rm\s*code", "code_inquiry", 0.9, _I),
    _p(r"ชื่อ(?:การค้า|ทางการค้า|trade)|trade\s*name", "name_inquiry", 0.85, _I),
    _p(r"inci\s*(?:name)?|ชื่อสากล|ชื่อทางเคมี", "inci_inquiry", 0.85, _I),
    # Domain keywords
    _p(r"วัตถุดิบ|สารสกัด|สารออกฤทธิ์|ส่วนผสม", "thai_material", 0.8),
    _p(r"สูตร|ตำรับ|การผลิต|formulation", "formulation", 0.75, _I),
    _p(r"ซัพพลายเออร์|ผู้ผลิต|บริษัท|supplier|manufacturer", "supplier", 0.75, _I),
    _p(r"ราคา|ต้นทุน|\bcost\b|\bprice\b", "cost", 0.75, _I),
    _p(r"ประโยชน์|คุณสมบัติ|benefit|property|function", "property", 0.7, _I),
    _p(r"ความชุ่มชื้น|hydrat|moisturi[sz]", "property_moisturizing", 0.8, _I),
    _p(r"ต้านริ้วรอย|anti[- ]?aging|anti[- ]?wrinkle", "property_antiaging", 0.8, _I),
    _p(r"กระจ่างใส|whiten|brighten", "property_whitening", 0.8, _I),
    _p(r"\b(?:raw\s*material|ingredient|active|extract|chemical)\b", "eng_material", 0.8, _I),
    _p(r"\b(?:vitamin|acid|oil|powder|gel)\b", "material_type", 0.7, _I),
    _p(r"vitamin\s*[a-e]\b", "vitamin", 0.75, _I),
    _p(r"hyaluronic|glycerin|retinol|niacinamide|ceramide", "specific_ingredient", 0.8, _I),
    _p(r"ginger|aloe|green\s*tea|chamomile|lavender", "plant_extract", 0.75, _I),
)

# Strict identifiers: fixed prefix + digits. Only these can make a query exact_code.
_STRICT_CODE_RES: tuple[re.Pattern[str], ...] = (
    re.compile(r"\bRM[-_]?\d{6}\b", _I),
    re.compile(r"\bRC[-_]?[A-Z0-9]{6,}\b", _I),
    re.compile(r"\bRD[-_]?[A-Z]{2,}[0-9]{3,}\b", _I),
)
# Looser vendor codes; a separator is required so plain words like "SPF50" stay text.
_LOOSE_CODE_RE = re.compile(r"\b[A-Z]{2,4}[-_]\d{3,6}\b")

_NAME_RES: tuple[re.Pattern[str], ...] = (
    re.compile(r"\b[A-Z][a-z]+(?:\s+[A-Z][a-z]+)+\b"),  # "Hyaluronic Acid"
    re.compile(r"\b[A-Za-z]+\s+extract\b", _I),  # "Ginger Extract"
    re.compile(r'"([^"]+)"'),
    re.compile(r"'([^']+)'"),
)

PROPERTY_KEYWORDS: tuple[str, ...] = (
    "moisturizing",
    "anti-aging",
    "whitening",
    "brightening",
    "hydrating",
    "smoothing",
    "firming",
    "soothing",
    "ความชุ่มชื้น",
    "ต้านริ้วรอย",
    "กระจ่างใส",
    "บำรุง",
)

# Thai keyword -> English renderings, most specific first.
KEYWORD_EXPANSION: dict[str, tuple[str, ...]] = {
    "วัตถุดิบ": ("raw material", "ingredient", "material", "component"),
    "สารสกัด": ("extract", "extraction", "active extract"),
    "รหัสสาร": ("material code", "rm code", "product code", "ingredient code"),
    "ชื่อการค้า": ("trade name", "commercial name", "brand name"),
    "ซัพพลายเออร์": ("supplier", "vendor", "manufacturer", "provider"),
    "ราคา": ("price", "cost", "pricing"),
    "ประโยชน์": ("benefit", "property", "function", "effect"),
    "สูตร": ("formula", "formulation", "recipe", "composition"),
    "ความชุ่มชื้น": ("moisturizing", "hydrating", "moisture"),
    "ต้านริ้วรอย": ("anti-aging", "anti-wrinkle"),
    "กระจ่างใส": ("whitening", "brightening"),
    "บำรุง": ("nourishing", "conditioning"),
}

SYNONYMS: dict[str, tuple[str, ...]] = {
    "moisturizing": ("hydrating", "moisture retention", "humectant"),
    "moisturizer": ("hydrating agent", "humectant"),
    "hydrating": ("moisturizing", "moisture retention"),
    "anti-aging": ("anti-wrinkle", "firming", "collagen boosting"),
    "whitening": ("brightening", "skin lightening", "tone evening"),
    "brightening": ("whitening", "radiance"),
    "soothing": ("calming", "anti-irritation", "anti-inflammatory"),
    "extract": ("botanical extract", "plant extract"),
    "emulsifier": ("surfactant", "emulsifying agent"),
    "preservative": ("antimicrobial", "preserving agent"),
    "thickener": ("viscosity modifier", "rheology modifier"),
    "supplier": ("vendor", "manufacturer"),
    "price": ("cost", "pricing"),
}

_MAX_VARIANTS_PER_KEYWORD = 3
_MIN_KEYWORD_LENGTH = 4  # "significant" keyword = longer than 3 characters

_THAI_CHAR_RE = re.compile(r"[\u0E00-\u0E7F]")
_LATIN_CHAR_RE = re.compile(r"[A-Za-z]")
_RESIDUAL_NOISE_RE = re.compile(r"[\s,;:.!?/()\[\]\"'-]+")


class QueryClassifier:
    """Classify a raw query. ``classify`` never raises."""

    def classify(self, query: str) -> QueryClassification:
        try:
            return self._classify(query)
        except Exception as exc:
            logger.warning("Query classification failed, using default: %s", exc)
            return QueryClassification.fallback(query)

    def _classify(self, query: str) -> QueryClassification:
        if not query or not query.strip():
            raise ClassificationFailure("empty query")
        text = query.strip()

        matched = [p for p in QUERY_PATTERNS if p.regex.search(text)]
        entities = extract_entities(text)
        language = detect_language(text)
        confidence = _confidence([p.weight for p in matched])
        query_type = _query_type(text, entities)
        strategy = _strategy_hint(query_type, confidence, entities)
        expanded = expand_query(text, entities)

        result = QueryClassification(
            query=text,
            query_type=query_type,
            entities=entities,
            search_strategy=strategy,
            expanded_queries=expanded,
            confidence=confidence,
            language=language,
            matched_patterns=[p.type for p in matched],
        )
        logger.debug(
            "Classified %r: type=%s strategy=%s confidence=%.2f codes=%s names=%s",
            text, query_type.value, strategy.value, confidence,
            entities.codes, entities.names,
        )
        return result


# ------------------------------------------------------------------
# Extraction
# ------------------------------------------------------------------


def normalize_code(code: str) -> str:
    """Upper-case *code* and drop ``-``/``_`` separators (RM-000001 -> RM000001)."""
    return re.sub(r"[-_]", "", code.upper())


def extract_entities(query: str) -> ExtractedEntities:
    entities = ExtractedEntities()

    for regex in (*_STRICT_CODE_RES, _LOOSE_CODE_RE):
        for m in regex.finditer(query):
            _append_unique(entities.codes, normalize_code(m.group(0)))
            _append_unique(entities.raw_codes, m.group(0))

    for regex in _NAME_RES:
        for m in regex.finditer(query):
            name = (m.group(1) if m.groups() else m.group(0)).strip()
            if len(name) > 2 and normalize_code(name) not in entities.codes:
                _append_unique(entities.names, name)

    lowered = query.lower()
    for prop in PROPERTY_KEYWORDS:
        if prop.lower() in lowered:
            entities.properties.append(prop)

    return entities


def detect_language(query: str) -> Language:
    """Thai/Latin character ratio: > 0.3 Thai is thai, plus > 0.1 Latin is mixed."""
    if not query:
        return Language.ENGLISH
    thai_ratio = len(_THAI_CHAR_RE.findall(query)) / len(query)
    latin_ratio = len(_LATIN_CHAR_RE.findall(query)) / len(query)
    if thai_ratio > 0.3 and latin_ratio > 0.1:
        return Language.MIXED
    if thai_ratio > 0.3:
        return Language.THAI
    return Language.ENGLISH


# ------------------------------------------------------------------
# Typing
# ------------------------------------------------------------------


def _has_strict_code(query: str) -> bool:
    return any(r.search(query) for r in _STRICT_CODE_RES)


def _residual_text(query: str) -> str:
    """Query text left after removing every code-like token."""
    residual = query
    for regex in (*_STRICT_CODE_RES, _LOOSE_CODE_RE):
        residual = regex.sub(" ", residual)
    return _RESIDUAL_NOISE_RE.sub("", residual)


def _query_type(query: str, entities: ExtractedEntities) -> QueryType:
    if _has_strict_code(query) and not _residual_text(query):
        return QueryType.EXACT_CODE
    if entities.codes or entities.names:
        return QueryType.MIXED
    return QueryType.NATURAL_LANGUAGE


def _confidence(weights: list[float]) -> float:
    if not weights:
        return 0.1
    mean = sum(weights) / len(weights)
    return min(mean + min(len(weights) * 0.05, 0.2), 1.0)


def _strategy_hint(
    query_type: QueryType, confidence: float, entities: ExtractedEntities
) -> SearchStrategyHint:
    if entities.codes and confidence > 0.8:
        return SearchStrategyHint.EXACT_MATCH
    if confidence > 0.6 and (entities.names or query_type is QueryType.EXACT_CODE):
        return SearchStrategyHint.FUZZY_MATCH
    if confidence < 0.5:
        return SearchStrategyHint.HYBRID
    return SearchStrategyHint.SEMANTIC_SEARCH


# ------------------------------------------------------------------
# Expansion
# ------------------------------------------------------------------


def expand_query(query: str, entities: ExtractedEntities | None = None) -> list[str]:
    """Return ``[query, *variants]``, deduplicated, in a deterministic order.

    Each significant keyword (longer than 3 characters) contributes at most
    three variants: Thai keywords are replaced by their English renderings,
    English keywords by synonyms. Codes add separator variants
    (RM000001 -> RM-000001, RM_000001).
    """
    expanded: list[str] = [query]
    lowered = query.lower()

    for keyword, variants in KEYWORD_EXPANSION.items():
        if len(keyword) >= _MIN_KEYWORD_LENGTH and keyword in query:
            for variant in variants[:_MAX_VARIANTS_PER_KEYWORD]:
                _append_unique(expanded, query.replace(keyword, variant))

    for keyword, variants in SYNONYMS.items():
        if len(keyword) < _MIN_KEYWORD_LENGTH:
            continue
        if not re.search(rf"\b{re.escape(keyword)}\b", lowered):
            continue
        for variant in variants[:_MAX_VARIANTS_PER_KEYWORD]:
            _append_unique(
                expanded,
                re.sub(rf"\b{re.escape(keyword)}\b", variant, query, flags=_I),
            )

    codes = entities.codes if entities is not None else extract_entities(query).codes
    for code in codes:
        m = re.match(r"([A-Z]+)(\d.*)", code) if len(code) >= 6 else None
        if m is None:
            continue
        prefix, rest = m.group(1), m.group(2)
        _append_unique(expanded, f"{prefix}-{rest}")
        _append_unique(expanded, f"{prefix}_{rest}")

    return expanded


def _append_unique(items: list[str], value: str) -> None:
    if value not in items:
        items.append(value)
