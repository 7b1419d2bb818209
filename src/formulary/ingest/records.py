"""Load ingredient records from JSON, JSONL or CSV exports.

Accepted field names include the legacy export spellings, e.g. ``rm_code``,
``INCI_name``, ``company_name``, ``rm_cost``. A ``<field>_th`` column fills
the record's locale map. Any key without a typed slot is kept in
``IngredientRecord.extra``.
"""

from __future__ import annotations

import csv
import json
import logging
from pathlib import Path
from typing import Any, Iterable, Iterator

from formulary.db.models import FIELD_PRIORITY, IngredientRecord, RecordKind

logger = logging.getLogger(__name__)

SUPPORTED_SUFFIXES: frozenset[str] = frozenset({".json", ".jsonl", ".csv"})

FIELD_ALIASES: dict[str, str] = {
    "rm_code": "code",
    "material_code": "code",
    "tradename": "trade_name",
    "inciname": "inci_name",
    "company_name": "company",
    "rm_cost": "cost",
    "price": "cost",
    "benefits_cached": "benefits",
    "details_cached": "details",
}

_LOCALE_SUFFIX = "_th"


def load_records(
    path: Path,
    *,
    kind: RecordKind = RecordKind.STOCK,
    source: str = "in_stock",
) -> list[IngredientRecord]:
    """Read every record from *path*.

    Args:
        path: A ``.json`` (list, or object with a ``records`` list), ``.jsonl``
            or ``.csv`` file.
        kind: Record kind for rows that do not carry a ``kind`` column.
        source: Source tag for rows that do not carry a ``source`` column.

    Returns:
        Records in file order. Rows without a code are skipped with a warning.

    Raises:
        ValueError: If the file type is unsupported or the JSON shape is wrong.
    """
    suffix = path.suffix.lower()
    if suffix not in SUPPORTED_SUFFIXES:
        raise ValueError(
            f"Unsupported record file '{path.name}' "
            f"(expected one of: {', '.join(sorted(SUPPORTED_SUFFIXES))})"
        )

    if suffix == ".csv":
        rows: Iterable[dict[str, Any]] = _read_csv(path)
    elif suffix == ".jsonl":
        rows = _read_jsonl(path)
    else:
        rows = _read_json(path)

    records: list[IngredientRecord] = []
    for i, row in enumerate(rows, start=1):
        record = record_from_mapping(row, kind=kind, source=source)
        if record is None:
            logger.warning("Skipping row %d of %s: no material code", i, path.name)
            continue
        records.append(record)
    logger.debug("Loaded %d records from %s", len(records), path)
    return records


def record_from_mapping(
    row: dict[str, Any],
    *,
    kind: RecordKind = RecordKind.STOCK,
    source: str = "in_stock",
) -> IngredientRecord | None:
    """Build a record from one raw row, or None if the row has no code."""
    typed: dict[str, str] = {}
    locale: dict[str, str] = {}
    extra: dict[str, Any] = {}

    for raw_key, value in row.items():
        if raw_key is None:
            continue
        key = _canonical_key(str(raw_key))
        if key in ("kind", "source", "locale"):
            continue
        text = _clean(value)
        if key in FIELD_PRIORITY:
            if text is not None and key not in typed:
                typed[key] = text
        elif key.endswith(_LOCALE_SUFFIX) and key[: -len(_LOCALE_SUFFIX)] in FIELD_PRIORITY:
            if text is not None:
                locale[key[: -len(_LOCALE_SUFFIX)]] = text
        elif key not in ("_id", "id") and value not in (None, ""):
            extra[str(raw_key)] = value

    if isinstance(row.get("locale"), dict):
        locale.update({k: str(v) for k, v in row["locale"].items() if _clean(v)})

    code = typed.pop("code", None)
    if not code:
        return None

    return IngredientRecord(
        code=code,
        kind=_parse_kind(row.get("kind"), kind),
        source=_clean(row.get("source")) or source,
        locale=locale,
        extra=extra,
        **typed,
    )


# ------------------------------------------------------------------
# Readers
# ------------------------------------------------------------------


def _read_json(path: Path) -> list[dict[str, Any]]:
    data = json.loads(path.read_text(encoding="utf-8"))
    if isinstance(data, dict) and isinstance(data.get("records"), list):
        data = data["records"]
    if not isinstance(data, list) or not all(isinstance(r, dict) for r in data):
        raise ValueError(
            f"'{path.name}' must contain a list of objects or {{\"records\": [...]}}"
        )
    return data


def _read_jsonl(path: Path) -> Iterator[dict[str, Any]]:
    with path.open(encoding="utf-8") as fh:
        for lineno, line in enumerate(fh, start=1):
            if not line.strip():
                continue
            obj = json.loads(line)
            if not isinstance(obj, dict):
                raise ValueError(f"{path.name}:{lineno}: expected a JSON object")
            yield obj


def _read_csv(path: Path) -> Iterator[dict[str, Any]]:
    with path.open(encoding="utf-8-sig", newline="") as fh:
        yield from csv.DictReader(fh)


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _canonical_key(key: str) -> str:
    k = key.strip().replace(" ", "_").replace("-", "_").lower()
    return FIELD_ALIASES.get(k, k)


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_kind(value: Any, default: RecordKind) -> RecordKind:
    text = _clean(value)
    if text is None:
        return default
    try:
        return RecordKind(text.lower())
    except ValueError:
        logger.warning("Unknown record kind '%s', using '%s'", text, default.value)
        return default
