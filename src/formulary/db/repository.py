"""Repository pattern for all Formulary database operations.

Single interface for: ingredient records, filtered record lookup, chunks,
and vec embeddings. Vec tables are model-managed (ensure_vec_table);
the repository handles read + write.
"""

from __future__ import annotations

import json
import sqlite3
from typing import Any

from formulary.db.models import (
    FIELD_PRIORITY,
    Chunk,
    ChunkType,
    FieldMatch,
    IngredientRecord,
    MatchMode,
    RecordFilter,
    RecordKind,
)
from formulary.db.vectors import list_vec_tables

# Columns a RecordFilter may reference. Anything else is rejected before SQL is built.
_FILTERABLE_COLUMNS: frozenset[str] = frozenset(FIELD_PRIORITY) | {"kind", "source"}

_RECORD_COLUMNS = (
    "code, trade_name, inci_name, supplier, company, cost, benefits, details, "
    "category, function, kind, source, locale, extra"
)

_CHUNK_COLUMNS = (
    "rowid, id, record_code, chunk_type, priority, source_fields, text, metadata"
)


class Repository:
    """Data access layer for all Formulary database entities.

    Wraps an open sqlite3.Connection. The connection is owned by the caller
    and must be closed after use.
    """

    def __init__(self, conn: sqlite3.Connection) -> None:
        """Initialise with an open database connection.

        Args:
            conn: An open sqlite3.Connection with sqlite-vec loaded and schema
                initialised (see formulary.db.schema.initialize).
        """
        self._conn = conn

    @property
    def connection(self) -> sqlite3.Connection:
        return self._conn

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------

    def upsert_record(self, record: IngredientRecord) -> None:
        """Insert *record* or replace the stored record with the same code."""
        self._conn.execute(
            f"""
            INSERT INTO records ({_RECORD_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(code) DO UPDATE SET
                trade_name = excluded.trade_name,
                inci_name = excluded.inci_name,
                supplier = excluded.supplier,
                company = excluded.company,
                cost = excluded.cost,
                benefits = excluded.benefits,
                details = excluded.details,
                category = excluded.category,
                function = excluded.function,
                kind = excluded.kind,
                source = excluded.source,
                locale = excluded.locale,
                extra = excluded.extra,
                ingested_at = datetime('now')
            """,
            (
                record.code,
                record.trade_name,
                record.inci_name,
                record.supplier,
                record.company,
                record.cost,
                record.benefits,
                record.details,
                record.category,
                record.function,
                record.kind.value,
                record.source,
                json.dumps(record.locale, ensure_ascii=False),
                json.dumps(record.extra, ensure_ascii=False),
            ),
        )
        self._conn.commit()

    def get_record(self, code: str) -> IngredientRecord | None:
        """Return the record with *code*, or None if not found."""
        row = self._conn.execute(
            f"SELECT {_RECORD_COLUMNS} FROM records WHERE code = ?", (code,)
        ).fetchone()
        return _row_to_record(row) if row else None

    def list_records(self, limit: int | None = None) -> list[IngredientRecord]:
        """Return records ordered by code."""
        sql = f"SELECT {_RECORD_COLUMNS} FROM records ORDER BY code"
        params: tuple[Any, ...] = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (limit,)
        return [_row_to_record(r) for r in self._conn.execute(sql, params).fetchall()]

    def count_records(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM records").fetchone()[0]

    def find_records(self, flt: RecordFilter, limit: int = 10) -> list[IngredientRecord]:
        """Return up to *limit* records matching *flt*, ordered by code.

        Raises:
            ValueError: If the filter references a column that is not filterable.
        """
        where, params = _compile_filter(flt)
        sql = f"SELECT {_RECORD_COLUMNS} FROM records"
        if where:
            sql += f" WHERE {where}"
        sql += " ORDER BY code LIMIT ?"
        rows = self._conn.execute(sql, (*params, limit)).fetchall()
        return [_row_to_record(r) for r in rows]

    def delete_record(self, code: str) -> None:
        """Delete a record row. Chunks and embeddings are removed separately."""
        self._conn.execute("DELETE FROM records WHERE code = ?", (code,))
        self._conn.commit()

    # ------------------------------------------------------------------
    # Chunks
    # ------------------------------------------------------------------

    def add_chunk(self, chunk: Chunk, owner_id: str | None = None) -> int:
        """Insert *chunk* and return its rowid (the vec table key)."""
        cur = self._conn.execute(
            """
            INSERT INTO chunks
                (id, record_code, chunk_type, priority, source_fields, text,
                 metadata, category, source, owner_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                chunk.id,
                chunk.record_code,
                chunk.chunk_type.value,
                chunk.priority,
                json.dumps(sorted(chunk.source_fields)),
                chunk.text,
                json.dumps(chunk.metadata, ensure_ascii=False),
                chunk.metadata.get("category"),
                chunk.metadata.get("source"),
                owner_id or chunk.metadata.get("owner_id"),
            ),
        )
        self._conn.commit()
        return cur.lastrowid

    def get_chunk_by_rowid(self, rowid: int) -> Chunk | None:
        row = self._conn.execute(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE rowid = ?", (rowid,)
        ).fetchone()
        return _row_to_chunk(row) if row else None

    def list_chunks_by_record(self, code: str) -> list[Chunk]:
        rows = self._conn.execute(
            f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE record_code = ? ORDER BY rowid",
            (code,),
        ).fetchall()
        return [_row_to_chunk(r) for r in rows]

    def count_chunks(self) -> int:
        return self._conn.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]

    def count_chunks_by_type(self) -> dict[str, int]:
        rows = self._conn.execute(
            "SELECT chunk_type, COUNT(*) AS n FROM chunks GROUP BY chunk_type ORDER BY chunk_type"
        ).fetchall()
        return {r["chunk_type"]: r["n"] for r in rows}

    def delete_chunks_by_record(self, code: str) -> int:
        """Delete chunks and their embeddings (all vec tables) for *code*.

        Returns:
            Number of chunk rows deleted.
        """
        rowids = [
            r[0]
            for r in self._conn.execute(
                "SELECT rowid FROM chunks WHERE record_code = ?", (code,)
            ).fetchall()
        ]
        if not rowids:
            return 0

        placeholders = ",".join("?" * len(rowids))
        for table in list_vec_tables(self._conn):
            self._conn.execute(
                f"DELETE FROM [{table}] WHERE rowid IN ({placeholders})",  # noqa: S608
                rowids,
            )
        self._conn.execute(
            f"DELETE FROM chunks WHERE rowid IN ({placeholders})", rowids  # noqa: S608
        )
        self._conn.commit()
        return len(rowids)

    # ------------------------------------------------------------------
    # Vec embeddings
    # ------------------------------------------------------------------

    def add_embedding(self, table: str, rowid: int, embedding: list[float]) -> None:
        """Insert an embedding into a vec table with explicit rowid = chunk rowid."""
        self._conn.execute(
            f"INSERT INTO {table}(rowid, embedding) VALUES (?, ?)",
            (rowid, json.dumps(embedding)),
        )
        self._conn.commit()

    def search_vec(
        self,
        table: str,
        embedding: list[float],
        limit: int = 10,
        *,
        category: str | None = None,
        source: str | None = None,
        exclude_owner: str | None = None,
    ) -> list[tuple[Chunk, float]]:
        """Nearest-neighbour search. Returns (chunk, distance) sorted by distance.

        Metadata filters are applied to the chunk rows after the KNN scan, so the
        scan over-fetches when any filter is set.
        """
        filtered = any(v is not None for v in (category, source, exclude_owner))
        fetch = limit * 4 if filtered else limit
        vec_rows = self._conn.execute(
            f"SELECT rowid, distance FROM {table} WHERE embedding MATCH ? ORDER BY distance LIMIT ?",
            (json.dumps(embedding), fetch),
        ).fetchall()

        results: list[tuple[Chunk, float]] = []
        for vec_row in vec_rows:
            row = self._conn.execute(
                f"SELECT {_CHUNK_COLUMNS}, category, source, owner_id FROM chunks WHERE rowid = ?",
                (vec_row["rowid"],),
            ).fetchone()
            if row is None:
                continue
            if category is not None and (row["category"] or "").lower() != category.lower():
                continue
            if source is not None and row["source"] != source:
                continue
            if exclude_owner is not None and row["owner_id"] == exclude_owner:
                continue
            results.append((_row_to_chunk(row), vec_row["distance"]))
            if len(results) >= limit:
                break
        return results


# ------------------------------------------------------------------
# Filter compilation
# ------------------------------------------------------------------


def _compile_filter(flt: RecordFilter) -> tuple[str, list[Any]]:
    clauses: list[str] = []
    params: list[Any] = []

    if flt.any_of:
        parts = []
        for match in flt.any_of:
            sql, p = _compile_match(match)
            parts.append(sql)
            params.extend(p)
        clauses.append("(" + " OR ".join(parts) + ")")

    for match in flt.all_of:
        sql, p = _compile_match(match)
        clauses.append(sql)
        params.extend(p)

    return " AND ".join(clauses), params


def _compile_match(match: FieldMatch) -> tuple[str, list[Any]]:
    if match.field not in _FILTERABLE_COLUMNS:
        raise ValueError(f"Field '{match.field}' cannot be used in a record filter")
    column = match.field
    if match.mode is MatchMode.IN:
        values = match.value if isinstance(match.value, tuple) else (match.value,)
        if not values:
            return "0", []
        placeholders = ",".join("?" * len(values))
        return f"LOWER({column}) IN ({placeholders})", [v.lower() for v in values]
    if match.mode is MatchMode.EQUALS:
        return f"LOWER({column}) = ?", [str(match.value).lower()]
    escaped = (
        str(match.value).lower().replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    )
    return f"LOWER({column}) LIKE ? ESCAPE '\\'", [f"%{escaped}%"]


# ------------------------------------------------------------------
# Row → model helpers
# ------------------------------------------------------------------


def _row_to_record(row: sqlite3.Row) -> IngredientRecord:
    return IngredientRecord(
        code=row["code"],
        trade_name=row["trade_name"],
        inci_name=row["inci_name"],
        supplier=row["supplier"],
        company=row["company"],
        cost=row["cost"],
        benefits=row["benefits"],
        details=row["details"],
        category=row["category"],
        function=row["function"],
        kind=RecordKind(row["kind"]),
        source=row["source"],
        locale=json.loads(row["locale"] or "{}"),
        extra=json.loads(row["extra"] or "{}"),
    )


def _row_to_chunk(row: sqlite3.Row) -> Chunk:
    return Chunk(
        id=row["id"],
        record_code=row["record_code"],
        text=row["text"],
        chunk_type=ChunkType(row["chunk_type"]),
        priority=row["priority"],
        source_fields=frozenset(json.loads(row["source_fields"] or "[]")),
        metadata=json.loads(row["metadata"] or "{}"),
    )
