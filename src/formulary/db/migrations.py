"""Forward-only migration runner for the Formulary schema.

Vec tables (vec_chunks_*) are NOT migration-managed; use ensure_vec_table().
"""

from __future__ import annotations

import sqlite3

# schema_version is the bootstrap table, created before migrations run.
_CREATE_SCHEMA_VERSION = """
CREATE TABLE IF NOT EXISTS schema_version (
    version     INTEGER NOT NULL,
    applied_at  DATETIME NOT NULL DEFAULT (datetime('now'))
)
"""

_V1_SQL = """
CREATE TABLE IF NOT EXISTS records (
    code            TEXT PRIMARY KEY,
    trade_name      TEXT,
    inci_name       TEXT,
    supplier        TEXT,
    company         TEXT,
    cost            TEXT,
    benefits        TEXT,
    details         TEXT,
    category        TEXT,
    function        TEXT,
    kind            TEXT NOT NULL DEFAULT 'stock',
    source          TEXT NOT NULL DEFAULT 'in_stock',
    locale          TEXT NOT NULL DEFAULT '{}',
    extra           TEXT NOT NULL DEFAULT '{}',
    ingested_at     DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_records_category ON records(category);
CREATE INDEX IF NOT EXISTS idx_records_source ON records(source);

CREATE TABLE IF NOT EXISTS chunks (
    id              TEXT NOT NULL UNIQUE,
    record_code     TEXT NOT NULL,
    chunk_type      TEXT NOT NULL,
    priority        REAL NOT NULL,
    source_fields   TEXT NOT NULL DEFAULT '[]',
    text            TEXT NOT NULL,
    metadata        TEXT NOT NULL DEFAULT '{}',
    category        TEXT,
    source          TEXT,
    owner_id        TEXT,
    created_at      DATETIME NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_chunks_record ON chunks(record_code);
"""

# Append-only. Each entry: (version: int, sql: str).
# executescript() issues an implicit COMMIT before running.
MIGRATIONS: list[tuple[int, str]] = [
    (1, _V1_SQL),
]


def run_migrations(conn: sqlite3.Connection) -> None:
    """Apply all pending migrations in ascending version order.

    Idempotent: safe to call on a database at any version.
    Vec tables are NOT managed here; use ensure_vec_table() instead.
    """
    conn.execute(_CREATE_SCHEMA_VERSION)
    conn.commit()

    row = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    current = row[0] if row[0] is not None else 0

    for version, sql in MIGRATIONS:
        if version > current:
            conn.executescript(sql)
            conn.execute(
                "INSERT INTO schema_version (version) VALUES (?)", (version,)
            )
            conn.commit()
