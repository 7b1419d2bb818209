"""Tests for the forward-only migration runner and connection setup."""

from __future__ import annotations

from formulary.db.connection import Database
from formulary.db.migrations import MIGRATIONS, run_migrations
from formulary.db.schema import initialize


def _fresh_conn(tmp_path):
    """Open a new connection without running migrations."""
    db = Database(tmp_path / "test.db")
    return db.connect()


def _table_exists(conn, name: str) -> bool:
    return conn.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?", (name,)
    ).fetchone() is not None


# --- Bootstrap ---

def test_run_migrations_creates_tables(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    for table in ("schema_version", "records", "chunks"):
        assert _table_exists(conn, table)
    conn.close()


def test_run_migrations_records_version(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    version = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()[0]
    assert version == MIGRATIONS[-1][0]
    conn.close()


# --- Idempotency ---

def test_run_migrations_idempotent(tmp_path):
    conn = _fresh_conn(tmp_path)
    run_migrations(conn)
    run_migrations(conn)
    count = conn.execute("SELECT COUNT(*) FROM schema_version").fetchone()[0]
    assert count == len(MIGRATIONS)
    conn.close()


def test_initialize_runs_migrations(tmp_path):
    conn = _fresh_conn(tmp_path)
    initialize(conn)
    assert _table_exists(conn, "records")
    conn.close()


# --- Connection ---

def test_database_context_manager_loads_sqlite_vec(tmp_path):
    with Database(tmp_path / "ctx.db") as conn:
        version = conn.execute("SELECT vec_version()").fetchone()[0]
    assert version


def test_connection_enables_foreign_keys(tmp_db):
    assert tmp_db.execute("PRAGMA foreign_keys").fetchone()[0] == 1


def test_connect_creates_missing_parent_dirs(tmp_path):
    path = tmp_path / "nested" / "dir" / "kb.db"
    conn = Database(path).connect()
    try:
        assert path.parent.is_dir()
        assert conn.execute("PRAGMA busy_timeout").fetchone()[0] == 5000
    finally:
        conn.close()
