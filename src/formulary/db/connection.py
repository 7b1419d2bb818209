"""SQLite connection for the knowledge base, with the sqlite-vec extension loaded."""

from __future__ import annotations

import sqlite3
from pathlib import Path

import sqlite_vec

# Milliseconds a statement waits on a locked database before failing.
BUSY_TIMEOUT_MS = 5000


class Database:
    """Knowledge-base SQLite database with sqlite-vec vector search support.

    One connection is opened per process and shared by the record store and
    the vector store; strategy threads reach it through those adapters, which
    serialise access themselves. Hence ``check_same_thread=False``.

    Args:
        db_path: Database file. Missing parent directories are created on connect.
    """

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        self._conn: sqlite3.Connection | None = None

    def connect(self) -> sqlite3.Connection:
        """Open a connection with rows as ``sqlite3.Row`` and sqlite-vec loaded."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        conn.enable_load_extension(True)
        sqlite_vec.load(conn)
        conn.enable_load_extension(False)
        conn.execute("PRAGMA foreign_keys = ON")
        conn.execute("PRAGMA journal_mode = WAL")
        conn.execute(f"PRAGMA busy_timeout = {BUSY_TIMEOUT_MS}")
        return conn

    def __enter__(self) -> sqlite3.Connection:
        self._conn = self.connect()
        return self._conn

    def __exit__(self, *args: object) -> None:
        if self._conn:
            self._conn.close()
            self._conn = None
