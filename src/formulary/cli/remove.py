"""formulary remove: drop one ingredient record from the knowledge base.

Removes the record row, its chunks and their embeddings in every vec table.

Usage:
  formulary remove --code RM000001
  formulary remove --code RM000001 --yes
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console

from formulary.cli.errors import err_no_db, err_record_not_found
from formulary.db.connection import Database
from formulary.db.repository import Repository
from formulary.db.schema import initialize
from formulary.db.vectors import list_vec_tables

console = Console()

_DEFAULT_DB = Path(".formulary.db")


def remove_cmd(
    code: Annotated[
        str,
        typer.Option("--code", "-c", help="Material code to remove."),
    ],
    db: Annotated[
        Path,
        typer.Option("--db", help="Path to .formulary.db."),
    ] = _DEFAULT_DB,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip confirmation prompt."),
    ] = False,
) -> None:
    """Remove a record and all its chunks from the knowledge base."""
    if not db.exists():
        console.print(err_no_db(str(db)))
        raise typer.Exit(1)

    conn = _open_db(db)
    repo = Repository(conn)

    try:
        code = code.strip()
        record = repo.get_record(code)
        if record is None:
            console.print(err_record_not_found(code))
            raise typer.Exit(0)

        chunk_count = len(repo.list_chunks_by_record(code))
        vec_tables = len(list_vec_tables(conn))

        console.print(f"\nRemove record: [bold]{code}[/] {record.trade_name or ''}")
        console.print(f"  Chunks: {chunk_count}  |  Vec tables: {vec_tables}")

        if not yes:
            if not typer.confirm("Confirm removal?", default=False):
                console.print("[dim]Cancelled.[/]")
                raise typer.Exit(0)

        removed = repo.delete_chunks_by_record(code)
        repo.delete_record(code)

        console.print(f"\n[green]✓[/] Removed: {code}")
        console.print(f"  {removed} chunks deleted")
    finally:
        conn.close()


def _open_db(db_path: Path) -> sqlite3.Connection:
    db = Database(db_path)
    conn = db.connect()
    initialize(conn)
    return conn
