"""formulary status: knowledge base overview.

Shows the active configuration, record and chunk counts, chunks per type
and the vec tables present in the database.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from formulary.cli.errors import err_config
from formulary.config import FormularyConfig, load_config
from formulary.db.connection import Database
from formulary.db.repository import Repository
from formulary.db.schema import initialize
from formulary.db.vectors import list_vec_tables, model_to_slug, vec_table_name
from formulary.errors import ConfigurationError

console = Console()


def status_cmd(
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to .formulary.db (default from config)."),
    ] = None,
) -> None:
    """Show configuration and knowledge base statistics."""
    try:
        cfg = load_config()
    except ConfigurationError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1)

    db_path = db if db is not None else Path(cfg.database.path)
    _show_config_panel(db_path, cfg)

    if not db_path.exists():
        console.print(
            Panel(
                "[yellow]No database found.[/]\n"
                "  Run:  formulary ingest --file <records.json>",
                title="[bold]Knowledge Base[/]",
                expand=False,
            )
        )
        return

    conn = _open_db(db_path)
    try:
        _show_knowledge_panel(conn, Repository(conn), cfg)
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Panel renderers
# ---------------------------------------------------------------------------


def _show_config_panel(db: Path, cfg: FormularyConfig) -> None:
    db_info = f"{db}"
    if db.exists():
        size_mb = db.stat().st_size / (1024 * 1024)
        db_info = f"{db} ({size_mb:.1f} MB)"

    s = cfg.search
    lines = [
        f"Database:   {db_info}",
        f"Embedding:  {cfg.embedding.model} ({cfg.embedding.dimensions} dims)",
        f"Search:     top_k={s.top_k}  threshold={s.threshold}  "
        f"semantic={s.semantic_weight}  keyword={s.keyword_weight}",
        f"Rerank:     {'on' if cfg.rerank.enabled else 'off'}"
        + (f" ({cfg.rerank.model})" if cfg.rerank.model else ""),
    ]
    console.print(Panel("\n".join(lines), title="[bold]Configuration[/]", expand=False))


def _show_knowledge_panel(conn: sqlite3.Connection, repo: Repository, cfg: FormularyConfig) -> None:
    records = repo.count_records()
    chunks = repo.count_chunks()
    vec_tables = list_vec_tables(conn)
    active = vec_table_name(model_to_slug(cfg.embedding.model))

    lines = [
        f"Records: [bold]{records:,}[/]  |  "
        f"Chunks: [bold]{chunks:,}[/]  |  "
        f"Vec tables: [bold]{len(vec_tables)}[/]"
    ]
    for vt in vec_tables:
        marker = " [green](active)[/]" if vt == active else ""
        lines.append(f"  {vt}{marker}")
    if records == 0:
        lines.append("[dim]No records ingested yet.[/]")
    elif active not in vec_tables:
        lines.append(f"[yellow]No embeddings for {cfg.embedding.model}; semantic search "
                     "will be unavailable.[/]")
    console.print(Panel("\n".join(lines), title="[bold]Knowledge Base[/]", expand=False))

    by_type = repo.count_chunks_by_type()
    if by_type:
        table = Table(title="Chunks by type", show_header=True, header_style="bold")
        table.add_column("Type")
        table.add_column("Count", justify="right")
        for chunk_type, n in by_type.items():
            table.add_row(chunk_type, f"{n:,}")
        console.print(table)


def _open_db(db_path: Path) -> sqlite3.Connection:
    db = Database(db_path)
    conn = db.connect()
    initialize(conn)
    return conn
