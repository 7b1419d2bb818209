"""formulary ingest: load ingredient records into .formulary.db.

Record files by extension:
  .json   list of objects, or {"records": [...]}
  .jsonl  one object per line
  .csv    header row; legacy export column names accepted

Each record is split into typed chunks, embedded in one batch and written
to the vector table for the configured embedding model. Re-ingesting a
code replaces its previous chunks.
"""

from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.progress import BarColumn, Progress, SpinnerColumn, TaskProgressColumn, TextColumn
from rich.table import Table

from formulary.cli.errors import err_config, err_no_api_key, err_unsupported_file
from formulary.config import FormularyConfig, load_config
from formulary.db.connection import Database
from formulary.db.models import IngredientRecord, RecordKind
from formulary.db.repository import Repository
from formulary.db.schema import initialize
from formulary.errors import BackendUnavailable, ConfigurationError
from formulary.ingest.chunker import ChunkBuilder, ChunkerConfig, chunk_stats
from formulary.ingest.index_writer import IndexResult, IndexWriter
from formulary.ingest.records import SUPPORTED_SUFFIXES, load_records
from formulary.rag.backends import LiteLLMEmbedder, SqliteVectorStore
from formulary.rag.llm_client import validate_api_key

console = Console()


def ingest_cmd(
    file: Annotated[
        list[Path] | None,
        typer.Option("--file", "-f", help="Record file (.json, .jsonl, .csv). Repeatable."),
    ] = None,
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to .formulary.db (default from config)."),
    ] = None,
    kind: Annotated[
        RecordKind,
        typer.Option("--kind", help="Record kind when a row does not say."),
    ] = RecordKind.STOCK,
    source_tag: Annotated[
        str,
        typer.Option("--source-tag", help="Source tag stored on every record."),
    ] = "in_stock",
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Chunk and report without embedding or writing."),
    ] = False,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip confirmation prompts."),
    ] = False,
) -> None:
    """Load ingredient records, chunk them and embed them into the knowledge base."""
    files = file or []
    if not files:
        console.print("[red]Error:[/] No --file specified. Use --file records.json.")
        raise typer.Exit(1)

    cfg = _load_cfg()
    db_path = db if db is not None else Path(cfg.database.path)
    builder = ChunkBuilder(ChunkerConfig.from_config(cfg))

    records = _read_files(files, kind=kind, source=source_tag)
    if not records:
        console.print("[yellow]No records found to ingest.[/]")
        raise typer.Exit(0)

    chunks = [c for r in records for c in builder.chunk_record(r)]
    console.print(f"[green]✓[/] {len(records)} records → {len(chunks)} chunks")
    _show_chunk_stats(chunks)

    if dry_run:
        console.print("[dim]Dry run: nothing written to DB[/]")
        return

    try:
        validate_api_key(cfg.embedding.model)
    except EnvironmentError:
        provider = cfg.embedding.model.split("/")[0] if "/" in cfg.embedding.model else "openai"
        console.print(err_no_api_key(provider))
        raise typer.Exit(1)

    if not yes:
        if not typer.confirm(f"Embed {len(chunks)} chunks with {cfg.embedding.model}?",
                             default=True):
            console.print("[dim]Skipped.[/]")
            raise typer.Exit(0)

    conn = _open_db(db_path)
    try:
        result = _write(conn, cfg, builder, records)
    finally:
        conn.close()

    console.print(
        f"[green]✓[/] Indexed {result.records} records, {result.chunks} chunks "
        f"({result.replaced_chunks} replaced) → {db_path}"
    )
    if result.failed:
        console.print(
            f"[yellow]⚠ Embedding failed for {len(result.failed)} records:[/] "
            + ", ".join(result.failed)
        )
        raise typer.Exit(1)


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _load_cfg() -> FormularyConfig:
    try:
        return load_config()
    except ConfigurationError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1)


def _read_files(files: list[Path], *, kind: RecordKind, source: str) -> list[IngredientRecord]:
    records: list[IngredientRecord] = []
    for path in files:
        if path.suffix.lower() not in SUPPORTED_SUFFIXES:
            console.print(err_unsupported_file(str(path)))
            raise typer.Exit(1)
        if not path.exists():
            console.print(f"[red]Error:[/] File not found: '{path}'")
            raise typer.Exit(1)
        loaded = load_records(path, kind=kind, source=source)
        console.print(f"[bold]→ {path}[/]  {len(loaded)} records")
        records.extend(loaded)
    return records


def _write(
    conn: sqlite3.Connection,
    cfg: FormularyConfig,
    builder: ChunkBuilder,
    records: list[IngredientRecord],
) -> IndexResult:
    repo = Repository(conn)
    store = SqliteVectorStore(repo, cfg.embedding.model, cfg.embedding.dimensions)
    writer = IndexWriter(repo, store, LiteLLMEmbedder(cfg.embedding.model), builder)

    total = IndexResult()
    with Progress(
        SpinnerColumn(),
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        TaskProgressColumn(),
        transient=True,
        console=console,
    ) as prog:
        task = prog.add_task("Embedding…", total=len(records))
        for record in records:
            try:
                result = writer.write([record])
            except BackendUnavailable as exc:
                console.print(f"  [red]✗ Vector store unavailable:[/] {exc}")
                raise typer.Exit(1)
            total.records += result.records
            total.chunks += result.chunks
            total.replaced_chunks += result.replaced_chunks
            total.failed.extend(result.failed)
            prog.advance(task)
    return total


def _show_chunk_stats(chunks: list) -> None:
    stats = chunk_stats(chunks)
    if not stats.total_chunks:
        return
    table = Table(show_header=True, header_style="bold", box=None)
    table.add_column("Chunk type")
    table.add_column("Count", justify="right")
    for chunk_type, n in stats.by_type.items():
        table.add_row(chunk_type, str(n))
    console.print(table)
    console.print(f"  [dim]avg {stats.avg_character_count:.0f} chars per chunk[/]")


def _open_db(db_path: Path) -> sqlite3.Connection:
    db = Database(db_path)
    conn = db.connect()
    initialize(conn)
    return conn
