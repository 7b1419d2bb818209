"""formulary search: hybrid search over the ingredient knowledge base.

Runs exact, metadata, fuzzy and semantic strategies in parallel and prints
one ranked list. Without an API key for the embedding provider the semantic
strategy is switched off and the other three still run.
"""

from __future__ import annotations

import sqlite3
from enum import Enum
from pathlib import Path
from typing import Annotated, Any

import typer
from rich.console import Console
from rich.table import Table

from formulary.cli.errors import (
    err_config,
    err_no_db,
    err_search_unavailable,
    warn_semantic_disabled,
)
from formulary.config import FormularyConfig, load_config
from formulary.db.connection import Database
from formulary.db.schema import initialize
from formulary.errors import ConfigurationError
from formulary.rag.engine import HybridSearchEngine, format_response
from formulary.rag.llm_client import validate_api_key
from formulary.rag.models import SearchOptions, SearchResponse, SearchStatus

console = Console()


class OutputFormat(str, Enum):
    table = "table"
    text = "text"
    json = "json"


def search_cmd(
    query: Annotated[str, typer.Argument(help="Material code, name or free-text question.")],
    db: Annotated[
        Path | None,
        typer.Option("--db", help="Path to .formulary.db (default from config)."),
    ] = None,
    top_k: Annotated[
        int | None,
        typer.Option("--top-k", "-k", min=1, help="Maximum number of results."),
    ] = None,
    threshold: Annotated[
        float | None,
        typer.Option("--threshold", min=0.0, max=1.0, help="Minimum final score."),
    ] = None,
    category: Annotated[
        str | None,
        typer.Option("--category", help="Restrict results to one category."),
    ] = None,
    source: Annotated[
        str | None,
        typer.Option("--source", help="Restrict results to one source tag."),
    ] = None,
    exact: Annotated[bool, typer.Option("--exact/--no-exact", help="Exact code match.")] = True,
    metadata: Annotated[
        bool, typer.Option("--metadata/--no-metadata", help="Metadata filter match.")
    ] = True,
    fuzzy: Annotated[bool, typer.Option("--fuzzy/--no-fuzzy", help="Fuzzy name match.")] = True,
    semantic: Annotated[
        bool, typer.Option("--semantic/--no-semantic", help="Vector similarity match.")
    ] = True,
    rerank: Annotated[
        bool | None,
        typer.Option("--rerank/--no-rerank", help="Rerank merged results (default from config)."),
    ] = None,
    output: Annotated[
        OutputFormat,
        typer.Option("--format", help="Output format."),
    ] = OutputFormat.table,
    explain: Annotated[
        bool,
        typer.Option("--explain", help="Show query classification and strategy counts."),
    ] = False,
) -> None:
    """Search ingredients by code, name, property or free-text question."""
    try:
        cfg = load_config()
    except ConfigurationError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1)

    db_path = db if db is not None else Path(cfg.database.path)
    if not db_path.exists():
        console.print(err_no_db(str(db_path)))
        raise typer.Exit(1)

    if semantic and not _has_embedding_key(cfg):
        provider = cfg.embedding.model.split("/")[0] if "/" in cfg.embedding.model else "openai"
        console.print(warn_semantic_disabled(provider))
        semantic = False

    overrides: dict[str, Any] = {
        "enable_exact": exact,
        "enable_metadata": metadata,
        "enable_fuzzy": fuzzy,
        "enable_semantic": semantic,
        "category": category,
        "source": source,
    }
    if top_k is not None:
        overrides["top_k"] = top_k
    if threshold is not None:
        overrides["threshold"] = threshold
    if rerank is not None:
        overrides["rerank"] = rerank

    conn = _open_db(db_path)
    try:
        with HybridSearchEngine.from_config(cfg, conn) as engine:
            options = SearchOptions.from_config(cfg, **overrides)
            response = engine.search(query, options)
    except ConfigurationError as exc:
        console.print(err_config(str(exc)))
        raise typer.Exit(1)
    finally:
        conn.close()

    if explain:
        _show_explain(response)

    if response.status is SearchStatus.UNAVAILABLE:
        console.print(err_search_unavailable([s.value for s in response.failed_strategies]))
        raise typer.Exit(1)

    if output is OutputFormat.json:
        console.print_json(data=_response_json(response))
    elif output is OutputFormat.text:
        console.print(format_response(response), markup=False, highlight=False)
    else:
        _show_table(response)


# ------------------------------------------------------------------
# Rendering
# ------------------------------------------------------------------


def _show_table(response: SearchResponse) -> None:
    if response.status is not SearchStatus.OK:
        console.print(f"[yellow]{format_response(response)}[/]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("#", justify="right", style="dim")
    table.add_column("Code", style="cyan")
    table.add_column("Trade name")
    table.add_column("INCI name")
    table.add_column("Match")
    table.add_column("Score", justify="right")
    for i, c in enumerate(response.candidates, start=1):
        meta = c.metadata
        table.add_row(
            str(i),
            str(meta.get("code") or c.document_id or ""),
            str(meta.get("trade_name") or ""),
            str(meta.get("inci_name") or ""),
            c.label,
            f"{c.final_score or 0.0:.3f}",
        )
    console.print(table)

    notes = []
    if response.filtered_out:
        notes.append(f"{response.filtered_out} more below threshold or cut by --top-k")
    if response.short_circuited:
        notes.append("exact match, other strategies skipped")
    if response.timed_out_strategies:
        notes.append("timed out: " + ", ".join(s.value for s in response.timed_out_strategies))
    if response.failed_strategies:
        notes.append("failed: " + ", ".join(s.value for s in response.failed_strategies))
    if notes:
        console.print(f"[dim]{'; '.join(notes)}[/]")


def _show_explain(response: SearchResponse) -> None:
    cls = response.classification
    console.print(f"[bold]Query type:[/] {cls.query_type.value}  "
                  f"[bold]Strategy hint:[/] {cls.search_strategy.value}  "
                  f"[bold]Language:[/] {cls.language.value}  "
                  f"[bold]Confidence:[/] {cls.confidence:.2f}")
    if cls.entities.codes:
        console.print(f"[bold]Codes:[/] {', '.join(cls.entities.codes)}")
    if cls.entities.names:
        console.print(f"[bold]Names:[/] {', '.join(cls.entities.names)}")
    if len(cls.expanded_queries) > 1:
        console.print(f"[bold]Expanded:[/] {' | '.join(cls.expanded_queries[1:])}")
    counts = ", ".join(f"{s.value}={n}" for s, n in response.strategy_counts.items())
    console.print(f"[bold]Candidates:[/] {counts or 'none'}  "
                  f"[dim]({response.elapsed_ms:.0f} ms)[/]")


def _response_json(response: SearchResponse) -> dict[str, Any]:
    return {
        "query": response.classification.query,
        "status": response.status.value,
        "total_candidates": response.total_candidates,
        "reranked": response.reranked,
        "short_circuited": response.short_circuited,
        "failed_strategies": [s.value for s in response.failed_strategies],
        "timed_out_strategies": [s.value for s in response.timed_out_strategies],
        "results": [c.to_dict() for c in response.candidates],
    }


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _has_embedding_key(cfg: FormularyConfig) -> bool:
    try:
        validate_api_key(cfg.embedding.model)
    except EnvironmentError:
        return False
    return True


def _open_db(db_path: Path) -> sqlite3.Connection:
    db = Database(db_path)
    conn = db.connect()
    initialize(conn)
    return conn
