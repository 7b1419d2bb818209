"""Formulary CLI entry point."""

from __future__ import annotations

import importlib.metadata
import logging
from typing import Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler

from formulary.cli.ingest import ingest_cmd
from formulary.cli.remove import remove_cmd
from formulary.cli.search import search_cmd
from formulary.cli.status import status_cmd


def _version_callback(value: bool) -> None:
    if value:
        try:
            ver = importlib.metadata.version("formulary")
        except importlib.metadata.PackageNotFoundError:
            ver = "dev"
        typer.echo(f"formulary {ver}")
        raise typer.Exit()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )
    # LiteLLM and HTTP client chatter stays quiet even in verbose mode
    for name in ("LiteLLM", "litellm", "httpx", "httpcore"):
        logging.getLogger(name).setLevel(logging.WARNING)


app = typer.Typer(
    name="formulary",
    help=(
        "Formulary: hybrid search over a cosmetic-ingredient knowledge base.\n\n"
        "  formulary ingest  Load, chunk and embed ingredient records.\n"
        "  formulary search  Exact, metadata, fuzzy and semantic search in one ranked list."
    ),
    add_completion=False,
)


@app.callback()
def main_callback(
    version: Annotated[
        bool,
        typer.Option(
            "--version",
            callback=_version_callback,
            is_eager=True,
            help="Show version and exit.",
        ),
    ] = False,
    verbose: Annotated[
        bool,
        typer.Option("--verbose", "-v", help="Log pipeline details to stderr."),
    ] = False,
) -> None:
    """Formulary: hybrid ingredient search CLI."""
    _configure_logging(verbose)


app.command("ingest")(ingest_cmd)
app.command("search")(search_cmd)
app.command("status")(status_cmd)
app.command("remove")(remove_cmd)


@app.command("version")
def version_cmd() -> None:
    """Show the installed Formulary version."""
    try:
        ver = importlib.metadata.version("formulary")
    except importlib.metadata.PackageNotFoundError:
        ver = "dev"
    typer.echo(f"formulary {ver}")


if __name__ == "__main__":
    app()
