"""Formulary rich error messages: actionable feedback.

Every error shown to the user must contain:
  1. What went wrong (clear cause)
  2. The exact action the user should take to fix it

Usage:
    from formulary.cli.errors import err_no_api_key, err_no_db
    console.print(err_no_api_key("openai"))
    raise typer.Exit(1)
"""

from __future__ import annotations


def err_no_api_key(provider: str) -> str:
    """No API key for *provider*.

    Example:
        No API key for 'openai'. Set:  export OPENAI_API_KEY=sk-...
    """
    env_map = {
        "openai": "OPENAI_API_KEY",
        "cohere": "COHERE_API_KEY",
        "gemini": "GEMINI_API_KEY",
        "mistral": "MISTRAL_API_KEY",
        "azure": "AZURE_API_KEY",
        "voyage": "VOYAGE_API_KEY",
    }
    env_var = env_map.get(provider.lower(), f"{provider.upper()}_API_KEY")
    return (
        f"[red]Error:[/] No API key for '{provider}'.\n"
        f"  Set:  export {env_var}=sk-..."
    )


def warn_semantic_disabled(provider: str) -> str:
    """Search continues without the semantic strategy."""
    return (
        f"[yellow]Warning:[/] No API key for '{provider}'; semantic search disabled.\n"
        "  Exact, metadata and fuzzy matching still run."
    )


def err_no_db(db_path: str = ".formulary.db") -> str:
    """No knowledge base database at *db_path*."""
    return (
        f"[red]Error:[/] No database found at '{db_path}'.\n"
        "  Run:  formulary ingest --file <records.json>"
    )


def err_config(message: str) -> str:
    """Configuration could not be loaded or is invalid."""
    return (
        f"[red]Error:[/] Invalid configuration.\n"
        f"  {message}\n"
        "  Fix formulary.yaml (or ~/.formulary/config.yaml) and retry."
    )


def err_unsupported_file(path: str) -> str:
    """Record file with an unsupported extension."""
    return (
        f"[red]Error:[/] Unsupported record file: '{path}'\n"
        "  Use a .json, .jsonl or .csv export."
    )


def err_record_not_found(code: str) -> str:
    """Material code not in the knowledge base."""
    return (
        f"[yellow]Record not found:[/] '{code}' is not in the knowledge base.\n"
        "  Run:  formulary status  to see what is indexed."
    )


def err_search_unavailable(failed: list[str]) -> str:
    """Every search strategy failed."""
    names = ", ".join(failed) if failed else "all strategies"
    return (
        f"[red]Error:[/] Search unavailable ({names} failed).\n"
        "  Check the database file and the embedding provider, then retry with --verbose."
    )
