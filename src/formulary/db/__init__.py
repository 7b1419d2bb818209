"""Formulary database layer."""

from formulary.db.connection import Database
from formulary.db.migrations import MIGRATIONS, run_migrations
from formulary.db.repository import Repository
from formulary.db.schema import initialize
from formulary.db.vectors import ensure_vec_table, model_to_slug, vec_table_name

__all__ = [
    "Database",
    "Repository",
    "initialize",
    "run_migrations",
    "MIGRATIONS",
    "ensure_vec_table",
    "model_to_slug",
    "vec_table_name",
]
