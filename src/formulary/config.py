"""Formulary configuration loader.

Priority (high → low):
  1. CLI flags           (handled at call site, not in this module)
  2. Environment variables  (FORMULARY_DB, FORMULARY_EMBEDDING_MODEL,
                             FORMULARY_RERANK_MODEL)
  3. Per-project formulary.yaml
  4. Global ~/.formulary/config.yaml  (defaults only, no API keys)
  5. Hardcoded defaults

Global config must never contain API keys; use environment variables instead.
All YAML reads use yaml.safe_load(), never yaml.load().
"""

from __future__ import annotations

import os
import re
import warnings
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

from formulary.errors import ConfigurationError

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

_GLOBAL_CONFIG_DIR: Path = Path.home() / ".formulary"
_GLOBAL_CONFIG_PATH: Path = _GLOBAL_CONFIG_DIR / "config.yaml"
_PROJECT_CONFIG_NAME: str = "formulary.yaml"

# Fields that suggest an API key; forbidden in global config.
# Does NOT match legitimate config keys like max_tokens or top_k.
_API_KEY_RE: re.Pattern[str] = re.compile(
    r"api[_\-]?(?:key|secret)"  # api_key, api-key, api_secret, apikey
    r"|_token$"                  # github_token, access_token (suffix)
    r"|^token$"                  # exactly "token"
    r"|_secret$"                 # client_secret (suffix)
    r"|^secret$"                 # exactly "secret"
    r"|passw(?:ord|d)"           # password, passwd
    r"|credential",              # credential, credentials
    re.IGNORECASE,
)

_KNOWN_SECTIONS: frozenset[str] = frozenset(
    ["database", "embedding", "search", "chunking", "rerank"]
)

_STRATEGIES: tuple[str, ...] = ("exact", "metadata", "fuzzy", "semantic")

# Chunk-type priority table. code_exact = primary_identifier > technical_specs
# ≈ combined_context > commercial_info > descriptive.
DEFAULT_CHUNK_PRIORITIES: dict[str, float] = {
    "code_exact": 1.0,
    "primary_identifier": 1.0,
    "technical_specs": 0.9,
    "locale": 0.9,
    "combined_context": 0.85,
    "commercial_info": 0.8,
    "descriptive": 0.7,
}


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------


@dataclass
class DatabaseCfg:
    """Backend connection (formulary.yaml: database:)."""

    path: str = ".formulary.db"


@dataclass
class EmbeddingCfg:
    """Embedding model configuration (formulary.yaml: embedding:)."""

    model: str = "openai/text-embedding-3-small"
    dimensions: int = 1536


@dataclass
class SearchCfg:
    """Default search options (formulary.yaml: search:).

    Attributes:
        top_k: Maximum number of results returned.
        threshold: Minimum final score a result needs to be returned.
        similarity_threshold: Minimum vector similarity for semantic hits.
        semantic_weight: Multiplier for semantic-tagged scores in final ranking.
        keyword_weight: Multiplier for keyword-tagged (fuzzy) scores.
        fuzzy_threshold: Minimum fuzzy similarity to keep a record.
        short_circuit_exact: Skip other strategies when an exact hit scores >= 0.95.
        timeout: Seconds to wait for strategies before merging partial results.
        boost_weights: Per-strategy multipliers applied in final ranking.
    """

    top_k: int = 10
    threshold: float = 0.3
    similarity_threshold: float = 0.5
    semantic_weight: float = 0.6
    keyword_weight: float = 0.4
    fuzzy_threshold: float = 0.6
    short_circuit_exact: bool = True
    timeout: float = 30.0
    boost_weights: dict[str, float] = field(
        default_factory=lambda: {s: 1.0 for s in _STRATEGIES}
    )


@dataclass
class ChunkingCfg:
    """Chunk builder configuration (formulary.yaml: chunking:)."""

    max_chunk_size: int = 500
    overlap: int = 50
    max_split_chunks: int = 3
    priorities: dict[str, float] = field(
        default_factory=lambda: dict(DEFAULT_CHUNK_PRIORITIES)
    )


@dataclass
class RerankCfg:
    """Reranker configuration (formulary.yaml: rerank:).

    ``model`` = None selects the term-overlap heuristic; any LiteLLM rerank
    model string (e.g. ``cohere/rerank-english-v3.0``) selects the
    cross-encoder call.
    """

    enabled: bool = False
    model: str | None = None


@dataclass
class FormularyConfig:
    """Root configuration object, built by load_config() from merged YAML layers."""

    database: DatabaseCfg = field(default_factory=DatabaseCfg)
    embedding: EmbeddingCfg = field(default_factory=EmbeddingCfg)
    search: SearchCfg = field(default_factory=SearchCfg)
    chunking: ChunkingCfg = field(default_factory=ChunkingCfg)
    rerank: RerankCfg = field(default_factory=RerankCfg)


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def _check_no_api_keys(data: dict[str, Any], source: Path) -> None:
    """Raise ConfigurationError if *data* contains any API-key-like key names."""

    def _scan(obj: Any, path: str) -> None:
        if isinstance(obj, dict):
            for k, v in obj.items():
                full = f"{path}.{k}" if path else k
                if _API_KEY_RE.search(str(k)):
                    raise ConfigurationError(
                        f"Global config '{source}' contains a forbidden key '{full}'.\n"
                        f"  API keys must be set via environment variables, not config files.\n"
                        f"  Remove '{full}' from {source.name} and use:\n"
                        f"    export {str(k).upper().replace('-', '_')}=<value>"
                    )
                _scan(v, full)

    _scan(data, "")


def _warn_unknown_keys(data: dict[str, Any], source: Path) -> None:
    """Emit a UserWarning for unrecognised top-level keys."""
    for key in data:
        if key not in _KNOWN_SECTIONS:
            warnings.warn(
                f"Unknown config key '{key}' in '{source}'; ignored.",
                UserWarning,
                stacklevel=4,
            )


def _unit_interval(name: str, value: float) -> float:
    if not 0.0 <= value <= 1.0:
        raise ConfigurationError(f"{name} must be in [0, 1], got {value}")
    return value


def validate_config(cfg: FormularyConfig) -> None:
    """Raise ConfigurationError if *cfg* holds an out-of-range value."""
    s = cfg.search
    if s.top_k < 1:
        raise ConfigurationError(f"search.top_k must be >= 1, got {s.top_k}")
    for name in ("threshold", "similarity_threshold", "semantic_weight",
                 "keyword_weight", "fuzzy_threshold"):
        _unit_interval(f"search.{name}", getattr(s, name))
    if s.timeout <= 0:
        raise ConfigurationError(f"search.timeout must be > 0, got {s.timeout}")
    for strategy, weight in s.boost_weights.items():
        if strategy not in _STRATEGIES:
            raise ConfigurationError(
                f"search.boost_weights has unknown strategy '{strategy}' "
                f"(expected one of: {', '.join(_STRATEGIES)})"
            )
        if weight < 0:
            raise ConfigurationError(f"search.boost_weights.{strategy} must be >= 0")

    c = cfg.chunking
    if c.max_chunk_size < 20:
        raise ConfigurationError(
            f"chunking.max_chunk_size must be >= 20, got {c.max_chunk_size}"
        )
    if not 0 <= c.overlap < c.max_chunk_size:
        raise ConfigurationError(
            f"chunking.overlap must be in [0, max_chunk_size), got {c.overlap}"
        )
    if c.max_split_chunks < 1:
        raise ConfigurationError("chunking.max_split_chunks must be >= 1")
    for chunk_type, priority in c.priorities.items():
        if chunk_type not in DEFAULT_CHUNK_PRIORITIES:
            raise ConfigurationError(f"chunking.priorities has unknown type '{chunk_type}'")
        _unit_interval(f"chunking.priorities.{chunk_type}", priority)

    if cfg.embedding.dimensions < 1:
        raise ConfigurationError("embedding.dimensions must be >= 1")


# ---------------------------------------------------------------------------
# Merge + build
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return a new dict that is *base* deep-merged with *override*."""
    result = dict(base)
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = _deep_merge(result[k], v)
        else:
            result[k] = v
    return result


def _cfg_from_dict(data: dict[str, Any]) -> FormularyConfig:
    """Build a *FormularyConfig* from a merged raw YAML dict."""
    cfg = FormularyConfig()

    try:
        if "database" in data:
            d = data["database"] or {}
            cfg.database = DatabaseCfg(path=str(d.get("path", cfg.database.path)))

        if "embedding" in data:
            e = data["embedding"] or {}
            cfg.embedding = EmbeddingCfg(
                model=str(e.get("model", cfg.embedding.model)),
                dimensions=int(e.get("dimensions", cfg.embedding.dimensions)),
            )

        if "search" in data:
            s = data["search"] or {}
            d = cfg.search
            boosts = dict(d.boost_weights)
            boosts.update({str(k): float(v) for k, v in (s.get("boost_weights") or {}).items()})
            cfg.search = SearchCfg(
                top_k=int(s.get("top_k", d.top_k)),
                threshold=float(s.get("threshold", d.threshold)),
                similarity_threshold=float(
                    s.get("similarity_threshold", d.similarity_threshold)
                ),
                semantic_weight=float(s.get("semantic_weight", d.semantic_weight)),
                keyword_weight=float(s.get("keyword_weight", d.keyword_weight)),
                fuzzy_threshold=float(s.get("fuzzy_threshold", d.fuzzy_threshold)),
                short_circuit_exact=bool(s.get("short_circuit_exact", d.short_circuit_exact)),
                timeout=float(s.get("timeout", d.timeout)),
                boost_weights=boosts,
            )

        if "chunking" in data:
            c = data["chunking"] or {}
            d = cfg.chunking
            priorities = dict(d.priorities)
            priorities.update({str(k): float(v) for k, v in (c.get("priorities") or {}).items()})
            cfg.chunking = ChunkingCfg(
                max_chunk_size=int(c.get("max_chunk_size", d.max_chunk_size)),
                overlap=int(c.get("overlap", d.overlap)),
                max_split_chunks=int(c.get("max_split_chunks", d.max_split_chunks)),
                priorities=priorities,
            )

        if "rerank" in data:
            r = data["rerank"] or {}
            cfg.rerank = RerankCfg(
                enabled=bool(r.get("enabled", cfg.rerank.enabled)),
                model=r.get("model") or cfg.rerank.model,
            )
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"Invalid config value: {exc}") from exc

    return cfg


def _apply_env_overrides(cfg: FormularyConfig) -> FormularyConfig:
    """Apply FORMULARY_* environment variable overrides (layer 2)."""
    if path := os.environ.get("FORMULARY_DB"):
        cfg.database.path = path
    if model := os.environ.get("FORMULARY_EMBEDDING_MODEL"):
        cfg.embedding.model = model
    if model := os.environ.get("FORMULARY_RERANK_MODEL"):
        cfg.rerank.model = model
    return cfg


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def load_config(
    project_dir: Path | None = None,
    *,
    global_config_path: Path | None = None,
) -> FormularyConfig:
    """Load and return a merged *FormularyConfig*.

    Applies layers in order: global → per-project → env vars.
    CLI flag overrides must be applied by the caller after this function.

    Args:
        project_dir: Directory to search for *formulary.yaml*. Defaults to CWD.
        global_config_path: Override the global config path (for testing).

    Raises:
        ConfigurationError: If global config contains API-key-like fields or
            any value is out of range.
    """
    global_path = global_config_path if global_config_path is not None else _GLOBAL_CONFIG_PATH
    search_dir = project_dir if project_dir is not None else Path.cwd()

    merged: dict[str, Any] = {}

    if global_path.exists():
        raw_global = yaml.safe_load(global_path.read_text(encoding="utf-8")) or {}
        _check_no_api_keys(raw_global, global_path)
        _warn_unknown_keys(raw_global, global_path)
        merged = _deep_merge(merged, raw_global)

    project_cfg_path = search_dir / _PROJECT_CONFIG_NAME
    if project_cfg_path.exists():
        raw_project = yaml.safe_load(project_cfg_path.read_text(encoding="utf-8")) or {}
        _warn_unknown_keys(raw_project, project_cfg_path)
        merged = _deep_merge(merged, raw_project)

    cfg = _cfg_from_dict(merged)
    cfg = _apply_env_overrides(cfg)
    validate_config(cfg)
    return cfg
