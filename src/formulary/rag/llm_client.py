"""LiteLLM client wrapper with retry, backoff, and API key validation.

All embedding and rerank calls in the ingest/search pipeline route through this
module. LiteLLM's built-in retry is used (num_retries=3, exponential backoff).
API key presence is validated before any ingest begins.
"""

from __future__ import annotations

import os

import litellm

# Disable LiteLLM verbose logging unless explicitly enabled
litellm.suppress_debug_info = True
litellm.set_verbose = False  # type: ignore[assignment]


# ------------------------------------------------------------------
# Provider → env var mapping for API key validation
# ------------------------------------------------------------------

_PROVIDER_ENV: dict[str, str | None] = {
    "openai": "OPENAI_API_KEY",
    "azure": "AZURE_API_KEY",
    "cohere": "COHERE_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "google": "GOOGLE_API_KEY",
    "mistral": "MISTRAL_API_KEY",
    "voyage": "VOYAGE_API_KEY",
    "jina_ai": "JINA_AI_API_KEY",
    "together_ai": "TOGETHERAI_API_KEY",
    "ollama": None,  # Local, no key required
    "infinity": None,
}


def validate_api_key(model: str) -> None:
    """Check that the required API key env var is set for *model*.

    Args:
        model: LiteLLM model string in 'provider/model' format.

    Raises:
        EnvironmentError: If the required key is missing from environment.
    """
    provider = model.split("/")[0].lower() if "/" in model else "openai"
    env_var = _PROVIDER_ENV.get(provider)

    if env_var is None:
        return  # No key required (e.g. ollama) or unknown provider

    if not os.getenv(env_var):
        raise EnvironmentError(
            f"API key not found for provider '{provider}'. "
            f"Set the {env_var} environment variable."
        )


def embed(model: str, text: str, num_retries: int = 3) -> list[float]:
    """Call litellm.embedding() with retry/backoff. Returns embedding vector.

    Args:
        model: LiteLLM embedding model string (provider/model format).
        text: Text to embed.
        num_retries: Number of retries on transient errors.

    Returns:
        Embedding as a list of floats.
    """
    response = litellm.embedding(
        model=model,
        input=[text],
        num_retries=num_retries,
    )
    return response.data[0]["embedding"]


def embed_batch(model: str, texts: list[str], num_retries: int = 3) -> list[list[float]]:
    """Embed several texts in one request. Output order matches *texts*."""
    if not texts:
        return []
    response = litellm.embedding(
        model=model,
        input=texts,
        num_retries=num_retries,
    )
    items = sorted(response.data, key=lambda d: d["index"])
    return [item["embedding"] for item in items]


def rerank(
    model: str,
    query: str,
    documents: list[str],
    num_retries: int = 3,
) -> list[float]:
    """Score *documents* against *query* with a cross-encoder via litellm.rerank().

    Args:
        model: LiteLLM rerank model string (e.g. 'cohere/rerank-english-v3.0').
        query: Query text.
        documents: Candidate texts, in candidate order.
        num_retries: Number of retries on transient errors.

    Returns:
        One relevance score per document, in the input order. Documents the
        provider did not score get 0.0.
    """
    if not documents:
        return []
    response = litellm.rerank(
        model=model,
        query=query,
        documents=documents,
        top_n=len(documents),
        num_retries=num_retries,
    )
    scores = [0.0] * len(documents)
    for item in response.results or []:
        scores[item["index"]] = float(item["relevance_score"])
    return scores
