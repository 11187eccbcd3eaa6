from __future__ import annotations

from collections.abc import Collection
import math

from docqa.config import ConfigurationError
from docqa.services.rag.embedding_client import EmbeddingClient, EmbeddingClientError
from docqa.services.rag.types import Index, SearchHit


def _cosine(a: list[float], b: list[float]) -> float:
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0 or norm_b == 0:
        return 0.0
    return dot / (norm_a * norm_b)


def search(
    index: Index,
    query_vector: list[float],
    *,
    k: int,
    allowed_sources: Collection[str] | None = None,
) -> list[SearchHit]:
    """Brute-force cosine ranking over ``index``.

    With a non-empty ``allowed_sources`` only items from those documents are
    candidates; an allow-list that matches nothing yields no hits.
    """
    if k <= 0 or not index.items:
        return []

    if len(query_vector) != index.dim:
        raise ConfigurationError(
            f"Query vector has {len(query_vector)} dimensions but the index was built with "
            f"{index.dim}; rebuild the index or fix the embedder configuration"
        )

    candidates = index.items
    if allowed_sources:
        allowed = set(allowed_sources)
        candidates = [item for item in candidates if item.source_path in allowed]

    hits = [SearchHit(item=item, score=_cosine(query_vector, item.vector)) for item in candidates]
    hits.sort(key=lambda hit: hit.score, reverse=True)
    return hits[:k]


def embed_query(query_text: str, *, embedding_client: EmbeddingClient) -> list[float]:
    normalized_query = query_text.strip()
    if not normalized_query:
        raise ValueError("query_text must not be empty")

    vectors = embedding_client.embed_texts([normalized_query])
    if not vectors:
        raise EmbeddingClientError("Failed to generate query embedding: no vector returned")
    return vectors[0]


def search_index(
    index: Index,
    *,
    query_text: str,
    embedding_client: EmbeddingClient,
    top_k: int = 12,
    allowed_sources: Collection[str] | None = None,
) -> list[SearchHit]:
    if not index.items:
        return []
    query_vector = embed_query(query_text, embedding_client=embedding_client)
    return search(index, query_vector, k=top_k, allowed_sources=allowed_sources)
