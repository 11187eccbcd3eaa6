from __future__ import annotations

from typing import Protocol

import httpx

from docqa.config import ConfigurationError, Settings
from docqa.services.rag.embedder import HashEmbeddingClient


class EmbeddingClientError(RuntimeError):
    pass


class EmbeddingClient(Protocol):
    def embed_texts(self, texts: list[str]) -> list[list[float]]: ...


class HttpEmbeddingClient:
    """OpenAI-compatible ``/embeddings`` endpoint (Ollama, LM Studio, vLLM)."""

    def __init__(
        self,
        *,
        base_url: str,
        model: str,
        api_key: str | None = None,
        timeout_seconds: float = 30.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._model = model
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []

        headers = {"Authorization": f"Bearer {self._api_key}"} if self._api_key else None
        try:
            response = httpx.post(
                f"{self._base_url}/embeddings",
                json={"model": self._model, "input": texts},
                headers=headers,
                timeout=self._timeout_seconds,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise EmbeddingClientError(str(exc)) from exc

        try:
            payload = response.json()
        except ValueError as exc:
            raise EmbeddingClientError("Invalid embeddings payload: not JSON") from exc

        data = payload.get("data") if isinstance(payload, dict) else None
        if not isinstance(data, list):
            raise EmbeddingClientError("Invalid embeddings payload: missing data")

        vectors: list[list[float]] = []
        for item in data:
            embedding = item.get("embedding") if isinstance(item, dict) else None
            if not isinstance(embedding, list) or not embedding:
                raise EmbeddingClientError("Invalid embeddings payload: missing embedding vector")
            vectors.append([float(value) for value in embedding])

        if len(vectors) != len(texts):
            raise EmbeddingClientError(
                f"Invalid embeddings payload: expected {len(texts)} vectors, got {len(vectors)}"
            )

        return vectors


def build_embedding_client(settings: Settings) -> EmbeddingClient:
    if settings.embedding_provider == "http":
        return HttpEmbeddingClient(
            base_url=settings.embed_base_url,
            model=settings.embed_model,
            api_key=settings.llm_api_key,
            timeout_seconds=settings.llm_timeout_seconds,
        )
    if settings.embedding_provider == "hash":
        return HashEmbeddingClient(dimensions=settings.embedding_dim)

    raise ConfigurationError(
        f"Unknown EMBEDDING_PROVIDER {settings.embedding_provider!r} (expected 'http' or 'hash')"
    )
