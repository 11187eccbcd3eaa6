from __future__ import annotations

import hashlib
import math


def _deterministic_embedding(text: str, *, dimensions: int) -> list[float]:
    if dimensions <= 0:
        raise ValueError("dimensions must be > 0")

    seed = hashlib.sha256(text.encode("utf-8")).digest()
    values: list[int] = []
    digest = seed

    while len(values) < dimensions:
        digest = hashlib.sha256(digest + seed).digest()
        values.extend(digest)

    vector = [((value / 127.5) - 1.0) for value in values[:dimensions]]
    norm = math.sqrt(sum(value * value for value in vector))
    if norm > 0:
        return [value / norm for value in vector]

    return vector


class HashEmbeddingClient:
    """Offline embedder: identical text always maps to the same unit vector.

    Vectors carry no semantic similarity; useful for smoke runs and for
    exercising the pipeline without an embedding server.
    """

    def __init__(self, *, dimensions: int = 384) -> None:
        self._dimensions = dimensions

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        return [_deterministic_embedding(text, dimensions=self._dimensions) for text in texts]
