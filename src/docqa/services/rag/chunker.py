from __future__ import annotations

import math

from docqa.config import ConfigurationError
from docqa.services.rag.types import Chunk, ExtractedDocument, ExtractedPage


def validate_window(chunk_size: int, chunk_overlap: int) -> None:
    if chunk_size <= 0:
        raise ConfigurationError("chunk_size must be > 0")
    if chunk_overlap < 0:
        raise ConfigurationError("chunk_overlap must be >= 0")
    if chunk_overlap >= chunk_size:
        raise ConfigurationError("chunk_overlap must be smaller than chunk_size")


def count_tokens(text: str) -> int:
    return len(text.split())


def chunk_windowed(text: str, *, chunk_size: int = 600, chunk_overlap: int = 80) -> list[str]:
    """Split ``text`` into word windows of ``chunk_size`` sharing ``chunk_overlap`` words."""
    validate_window(chunk_size, chunk_overlap)

    words = text.split()
    chunks: list[str] = []
    cursor = 0
    word_count = len(words)

    while cursor < word_count:
        end = min(word_count, cursor + chunk_size)
        chunks.append(" ".join(words[cursor:end]))

        if end >= word_count:
            break
        cursor = end - chunk_overlap

    return chunks


def chunk_paginated(
    pages: list[ExtractedPage],
    *,
    source_path: str,
    first_chunk_id: int = 0,
) -> list[Chunk]:
    """One chunk per page; pages without text are dropped."""
    kept = [page for page in pages if page.text.strip()]
    return [
        Chunk(
            text=page.text,
            source_path=source_path,
            page_number=page.page_number,
            chunk_id=first_chunk_id + offset,
            token_count=count_tokens(page.text),
        )
        for offset, page in enumerate(kept)
    ]


def estimate_chunk_count(document: ExtractedDocument, *, chunk_size: int, chunk_overlap: int) -> int:
    if document.pages is not None:
        return len(document.pages)

    word_count = len((document.text or "").split())
    if word_count == 0:
        return 0
    if word_count <= chunk_size:
        return 1
    return 1 + math.ceil((word_count - chunk_size) / (chunk_size - chunk_overlap))


def chunk_document(
    document: ExtractedDocument,
    *,
    first_chunk_id: int,
    chunk_size: int,
    chunk_overlap: int,
) -> list[Chunk]:
    if document.pages is not None:
        return chunk_paginated(
            document.pages,
            source_path=document.source_path,
            first_chunk_id=first_chunk_id,
        )

    pieces = chunk_windowed(
        document.text or "",
        chunk_size=chunk_size,
        chunk_overlap=chunk_overlap,
    )
    return [
        Chunk(
            text=piece,
            source_path=document.source_path,
            page_number=None,
            chunk_id=first_chunk_id + offset,
            token_count=count_tokens(piece),
        )
        for offset, piece in enumerate(pieces)
    ]
