from docqa.services.rag.chunker import chunk_paginated, chunk_windowed
from docqa.services.rag.context import AssembledPrompt, assemble_context
from docqa.services.rag.history import sanitize_history
from docqa.services.rag.index_store import IndexStore
from docqa.services.rag.ingest import IngestionPipeline
from docqa.services.rag.query import search, search_index
from docqa.services.rag.relay import RelayEvent, relay_stream
from docqa.services.rag.segmenter import split_markdown
from docqa.services.rag.types import (
    Chunk,
    EmbeddedItem,
    Index,
    IngestionProgress,
    IngestionStage,
    IngestionSummary,
    SearchHit,
)

__all__ = [
    "AssembledPrompt",
    "Chunk",
    "EmbeddedItem",
    "Index",
    "IndexStore",
    "IngestionPipeline",
    "IngestionProgress",
    "IngestionStage",
    "IngestionSummary",
    "RelayEvent",
    "SearchHit",
    "assemble_context",
    "chunk_paginated",
    "chunk_windowed",
    "relay_stream",
    "sanitize_history",
    "search",
    "search_index",
    "split_markdown",
]
