from __future__ import annotations

from collections.abc import Callable
from functools import partial
import logging
from pathlib import Path

from docqa.config import ConfigurationError, Settings
from docqa.services.rag.chunker import chunk_document, estimate_chunk_count, validate_window
from docqa.services.rag.embedding_client import EmbeddingClient, EmbeddingClientError
from docqa.services.rag.index_store import IndexStore
from docqa.services.rag.loader import (
    ExtractionError,
    extract_document,
    list_documents,
    relative_source_path,
)
from docqa.services.rag.types import (
    Chunk,
    EmbeddedItem,
    ExtractedDocument,
    Index,
    IngestionProgress,
    IngestionStage,
    IngestionSummary,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[IngestionProgress], None]
Extractor = Callable[..., ExtractedDocument]

_FORWARD_TRANSITIONS: dict[IngestionStage, IngestionStage] = {
    IngestionStage.IDLE: IngestionStage.SCANNING,
    IngestionStage.SCANNING: IngestionStage.CHUNKING,
    IngestionStage.CHUNKING: IngestionStage.EMBEDDING,
    IngestionStage.EMBEDDING: IngestionStage.DONE,
}


class InvalidTransition(RuntimeError):
    pass


def _describe_error(exc: BaseException) -> str:
    message = str(exc).strip()
    return message or exc.__class__.__name__


class IngestionPipeline:
    """Full corpus rebuild: scanning -> chunking -> embedding -> done.

    Every progress change is published as an immutable snapshot through
    ``on_progress``. A failure in any stage moves to ``error`` and the Index
    Store keeps its previous contents.
    """

    def __init__(
        self,
        *,
        index_store: IndexStore,
        embedding_client: EmbeddingClient,
        chunk_size: int = 600,
        chunk_overlap: int = 80,
        pdf_max_chars: int = 4000,
        embed_batch_size: int = 16,
        log_every: int = 200,
        extractor: Extractor = extract_document,
        on_progress: ProgressCallback | None = None,
    ) -> None:
        self._index_store = index_store
        self._embedding_client = embedding_client
        self._chunk_size = chunk_size
        self._chunk_overlap = chunk_overlap
        self._pdf_max_chars = pdf_max_chars
        self._embed_batch_size = max(1, embed_batch_size)
        self._log_every = max(1, log_every)
        self._extractor = extractor
        self._on_progress = on_progress
        self._progress = IngestionProgress()

    @property
    def progress(self) -> IngestionProgress:
        return self._progress

    def _publish(self, progress: IngestionProgress) -> None:
        self._progress = progress
        if self._on_progress is not None:
            self._on_progress(progress)

    def _advance(self, stage: IngestionStage, *, processed: int = 0, total: int = 0) -> None:
        expected = _FORWARD_TRANSITIONS.get(self._progress.stage)
        if expected is not stage:
            raise InvalidTransition(f"cannot move from {self._progress.stage.value} to {stage.value}")
        self._publish(IngestionProgress(stage=stage, processed=processed, total=total))

    def _report(self, processed: int, total: int) -> None:
        self._publish(
            IngestionProgress(stage=self._progress.stage, processed=processed, total=max(total, processed))
        )

    def _fail(self, exc: BaseException) -> None:
        self._publish(
            IngestionProgress(
                stage=IngestionStage.ERROR,
                processed=self._progress.processed,
                total=self._progress.total,
                error=_describe_error(exc),
            )
        )

    def run(self, source_dir: Path) -> IngestionSummary:
        if self._progress.stage is not IngestionStage.IDLE:
            raise InvalidTransition("an ingestion pipeline instance runs once")

        try:
            self._advance(IngestionStage.SCANNING)
            files = list_documents(source_dir)
            self._report(len(files), len(files))

            self._advance(IngestionStage.CHUNKING)
            chunks, documents, skipped = self._chunk_corpus(source_dir, files)
            if not chunks:
                raise ValueError(f"No indexable content found in {source_dir}")

            self._advance(IngestionStage.EMBEDDING, total=len(chunks))
            index = self._embed_chunks(chunks)

            index_file = self._index_store.save(index)
        except Exception as exc:
            logger.warning("Ingestion of %s failed: %s", source_dir, _describe_error(exc))
            self._fail(exc)
            raise

        self._advance(IngestionStage.DONE, processed=len(index.items), total=len(index.items))
        logger.info(
            "Indexed %d chunks from %d documents into %s (skipped %d)",
            len(index.items),
            documents,
            index_file,
            len(skipped),
        )
        return IngestionSummary(
            document_count=documents,
            chunk_count=len(index.items),
            skipped=skipped,
            dim=index.dim,
            index_file=str(index_file),
        )

    def _chunk_corpus(self, source_dir: Path, files: list[Path]) -> tuple[list[Chunk], int, list[str]]:
        validate_window(self._chunk_size, self._chunk_overlap)

        extracted: list[ExtractedDocument] = []
        skipped: list[str] = []
        for path in files:
            source_path = relative_source_path(path, source_dir)
            try:
                extracted.append(
                    self._extractor(path, source_path=source_path, pdf_max_chars=self._pdf_max_chars)
                )
            except ExtractionError as exc:
                logger.warning("Skipping %s: %s", source_path, exc)
                skipped.append(source_path)
            # Unchanged snapshot; lets the job writer refresh its heartbeat.
            self._publish(self._progress)

        estimate = sum(
            estimate_chunk_count(
                document,
                chunk_size=self._chunk_size,
                chunk_overlap=self._chunk_overlap,
            )
            for document in extracted
        )
        self._report(0, estimate)

        chunks: list[Chunk] = []
        documents = 0
        for document in extracted:
            produced = chunk_document(
                document,
                first_chunk_id=len(chunks),
                chunk_size=self._chunk_size,
                chunk_overlap=self._chunk_overlap,
            )
            if produced:
                documents += 1
            for chunk in produced:
                chunks.append(chunk)
                self._report(len(chunks), estimate)
                if len(chunks) % self._log_every == 0:
                    logger.info("Chunks so far: %d", len(chunks))

        logger.info("Total chunks: %d", len(chunks))
        return chunks, documents, skipped

    def _embed_chunks(self, chunks: list[Chunk]) -> Index:
        items: list[EmbeddedItem] = []
        dim: int | None = None

        for start in range(0, len(chunks), self._embed_batch_size):
            batch = chunks[start : start + self._embed_batch_size]
            vectors = self._embedding_client.embed_texts([chunk.text for chunk in batch])
            if len(vectors) != len(batch):
                raise EmbeddingClientError(
                    f"Embedder returned {len(vectors)} vectors for {len(batch)} texts"
                )

            for chunk, vector in zip(batch, vectors):
                if dim is None:
                    if not vector:
                        raise ConfigurationError("Embedder returned an empty vector")
                    dim = len(vector)
                elif len(vector) != dim:
                    raise ConfigurationError(
                        f"Embedder returned {len(vector)} dimensions, expected {dim}"
                    )
                items.append(EmbeddedItem(chunk=chunk, vector=list(vector)))
                self._report(len(items), len(chunks))
                if len(items) % self._log_every == 0:
                    logger.info("Embedded %d/%d", len(items), len(chunks))

        return Index(dim=dim or 0, items=items)


def pipeline_factory_from_settings(
    settings: Settings,
    *,
    index_store: IndexStore,
    embedding_client: EmbeddingClient,
    extractor: Extractor = extract_document,
) -> Callable[..., IngestionPipeline]:
    return partial(
        IngestionPipeline,
        index_store=index_store,
        embedding_client=embedding_client,
        chunk_size=settings.chunk_size,
        chunk_overlap=settings.chunk_overlap,
        pdf_max_chars=settings.pdf_max_chars,
        embed_batch_size=settings.embed_batch_size,
        log_every=settings.ingest_progress_every,
        extractor=extractor,
    )
