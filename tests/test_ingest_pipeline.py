from pathlib import Path
import zipfile

from docx import Document
import pytest

from docqa.config import ConfigurationError
from docqa.services.rag.index_store import IndexStore
from docqa.services.rag.ingest import IngestionPipeline, InvalidTransition
from docqa.services.rag.loader import ExtractionError, extract_document
from docqa.services.rag.types import (
    ExtractedDocument,
    ExtractedPage,
    IngestionProgress,
    IngestionStage,
)


class FakeEmbeddingClient:
    def __init__(self, dimensions: int = 4) -> None:
        self._dimensions = dimensions
        self.batches: list[int] = []

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        self.batches.append(len(texts))
        return [[float(len(text) % 7 + 1)] * self._dimensions for text in texts]


class FailingEmbeddingClient:
    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        raise RuntimeError("embedder offline")


class RaggedEmbeddingClient:
    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        return [[1.0] * (3 + position) for position, _ in enumerate(texts)]


def fake_pdf_extractor(path: Path, *, source_path: str, pdf_max_chars: int = 4000) -> ExtractedDocument:
    if path.suffix == ".pdf":
        if path.name.startswith("broken"):
            raise ExtractionError(f"Failed to extract text from PDF {path.name}")
        return ExtractedDocument(
            source_path=source_path,
            pages=[
                ExtractedPage(page_number=1, text="Pump maintenance schedule"),
                ExtractedPage(page_number=2, text="Safety valve inspection"),
            ],
        )
    return extract_document(path, source_path=source_path, pdf_max_chars=pdf_max_chars)


def _pipeline(tmp_path: Path, **kwargs: object) -> tuple[IngestionPipeline, IndexStore, list[IngestionProgress]]:
    store = IndexStore(tmp_path / "storage" / "index.json")
    snapshots: list[IngestionProgress] = []
    options: dict[str, object] = {
        "index_store": store,
        "embedding_client": FakeEmbeddingClient(),
        "chunk_size": 10,
        "chunk_overlap": 2,
        "extractor": fake_pdf_extractor,
        "on_progress": snapshots.append,
    }
    options.update(kwargs)
    return IngestionPipeline(**options), store, snapshots


def test_two_page_pdf_yields_one_chunk_per_page(tmp_path: Path, docs_dir: Path) -> None:
    (docs_dir / "manual.pdf").write_bytes(b"%PDF-1.4 placeholder")
    pipeline, store, _ = _pipeline(tmp_path)

    summary = pipeline.run(docs_dir)

    items = store.load().items
    assert [(item.chunk.chunk_id, item.chunk.page_number) for item in items] == [(0, 1), (1, 2)]
    assert {item.source_path for item in items} == {"manual.pdf"}
    assert summary.chunk_count == 2
    assert summary.document_count == 1
    assert summary.dim == 4


def test_stage_sequence_and_final_progress(tmp_path: Path, docs_dir: Path) -> None:
    (docs_dir / "a.txt").write_text("alpha beta gamma " * 10, encoding="utf-8")
    (docs_dir / "nested").mkdir()
    (docs_dir / "nested" / "b.md").write_text("# heading\n" + "delta " * 15, encoding="utf-8")
    pipeline, store, snapshots = _pipeline(tmp_path)

    pipeline.run(docs_dir)

    stages: list[IngestionStage] = []
    for snapshot in snapshots:
        if not stages or stages[-1] is not snapshot.stage:
            stages.append(snapshot.stage)
    assert stages == [
        IngestionStage.SCANNING,
        IngestionStage.CHUNKING,
        IngestionStage.EMBEDDING,
        IngestionStage.DONE,
    ]

    chunk_count = len(store.load().items)
    assert snapshots[-1] == IngestionProgress(
        stage=IngestionStage.DONE, processed=chunk_count, total=chunk_count
    )
    for snapshot in snapshots:
        assert 0 <= snapshot.processed <= snapshot.total or snapshot.total == 0
    embedding = [snapshot.processed for snapshot in snapshots if snapshot.stage is IngestionStage.EMBEDDING]
    assert embedding == sorted(embedding)
    assert embedding[-1] == chunk_count


def test_chunk_ids_are_sequential_across_documents(tmp_path: Path, docs_dir: Path) -> None:
    (docs_dir / "a.txt").write_text(" ".join(f"a{i}" for i in range(25)), encoding="utf-8")
    (docs_dir / "b.pdf").write_bytes(b"%PDF-1.4 placeholder")
    pipeline, store, _ = _pipeline(tmp_path)

    pipeline.run(docs_dir)

    items = store.load().items
    assert [item.chunk.chunk_id for item in items] == list(range(len(items)))
    assert [item.source_path for item in items] == ["a.txt"] * 3 + ["b.pdf"] * 2


def test_embeds_in_batches(tmp_path: Path, docs_dir: Path) -> None:
    (docs_dir / "a.txt").write_text(" ".join(f"a{i}" for i in range(41)), encoding="utf-8")
    client = FakeEmbeddingClient()
    pipeline, _, _ = _pipeline(tmp_path, embedding_client=client, embed_batch_size=2)

    pipeline.run(docs_dir)

    assert client.batches == [2, 2, 1]


def test_failed_extraction_is_skipped(tmp_path: Path, docs_dir: Path) -> None:
    (docs_dir / "broken.pdf").write_bytes(b"not a pdf")
    (docs_dir / "ok.txt").write_text("pump maintenance", encoding="utf-8")
    pipeline, store, _ = _pipeline(tmp_path)

    summary = pipeline.run(docs_dir)

    assert summary.skipped == ["broken.pdf"]
    assert [item.source_path for item in store.load().items] == ["ok.txt"]


def test_embedder_failure_keeps_previous_index(tmp_path: Path, docs_dir: Path) -> None:
    (docs_dir / "a.txt").write_text("pump maintenance", encoding="utf-8")
    first, store, _ = _pipeline(tmp_path)
    first.run(docs_dir)
    before = store.load()

    (docs_dir / "b.txt").write_text("safety rules", encoding="utf-8")
    second, _, snapshots = _pipeline(tmp_path, embedding_client=FailingEmbeddingClient())
    with pytest.raises(RuntimeError, match="embedder offline"):
        second.run(docs_dir)

    assert snapshots[-1].stage is IngestionStage.ERROR
    assert snapshots[-1].error == "embedder offline"
    assert second.progress.stage is IngestionStage.ERROR
    assert store.load() == before


def test_empty_corpus_is_an_error(tmp_path: Path, docs_dir: Path) -> None:
    (docs_dir / "blank.txt").write_text("   ", encoding="utf-8")
    pipeline, store, snapshots = _pipeline(tmp_path)

    with pytest.raises(ValueError, match="No indexable content"):
        pipeline.run(docs_dir)

    assert snapshots[-1].stage is IngestionStage.ERROR
    assert not store.index_file.exists()


def test_missing_source_dir_fails_while_scanning(tmp_path: Path) -> None:
    pipeline, _, snapshots = _pipeline(tmp_path)

    with pytest.raises(FileNotFoundError):
        pipeline.run(tmp_path / "nowhere")

    assert [snapshot.stage for snapshot in snapshots] == [IngestionStage.SCANNING, IngestionStage.ERROR]


def test_inconsistent_vector_dimensions_fail(tmp_path: Path, docs_dir: Path) -> None:
    (docs_dir / "a.txt").write_text(" ".join(f"a{i}" for i in range(25)), encoding="utf-8")
    pipeline, _, _ = _pipeline(tmp_path, embedding_client=RaggedEmbeddingClient())

    with pytest.raises(ConfigurationError, match="expected 3"):
        pipeline.run(docs_dir)


def test_invalid_window_fails_before_indexing(tmp_path: Path, docs_dir: Path) -> None:
    (docs_dir / "a.txt").write_text("pump", encoding="utf-8")
    pipeline, _, snapshots = _pipeline(tmp_path, chunk_size=5, chunk_overlap=5)

    with pytest.raises(ConfigurationError):
        pipeline.run(docs_dir)

    assert snapshots[-1].stage is IngestionStage.ERROR


def test_pipeline_instance_runs_once(tmp_path: Path, docs_dir: Path) -> None:
    (docs_dir / "a.txt").write_text("pump", encoding="utf-8")
    pipeline, _, _ = _pipeline(tmp_path)
    pipeline.run(docs_dir)

    with pytest.raises(InvalidTransition):
        pipeline.run(docs_dir)


def test_index_dim_comes_from_the_embedder(tmp_path: Path, docs_dir: Path) -> None:
    (docs_dir / "a.txt").write_text("pump", encoding="utf-8")
    pipeline, store, _ = _pipeline(tmp_path, embedding_client=FakeEmbeddingClient(dimensions=6))

    pipeline.run(docs_dir)

    assert store.load().dim == 6


def test_docx_with_malformed_xml_is_skipped(tmp_path: Path, docs_dir: Path) -> None:
    template = tmp_path / "template.docx"
    Document().save(str(template))
    with zipfile.ZipFile(template) as original, zipfile.ZipFile(docs_dir / "bad.docx", "w") as broken:
        for item in original.infolist():
            body = original.read(item.filename)
            if item.filename == "word/document.xml":
                body = b"<w:document><unclosed"
            broken.writestr(item, body)
    (docs_dir / "good.txt").write_text("pump maintenance", encoding="utf-8")
    pipeline, store, _ = _pipeline(tmp_path, extractor=extract_document)

    summary = pipeline.run(docs_dir)

    assert summary.skipped == ["bad.docx"]
    assert [item.source_path for item in store.load().items] == ["good.txt"]
    assert pipeline.progress.stage is IngestionStage.DONE
