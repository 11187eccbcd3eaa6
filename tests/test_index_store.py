import json
from pathlib import Path

import pytest

from docqa.config import ConfigurationError
from docqa.services.rag.index_store import IndexStore
from docqa.services.rag.types import Chunk, EmbeddedItem, Index


def _item(chunk_id: int, source_path: str, vector: list[float], page_number: int | None = None) -> EmbeddedItem:
    return EmbeddedItem(
        chunk=Chunk(
            text=f"chunk {chunk_id} of {source_path}",
            source_path=source_path,
            page_number=page_number,
            chunk_id=chunk_id,
            token_count=4,
        ),
        vector=vector,
    )


def test_load_returns_empty_index_with_default_dim_when_file_is_missing(tmp_path: Path) -> None:
    store = IndexStore(tmp_path / "missing" / "index.json", default_dim=384)

    index = store.load()

    assert index == Index(dim=384, items=[])


def test_save_then_load_round_trips_items(tmp_path: Path) -> None:
    store = IndexStore(tmp_path / "storage" / "index.json")
    index = Index(
        dim=3,
        items=[
            _item(0, "manual.pdf", [0.1, 0.2, 0.3], page_number=1),
            _item(1, "notes/guide.md", [1.0, 0.0, -0.5]),
        ],
    )

    saved_path = store.save(index)
    loaded = store.load()

    assert saved_path == tmp_path / "storage" / "index.json"
    assert loaded == index


def test_save_writes_metadata_and_leaves_no_temp_files(tmp_path: Path) -> None:
    index_file = tmp_path / "index.json"
    store = IndexStore(index_file)

    store.save(Index(dim=2, items=[_item(0, "a.txt", [1.0, 0.0])]))

    payload = json.loads(index_file.read_text(encoding="utf-8"))
    assert payload["dim"] == 2
    assert payload["chunk_count"] == 1
    assert payload["items"][0]["source_path"] == "a.txt"
    assert "generated_at" in payload
    assert [path.name for path in tmp_path.iterdir()] == ["index.json"]


def test_save_rejects_vectors_with_wrong_dimension(tmp_path: Path) -> None:
    index_file = tmp_path / "index.json"
    store = IndexStore(index_file)
    store.save(Index(dim=2, items=[_item(0, "a.txt", [1.0, 0.0])]))

    with pytest.raises(ConfigurationError, match="index expects 2"):
        store.save(Index(dim=2, items=[_item(0, "b.txt", [1.0, 0.0, 0.0])]))

    assert [item.source_path for item in store.load().items] == ["a.txt"]


def test_load_picks_up_file_replaced_by_another_store(tmp_path: Path) -> None:
    index_file = tmp_path / "index.json"
    reader = IndexStore(index_file)
    writer = IndexStore(index_file)

    writer.save(Index(dim=2, items=[_item(0, "a.txt", [1.0, 0.0])]))
    assert len(reader.load().items) == 1

    writer.save(
        Index(
            dim=2,
            items=[_item(0, "a.txt", [1.0, 0.0]), _item(1, "b.txt", [0.0, 1.0])],
        )
    )
    assert [item.source_path for item in reader.load().items] == ["a.txt", "b.txt"]


def test_load_skips_malformed_records(tmp_path: Path) -> None:
    index_file = tmp_path / "index.json"
    index_file.write_text(
        json.dumps(
            {
                "dim": 2,
                "items": [
                    {"chunk_id": 0, "source_path": "a.txt", "page_number": None, "text": "ok", "vector": [1, 0]},
                    {"chunk_id": 1, "source_path": "b.txt", "page_number": None, "text": "short", "vector": [1]},
                    "garbage",
                ],
            }
        ),
        encoding="utf-8",
    )

    index = IndexStore(index_file).load()

    assert [item.chunk.chunk_id for item in index.items] == [0]
    assert index.items[0].vector == [1.0, 0.0]
    assert index.items[0].chunk.token_count == 1


def test_load_rejects_invalid_top_level_payload(tmp_path: Path) -> None:
    index_file = tmp_path / "index.json"
    index_file.write_text(json.dumps({"dim": "x", "items": []}), encoding="utf-8")

    with pytest.raises(ValueError, match="'dim' must be a positive integer"):
        IndexStore(index_file).load()
