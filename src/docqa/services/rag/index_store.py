from __future__ import annotations

from datetime import datetime, timezone
import json
import logging
import os
from pathlib import Path
import tempfile
from threading import Lock
from typing import Any

from docqa.config import ConfigurationError
from docqa.services.rag.types import Chunk, EmbeddedItem, Index

logger = logging.getLogger(__name__)

DEFAULT_DIM = 384
INDEX_FORMAT_VERSION = "r2"


def _item_to_record(item: EmbeddedItem) -> dict[str, object]:
    chunk = item.chunk
    return {
        "chunk_id": chunk.chunk_id,
        "source_path": chunk.source_path,
        "page_number": chunk.page_number,
        "token_count": chunk.token_count,
        "text": chunk.text,
        "vector": item.vector,
    }


def _record_to_item(record: Any, *, dim: int) -> EmbeddedItem | None:
    if not isinstance(record, dict):
        return None

    vector = record.get("vector")
    chunk_id = record.get("chunk_id")
    source_path = record.get("source_path")
    page_number = record.get("page_number")
    text = record.get("text")
    token_count = record.get("token_count")
    if (
        not isinstance(vector, list)
        or not isinstance(chunk_id, int)
        or not isinstance(source_path, str)
        or not isinstance(text, str)
        or not (page_number is None or isinstance(page_number, int))
    ):
        return None
    if len(vector) != dim:
        return None

    return EmbeddedItem(
        chunk=Chunk(
            text=text,
            source_path=source_path,
            page_number=page_number,
            chunk_id=chunk_id,
            token_count=token_count if isinstance(token_count, int) else len(text.split()),
        ),
        vector=[float(value) for value in vector],
    )


def _parse_index(payload: Any, *, index_file: Path) -> Index:
    if not isinstance(payload, dict):
        raise ValueError(f"Invalid index payload in {index_file}: expected an object")

    dim = payload.get("dim")
    records = payload.get("items")
    if not isinstance(dim, int) or dim <= 0:
        raise ValueError(f"Invalid index payload in {index_file}: 'dim' must be a positive integer")
    if not isinstance(records, list):
        raise ValueError(f"Invalid index payload in {index_file}: 'items' must be a list")

    items: list[EmbeddedItem] = []
    for record in records:
        item = _record_to_item(record, dim=dim)
        if item is None:
            logger.warning("Skipping malformed index record in %s", index_file)
            continue
        items.append(item)

    return Index(dim=dim, items=items)


class IndexStore:
    """Durable Index kept in a single JSON file.

    ``save`` writes a sibling temp file and renames it over the target, so a
    concurrent ``load`` sees either the previous Index or the new one. Loads
    are cached against the file's mtime and size.
    """

    def __init__(self, index_file: Path, *, default_dim: int = DEFAULT_DIM) -> None:
        self.index_file = index_file
        self._default_dim = default_dim
        self._lock = Lock()
        self._cached: tuple[tuple[int, int], Index] | None = None

    def load(self) -> Index:
        try:
            stat = self.index_file.stat()
        except FileNotFoundError:
            return Index(dim=self._default_dim, items=[])

        signature = (stat.st_mtime_ns, stat.st_size)
        with self._lock:
            if self._cached is not None and self._cached[0] == signature:
                return self._cached[1]

        try:
            payload = json.loads(self.index_file.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return Index(dim=self._default_dim, items=[])
        index = _parse_index(payload, index_file=self.index_file)

        with self._lock:
            self._cached = (signature, index)
        return index

    def save(self, index: Index) -> Path:
        for item in index.items:
            if len(item.vector) != index.dim:
                raise ConfigurationError(
                    f"Vector for {item.source_path}#{item.chunk.chunk_id} has "
                    f"{len(item.vector)} dimensions, index expects {index.dim}"
                )

        payload = {
            "version": INDEX_FORMAT_VERSION,
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "dim": index.dim,
            "chunk_count": len(index.items),
            "items": [_item_to_record(item) for item in index.items],
        }

        self.index_file.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self.index_file.name}.",
            suffix=".tmp",
            dir=self.index_file.parent,
        )
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, ensure_ascii=False)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_path, self.index_file)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

        with self._lock:
            self._cached = None
        return self.index_file
