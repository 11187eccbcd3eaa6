from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal


@dataclass(frozen=True)
class ExtractedPage:
    page_number: int
    text: str


@dataclass(frozen=True)
class ExtractedDocument:
    """Extraction output: ``pages`` for paginated formats, ``text`` otherwise."""

    source_path: str
    pages: list[ExtractedPage] | None = None
    text: str | None = None

    @property
    def paginated(self) -> bool:
        return self.pages is not None


@dataclass(frozen=True)
class Chunk:
    text: str
    source_path: str
    page_number: int | None
    chunk_id: int
    token_count: int


@dataclass(frozen=True)
class EmbeddedItem:
    chunk: Chunk
    vector: list[float]

    @property
    def source_path(self) -> str:
        return self.chunk.source_path


@dataclass(frozen=True)
class Index:
    dim: int
    items: list[EmbeddedItem] = field(default_factory=list)


@dataclass(frozen=True)
class SearchHit:
    item: EmbeddedItem
    score: float


class IngestionStage(str, Enum):
    IDLE = "idle"
    SCANNING = "scanning"
    CHUNKING = "chunking"
    EMBEDDING = "embedding"
    DONE = "done"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in (IngestionStage.DONE, IngestionStage.ERROR)


@dataclass(frozen=True)
class IngestionProgress:
    stage: IngestionStage = IngestionStage.IDLE
    processed: int = 0
    total: int = 0
    error: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "stage": self.stage.value,
            "processed": self.processed,
            "total": self.total,
            "error": self.error,
        }


@dataclass(frozen=True)
class IngestionSummary:
    document_count: int
    chunk_count: int
    skipped: list[str]
    dim: int
    index_file: str


Role = Literal["user", "assistant"]


@dataclass(frozen=True)
class ChatMessage:
    role: Role
    content: str

    @classmethod
    def from_raw(cls, raw: Any) -> ChatMessage | None:
        """Validate one client-supplied entry; ``None`` when it does not qualify."""
        if isinstance(raw, ChatMessage):
            return raw
        if not isinstance(raw, dict):
            return None
        role = str(raw.get("role") or "").strip().lower()
        content = raw.get("content")
        if role not in ("user", "assistant"):
            return None
        if not isinstance(content, str) or not content.strip():
            return None
        return cls(role=role, content=content)

    def as_dict(self) -> dict[str, str]:
        return {"role": self.role, "content": self.content}
