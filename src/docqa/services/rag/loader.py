from __future__ import annotations

import logging
from pathlib import Path
import re

from docx import Document
from pypdf import PdfReader

from docqa.services.rag.types import ExtractedDocument, ExtractedPage

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {".pdf", ".docx", ".md", ".txt"}
PAGINATED_EXTENSIONS = {".pdf"}

_WHITESPACE_RE = re.compile(r"\s+")


class ExtractionError(Exception):
    pass


def _is_skipped_name(name: str) -> bool:
    return name.startswith(".") or name.startswith("~$")


def list_documents(
    source_dir: Path,
    supported_extensions: set[str] | None = None,
) -> list[Path]:
    if not source_dir.exists():
        raise FileNotFoundError(f"Source directory not found: {source_dir}")
    if not source_dir.is_dir():
        raise NotADirectoryError(f"Source path is not a directory: {source_dir}")

    extensions = supported_extensions or SUPPORTED_EXTENSIONS
    return sorted(
        path
        for path in source_dir.rglob("*")
        if path.is_file()
        and path.suffix.lower() in extensions
        and not any(_is_skipped_name(part) for part in path.relative_to(source_dir).parts)
    )


def relative_source_path(path: Path, source_dir: Path) -> str:
    return path.relative_to(source_dir).as_posix()


def _read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        logger.warning("UTF-8 decode failed for %s, ignoring undecodable bytes", path)
        return path.read_text(encoding="utf-8", errors="ignore")


def extract_pdf_pages(path: Path, *, max_chars: int = 4000) -> list[ExtractedPage]:
    try:
        reader = PdfReader(path)
        pages: list[ExtractedPage] = []
        for page_number, page in enumerate(reader.pages, start=1):
            text = _WHITESPACE_RE.sub(" ", page.extract_text() or "").strip()
            pages.append(ExtractedPage(page_number=page_number, text=text[:max_chars]))
    except Exception as exc:
        raise ExtractionError(f"Failed to extract text from PDF {path.name}: {exc}") from exc
    return pages


def extract_docx_text(path: Path) -> str:
    try:
        document = Document(str(path))
        return "\n".join(paragraph.text for paragraph in document.paragraphs if paragraph.text)
    except Exception as exc:
        raise ExtractionError(f"Failed to extract text from DOCX {path.name}: {exc}") from exc


def extract_document(path: Path, *, source_path: str, pdf_max_chars: int = 4000) -> ExtractedDocument:
    suffix = path.suffix.lower()
    if suffix in PAGINATED_EXTENSIONS:
        return ExtractedDocument(
            source_path=source_path,
            pages=extract_pdf_pages(path, max_chars=pdf_max_chars),
        )
    if suffix == ".docx":
        return ExtractedDocument(source_path=source_path, text=extract_docx_text(path))
    if suffix in {".md", ".txt"}:
        try:
            return ExtractedDocument(source_path=source_path, text=_read_text(path))
        except OSError as exc:
            raise ExtractionError(f"Failed to read {path.name}: {exc}") from exc

    raise ExtractionError(f"Unsupported document type: {path.name}")
