from __future__ import annotations

import re

_HEADING_RE = re.compile(r"^#{1,6}\s+")
_PARAGRAPH_RE = re.compile(r"\n{2,}")
_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")


def _split_by_headings(text: str) -> list[str]:
    sections: list[str] = []
    current: list[str] = []
    for line in text.split("\n"):
        if _HEADING_RE.match(line) and current:
            sections.append("\n".join(current))
            current = [line]
        else:
            current.append(line)
    if current:
        sections.append("\n".join(current))
    return sections or [text]


def _split_long_sentence(sentence: str, max_len: int) -> tuple[list[str], str]:
    pieces: list[str] = []
    remaining = sentence
    while len(remaining) > max_len:
        window = remaining[: max_len + 1]
        cut = max(window.rfind(" "), window.rfind("\n"))
        end = cut if cut > 0 else max_len
        pieces.append(remaining[:end])
        remaining = remaining[end:].lstrip()
    return pieces, remaining


def _split_block(block: str, max_len: int) -> list[str]:
    result: list[str] = []
    buffer = ""

    for paragraph in _PARAGRAPH_RE.split(block):
        candidate = f"{buffer}\n\n{paragraph}" if buffer else paragraph
        if len(candidate) <= max_len:
            buffer = candidate
            continue

        if buffer:
            result.append(buffer)
            buffer = ""
        if len(paragraph) <= max_len:
            buffer = paragraph
            continue

        sentence_buffer = ""
        for sentence in _SENTENCE_RE.split(paragraph):
            joined = f"{sentence_buffer} {sentence}" if sentence_buffer else sentence
            if len(joined) <= max_len:
                sentence_buffer = joined
                continue
            if sentence_buffer:
                result.append(sentence_buffer)
            if len(sentence) <= max_len:
                sentence_buffer = sentence
            else:
                pieces, sentence_buffer = _split_long_sentence(sentence, max_len)
                result.extend(pieces)
        if sentence_buffer:
            result.append(sentence_buffer)

    if buffer:
        result.append(buffer)
    return result


def split_markdown(text: str, max_len: int = 1200) -> list[str]:
    """Split a finished markdown answer into display chunks of at most ``max_len``.

    Headings start a new section. Oversized sections are packed by paragraph,
    then by sentence, and only then cut at whitespace.
    """
    if not text:
        return []

    chunks: list[str] = []
    for section in _split_by_headings(text):
        if len(section) <= max_len:
            chunks.append(section)
        else:
            chunks.extend(_split_block(section, max_len))
    return [chunk for chunk in chunks if chunk.strip()]
