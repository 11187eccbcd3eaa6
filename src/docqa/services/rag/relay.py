from __future__ import annotations

from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
import json
import logging
import re
from typing import Any, Literal

from docqa.services.rag.segmenter import split_markdown

logger = logging.getLogger(__name__)

EventType = Literal["status", "delta", "flush", "done", "error"]

_FENCE_RE = re.compile(r"^[ \t]{0,3}(```|~~~)", re.MULTILINE)
_BOUNDARY_RE = re.compile(r"(?:(?:(?<!\d)\.|[!?])[\"')\]*_]*\s*|\n[ \t]*\n\s*)$")


@dataclass(frozen=True)
class RelayEvent:
    type: EventType
    data: dict[str, Any]

    @classmethod
    def delta(cls, text: str) -> RelayEvent:
        return cls("delta", {"text": text})

    @classmethod
    def flush(cls) -> RelayEvent:
        return cls("flush", {})

    @classmethod
    def done(cls) -> RelayEvent:
        return cls("done", {})

    @classmethod
    def error(cls, message: str) -> RelayEvent:
        return cls("error", {"error": message})

    def to_sse(self) -> str:
        return f"event: {self.type}\ndata: {json.dumps(self.data, ensure_ascii=False)}\n\n"


def inside_code_fence(text: str) -> bool:
    return len(_FENCE_RE.findall(text)) % 2 == 1


def at_text_boundary(text: str) -> bool:
    return bool(text) and _BOUNDARY_RE.search(text) is not None


class StreamSegmenter:
    """Decides when the receiver should close its current display unit.

    A flush is due once the text accumulated since the previous flush is
    longer than ``threshold``, ends at a sentence end or blank line, and is not
    inside a fenced code block.
    """

    def __init__(self, threshold: int = 1200) -> None:
        self._threshold = threshold
        self._buffer = ""

    @property
    def buffered(self) -> str:
        return self._buffer

    def push(self, delta: str) -> bool:
        self._buffer += delta
        if len(self._buffer) <= self._threshold:
            return False
        if inside_code_fence(self._buffer) or not at_text_boundary(self._buffer):
            return False
        self._buffer = ""
        return True


def _error_message(exc: BaseException) -> str:
    return str(exc).strip() or exc.__class__.__name__


async def relay_stream(
    deltas: AsyncIterator[str],
    *,
    flush_threshold: int = 1200,
    fallback: Callable[[], Awaitable[str]] | None = None,
) -> AsyncIterator[RelayEvent]:
    """Forward upstream text deltas as relay events, ending in ``done`` or ``error``.

    If the upstream stream fails before producing any text, ``fallback`` (a
    single non-streaming completion) is tried once. A stream that produced no
    text still emits one empty ``delta`` before ``done``.
    """
    segmenter = StreamSegmenter(flush_threshold)
    emitted = 0

    try:
        async for delta in deltas:
            if not delta:
                continue
            emitted += 1
            yield RelayEvent.delta(delta)
            if segmenter.push(delta):
                yield RelayEvent.flush()
    except Exception as exc:
        if emitted or fallback is None:
            logger.warning("Completion stream failed after %d deltas: %s", emitted, exc)
            yield RelayEvent.error(_error_message(exc))
            return

        logger.warning("Completion stream failed, retrying without streaming: %s", exc)
        try:
            text = await fallback()
        except Exception as fallback_exc:
            logger.warning("Non-streaming fallback failed: %s", fallback_exc)
            yield RelayEvent.error(_error_message(fallback_exc))
            return

        pieces = split_markdown(text, flush_threshold)
        for position, piece in enumerate(pieces):
            if position:
                yield RelayEvent.flush()
            emitted += 1
            yield RelayEvent.delta(piece)
    finally:
        aclose = getattr(deltas, "aclose", None)
        if aclose is not None:
            await aclose()

    if not emitted:
        yield RelayEvent.delta("")
    yield RelayEvent.done()
