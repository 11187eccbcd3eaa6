from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from docqa.services.rag.types import ChatMessage

DEFAULT_MESSAGE_OVERHEAD = 20


def sanitize_history(
    raw: Iterable[Any] | None,
    *,
    max_messages: int = 8,
    max_chars: int = 6000,
    message_overhead: int = DEFAULT_MESSAGE_OVERHEAD,
) -> list[ChatMessage]:
    """Bound a client transcript to its most recent valid messages.

    Entries with an unknown role or empty content are dropped. Of the rest,
    only the last ``max_messages`` are considered, and walking back from the
    newest one each message costs ``len(content) + message_overhead`` until
    ``max_chars`` would be exceeded. The result keeps chronological order.
    """
    if raw is None:
        return []
    if isinstance(raw, (str, bytes, dict)):
        raise ValueError("history must be a list of messages")

    cleaned = [message for message in map(ChatMessage.from_raw, raw) if message is not None]
    if max_messages <= 0:
        return []
    recent = cleaned[-max_messages:]

    kept: list[ChatMessage] = []
    total = 0
    for message in reversed(recent):
        cost = len(message.content) + message_overhead
        if total + cost > max_chars:
            break
        kept.append(message)
        total += cost

    kept.reverse()
    return kept


def last_assistant_excerpt(history: list[ChatMessage], *, max_chars: int = 800) -> str:
    for message in reversed(history):
        if message.role == "assistant":
            return message.content[:max_chars]
    return ""
