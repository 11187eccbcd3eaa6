from __future__ import annotations

from collections.abc import Collection
from dataclasses import dataclass
import logging
import posixpath

from docqa.services.rag.embedding_client import EmbeddingClient
from docqa.services.rag.history import last_assistant_excerpt
from docqa.services.rag.query import search_index
from docqa.services.rag.types import ChatMessage, Index, SearchHit

logger = logging.getLogger(__name__)

STRICT_POLICY = (
    "You are an expert research assistant. Answer using ONLY the provided context snippets. "
    "Never use outside knowledge. If the snippets do not contain the answer, say explicitly "
    "that the provided documents do not contain enough information to answer."
)

AUGMENTED_POLICY = (
    "You are an expert research assistant. Prefer the provided context snippets. Where they "
    "leave gaps you may use general knowledge, but say which parts are not backed by the "
    "documents and never attach a citation to them."
)

CITATION_RULES = """Citations:
- After each sentence supported by the context, add an inline numbered marker such as [1].
- Reuse the same number every time you cite the same source.
- End with a "Sources" list mapping each number to its source as `filename.ext p.N`, or `filename.ext` when there is no page.
- Only cite claims backed by the context. Do not include URLs or paths in citations. Do not invent sources.
Respond in Markdown with clear headings, lists, and code blocks when helpful. Be concise."""

NO_CONTEXT_MARKER = "(no relevant context found in the indexed documents)"


@dataclass(frozen=True)
class AssembledPrompt:
    messages: list[dict[str, str]]
    hits: list[SearchHit]
    retrieval_query: str


def system_instruction(*, allow_outside_knowledge: bool) -> str:
    policy = AUGMENTED_POLICY if allow_outside_knowledge else STRICT_POLICY
    return f"{policy}\n{CITATION_RULES}"


def source_label(hit: SearchHit) -> str:
    chunk = hit.item.chunk
    name = posixpath.basename(chunk.source_path)
    if chunk.page_number:
        return f"{name} p.{chunk.page_number}"
    return name


def render_context_line(hit: SearchHit, *, snippet_max_chars: int = 2000) -> str:
    snippet = hit.item.chunk.text[:snippet_max_chars]
    return f"[src={source_label(hit)}#{hit.item.chunk.chunk_id}] {snippet}"


def retrieval_query_for(query: str, assistant_excerpt: str) -> str:
    if not assistant_excerpt:
        return query
    return f"{assistant_excerpt} \n\n{query}"


def _user_turn(
    query: str,
    *,
    context_lines: list[str],
    assistant_excerpt: str,
    allow_outside_knowledge: bool,
) -> str:
    if not context_lines:
        if allow_outside_knowledge:
            instructions = (
                "The documents returned no relevant context. Answer from general knowledge, "
                "say that the documents did not cover this, and do not add citations."
            )
        else:
            instructions = (
                "The documents returned no relevant context. Do not answer from outside "
                "knowledge; state that there is not enough information in the provided "
                "documents to answer."
            )
        return f"Context:\n{NO_CONTEXT_MARKER}\n\nQuestion: {query}\n\nInstructions: {instructions}"

    blocks = []
    if assistant_excerpt:
        blocks.append(f"Previous answer excerpt (for context):\n{assistant_excerpt}")
    blocks.extend(context_lines)
    context = "\n\n".join(blocks)

    if allow_outside_knowledge:
        instructions = (
            "Prefer the context. Fill gaps from general knowledge only where needed and cite "
            "only context-backed sentences. Respond in Markdown."
        )
    else:
        instructions = (
            "Use only the context. If information is missing, say so. Cite sources with "
            "numbered markers and end with the Sources list. Respond in Markdown."
        )
    return f"Context:\n{context}\n\nQuestion: {query}\n\nInstructions: {instructions}"


def build_messages(
    *,
    query: str,
    history: list[ChatMessage],
    hits: list[SearchHit],
    allow_outside_knowledge: bool,
    assistant_excerpt: str = "",
    snippet_max_chars: int = 2000,
) -> list[dict[str, str]]:
    context_lines = [render_context_line(hit, snippet_max_chars=snippet_max_chars) for hit in hits]
    return [
        {"role": "system", "content": system_instruction(allow_outside_knowledge=allow_outside_knowledge)},
        *(message.as_dict() for message in history),
        {
            "role": "user",
            "content": _user_turn(
                query,
                context_lines=context_lines,
                assistant_excerpt=assistant_excerpt,
                allow_outside_knowledge=allow_outside_knowledge,
            ),
        },
    ]


def assemble_context(
    *,
    query: str,
    history: list[ChatMessage],
    index: Index,
    embedding_client: EmbeddingClient,
    selected_sources: Collection[str] | None = None,
    allow_outside_knowledge: bool = False,
    top_k: int = 12,
    snippet_max_chars: int = 2000,
    excerpt_chars: int = 800,
) -> AssembledPrompt:
    normalized_query = query.strip()
    if not normalized_query:
        raise ValueError("query must not be empty")

    excerpt = last_assistant_excerpt(history, max_chars=excerpt_chars)
    retrieval_query = retrieval_query_for(normalized_query, excerpt)
    hits = search_index(
        index,
        query_text=retrieval_query,
        embedding_client=embedding_client,
        top_k=top_k,
        allowed_sources=selected_sources,
    )

    logger.debug("History messages used: %d", len(history))
    for message in history:
        logger.debug("History preview %s: %s", message.role, message.content[:80])

    messages = build_messages(
        query=normalized_query,
        history=history,
        hits=hits,
        allow_outside_knowledge=allow_outside_knowledge,
        assistant_excerpt=excerpt,
        snippet_max_chars=snippet_max_chars,
    )
    return AssembledPrompt(messages=messages, hits=hits, retrieval_query=retrieval_query)
