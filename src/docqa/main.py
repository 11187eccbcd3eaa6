from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
import logging
from pathlib import Path
from typing import Annotated, Any

from fastapi import BackgroundTasks, Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from docqa.config import ConfigurationError, get_settings
from docqa.db import get_engine, init_db
from docqa.llm import LLMClient, LLMClientError
from docqa.models import JobRecord
from docqa.providers import build_chat_client, resolve_provider
from docqa.services.rag import (
    IndexStore,
    RelayEvent,
    SearchHit,
    assemble_context,
    relay_stream,
    sanitize_history,
    search_index,
    split_markdown,
)
from docqa.services.rag.context import AssembledPrompt, source_label
from docqa.services.rag.embedding_client import (
    EmbeddingClient,
    EmbeddingClientError,
    build_embedding_client,
)
from docqa.services.rag.ingest import Extractor, pipeline_factory_from_settings
from docqa.services.rag.jobs import (
    IngestionAlreadyRunning,
    create_ingestion_job,
    get_job,
    get_latest_job,
    job_progress,
    run_ingestion_job,
    run_ingestion_job_in_background,
)
from docqa.services.rag.loader import extract_document, list_documents, relative_source_path

logger = logging.getLogger(__name__)

app = FastAPI(title="Document Q&A API", version="0.1.0")


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    query: str = Field(min_length=1)
    history: list[Any] | None = None
    selected_sources: list[str] | None = None
    allow_outside_knowledge: bool = False
    k: int | None = Field(default=None, ge=1, le=50)


@dataclass(frozen=True)
class PreparedChat:
    prompt: AssembledPrompt
    history_count: int


@app.on_event("startup")
def startup() -> None:
    settings = get_settings()
    logging.basicConfig(level=settings.log_level, format="%(levelname)s [%(name)s] %(message)s")
    init_db()


@lru_cache
def _index_store_for(index_path: str, default_dim: int) -> IndexStore:
    return IndexStore(Path(index_path), default_dim=default_dim)


def get_index_store() -> IndexStore:
    settings = get_settings()
    return _index_store_for(settings.index_path, settings.embedding_dim)


def get_embedding_client() -> EmbeddingClient:
    try:
        return build_embedding_client(get_settings())
    except ConfigurationError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc


def get_llm_client() -> LLMClient:
    try:
        provider = resolve_provider()
    except ConfigurationError as exc:
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return build_chat_client(provider, get_settings())


def get_document_extractor() -> Extractor:
    return extract_document


def _to_iso(value: datetime | None) -> str | None:
    if value is None:
        return None
    return value.isoformat()


def _job_detail(job: JobRecord) -> dict[str, Any]:
    return {
        "id": job.id,
        "type": job.type,
        "status": job.status,
        "payload_json": job.payload_json,
        "processed": job.processed,
        "total": job.total,
        "created_at": _to_iso(job.created_at),
        "updated_at": _to_iso(job.updated_at),
        "started_at": _to_iso(job.started_at),
        "finished_at": _to_iso(job.finished_at),
        "error": job.error,
        "result_json": job.result_json,
    }


def _hit_payload(hit: SearchHit) -> dict[str, Any]:
    chunk = hit.item.chunk
    return {
        "chunk_id": chunk.chunk_id,
        "source_path": chunk.source_path,
        "page_number": chunk.page_number,
        "label": source_label(hit),
        "score": round(hit.score, 6),
        "text": chunk.text,
    }


def _conflict(exc: IngestionAlreadyRunning) -> JSONResponse:
    return JSONResponse(
        status_code=409,
        content={
            "detail": "ingestion already running",
            "existing_job_id": exc.existing_job_id,
        },
    )


def _prepare_chat(
    request: ChatRequest,
    *,
    embedding_client: EmbeddingClient,
    index_store: IndexStore,
) -> PreparedChat:
    query = request.query.strip()
    if not query:
        raise HTTPException(status_code=400, detail="query must not be empty")

    settings = get_settings()
    try:
        history = sanitize_history(
            request.history,
            max_messages=settings.history_max_messages,
            max_chars=settings.history_char_budget,
            message_overhead=settings.history_message_overhead,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        prompt = assemble_context(
            query=query,
            history=history,
            index=index_store.load(),
            embedding_client=embedding_client,
            selected_sources=request.selected_sources,
            allow_outside_knowledge=request.allow_outside_knowledge,
            top_k=request.k or settings.retrieval_top_k,
            snippet_max_chars=settings.snippet_max_chars,
            excerpt_chars=settings.history_excerpt_chars,
        )
    except ConfigurationError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except EmbeddingClientError as exc:
        raise HTTPException(status_code=502, detail=f"Embedding request failed: {exc}") from exc
    except ValueError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    logger.info("Chat query with %d history messages, %d hits", len(history), len(prompt.hits))
    return PreparedChat(prompt=prompt, history_count=len(history))


@app.get("/health")
def health() -> dict[str, str]:
    return {"status": "ok"}


@app.get("/api/status")
def status(index_store: Annotated[IndexStore, Depends(get_index_store)]) -> dict[str, Any]:
    settings = get_settings()
    try:
        provider_info: dict[str, str | None] = resolve_provider().info()
    except ConfigurationError:
        provider_info = {"provider": None, "base_url": None, "model": settings.llm_model}

    try:
        index = index_store.load()
        index_info: dict[str, Any] = {"dim": index.dim, "chunks": len(index.items)}
    except ValueError as exc:
        index_info = {"error": str(exc)}

    return {"ok": True, **provider_info, "index": index_info}


@app.post("/api/ingest")
def ingest(
    index_store: Annotated[IndexStore, Depends(get_index_store)],
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
    extractor: Annotated[Extractor, Depends(get_document_extractor)],
) -> JSONResponse:
    settings = get_settings()
    engine = get_engine()
    source_dir = Path(settings.docs_dir)

    try:
        job_id = create_ingestion_job(
            engine,
            source_dir=source_dir,
            stale_seconds=settings.ingest_stale_seconds,
        )
    except IngestionAlreadyRunning as exc:
        return _conflict(exc)

    factory = pipeline_factory_from_settings(
        settings,
        index_store=index_store,
        embedding_client=embedding_client,
        extractor=extractor,
    )
    try:
        result = run_ingestion_job(
            engine,
            job_id,
            source_dir=source_dir,
            pipeline_factory=factory,
            progress_every=settings.ingest_progress_every,
        )
    except Exception as exc:
        logger.exception("Ingestion job %s failed", job_id)
        return JSONResponse(
            status_code=500,
            content={"ok": False, "job_id": job_id, "error": str(exc) or exc.__class__.__name__},
        )

    return JSONResponse(status_code=200, content={"ok": True, "job_id": job_id, "chunks": result["chunks"]})


@app.post("/api/ingest/start")
def start_ingestion(
    background_tasks: BackgroundTasks,
    index_store: Annotated[IndexStore, Depends(get_index_store)],
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
    extractor: Annotated[Extractor, Depends(get_document_extractor)],
) -> JSONResponse:
    settings = get_settings()
    engine = get_engine()
    source_dir = Path(settings.docs_dir)

    try:
        job_id = create_ingestion_job(
            engine,
            source_dir=source_dir,
            stale_seconds=settings.ingest_stale_seconds,
        )
    except IngestionAlreadyRunning as exc:
        return _conflict(exc)

    background_tasks.add_task(
        run_ingestion_job_in_background,
        engine,
        job_id,
        source_dir=source_dir,
        pipeline_factory=pipeline_factory_from_settings(
            settings,
            index_store=index_store,
            embedding_client=embedding_client,
            extractor=extractor,
        ),
        progress_every=settings.ingest_progress_every,
    )
    return JSONResponse(status_code=202, content={"job_id": job_id, "status": "idle"})


@app.get("/api/ingest/status")
def ingestion_status(job_id: str | None = Query(default=None)) -> dict[str, Any]:
    engine = get_engine()
    if job_id is None:
        return job_progress(get_latest_job(engine))

    job = get_job(engine, job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="job not found")
    return job_progress(job)


@app.get("/api/ingest/jobs/{job_id}")
def ingestion_job(job_id: str) -> dict[str, Any]:
    job = get_job(get_engine(), job_id)
    if job is None:
        raise HTTPException(status_code=404, detail="job not found")
    return _job_detail(job)


@app.get("/api/documents")
def documents(index_store: Annotated[IndexStore, Depends(get_index_store)]) -> list[dict[str, Any]]:
    settings = get_settings()
    source_dir = Path(settings.docs_dir)
    try:
        files = list_documents(source_dir)
    except (FileNotFoundError, NotADirectoryError):
        return []

    indexed: dict[str, int] = {}
    try:
        for item in index_store.load().items:
            indexed[item.source_path] = indexed.get(item.source_path, 0) + 1
    except ValueError as exc:
        logger.warning("Index unreadable while listing documents: %s", exc)

    listing = []
    for path in files:
        source_path = relative_source_path(path, source_dir)
        listing.append(
            {
                "source_path": source_path,
                "name": path.name,
                "size_bytes": path.stat().st_size,
                "indexed_chunks": indexed.get(source_path, 0),
            }
        )
    return listing


@app.get("/api/search")
def rag_search(
    q: str,
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
    index_store: Annotated[IndexStore, Depends(get_index_store)],
    k: int = 6,
    source: Annotated[list[str] | None, Query()] = None,
) -> list[dict[str, Any]]:
    if not q.strip():
        raise HTTPException(status_code=400, detail="q must not be empty")

    top_k = max(1, min(k, 50))
    try:
        hits = search_index(
            index_store.load(),
            query_text=q,
            embedding_client=embedding_client,
            top_k=top_k,
            allowed_sources=source,
        )
    except ConfigurationError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc
    except EmbeddingClientError as exc:
        raise HTTPException(status_code=502, detail=f"Embedding request failed: {exc}") from exc
    except ValueError as exc:
        raise HTTPException(status_code=500, detail=str(exc)) from exc

    return [_hit_payload(hit) for hit in hits]


@app.post("/api/chat")
def chat(
    request: ChatRequest,
    llm_client: Annotated[LLMClient, Depends(get_llm_client)],
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
    index_store: Annotated[IndexStore, Depends(get_index_store)],
) -> dict[str, Any]:
    settings = get_settings()
    prepared = _prepare_chat(request, embedding_client=embedding_client, index_store=index_store)

    try:
        chat_result = llm_client.complete(
            prepared.prompt.messages,
            temperature=settings.chat_temperature,
            max_tokens=settings.chat_max_tokens,
        )
    except LLMClientError as exc:
        raise HTTPException(status_code=502, detail=f"LLM request failed: {exc}") from exc

    return {
        "ok": True,
        "answer": chat_result.answer,
        "chunks": split_markdown(chat_result.answer, settings.chat_chunk_size),
        "sources": [_hit_payload(hit) for hit in prepared.prompt.hits],
        "meta": {
            "model": chat_result.model,
            "used_fallback": chat_result.used_fallback,
            "retrieval_k": request.k or settings.retrieval_top_k,
            "retrieved_count": len(prepared.prompt.hits),
            "history_messages": prepared.history_count,
            "allow_outside_knowledge": request.allow_outside_knowledge,
        },
    }


@app.post("/api/chat/stream")
async def chat_stream(
    request: ChatRequest,
    http_request: Request,
    llm_client: Annotated[LLMClient, Depends(get_llm_client)],
    embedding_client: Annotated[EmbeddingClient, Depends(get_embedding_client)],
    index_store: Annotated[IndexStore, Depends(get_index_store)],
) -> StreamingResponse:
    settings = get_settings()
    prepared = await asyncio.to_thread(
        _prepare_chat,
        request,
        embedding_client=embedding_client,
        index_store=index_store,
    )
    messages = prepared.prompt.messages

    async def complete_once() -> str:
        result = await asyncio.to_thread(
            llm_client.complete,
            messages,
            temperature=settings.chat_temperature,
            max_tokens=settings.stream_max_tokens,
        )
        return result.answer

    async def event_source() -> AsyncIterator[str]:
        yield RelayEvent("status", {"ok": True, "started": True}).to_sse()
        deltas = llm_client.stream_answer(
            messages,
            temperature=settings.chat_temperature,
            max_tokens=settings.stream_max_tokens,
        )
        try:
            async with aclosing(
                relay_stream(deltas, flush_threshold=settings.chat_chunk_size, fallback=complete_once)
            ) as events:
                async for event in events:
                    if await http_request.is_disconnected():
                        logger.info("Client disconnected, cancelling completion stream")
                        return
                    yield event.to_sse()
        except Exception as exc:
            logger.exception("Chat stream failed")
            yield RelayEvent.error(str(exc) or exc.__class__.__name__).to_sse()

    return StreamingResponse(
        event_source(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
    )


def run() -> None:
    import uvicorn

    uvicorn.run("docqa.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    run()
