from dataclasses import dataclass
from functools import lru_cache
import os
from pathlib import Path


class ConfigurationError(ValueError):
    pass


def _to_bool(value: str | None, *, default: bool) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _to_int(value: str | None, *, default: int, minimum: int) -> int:
    if value is None:
        return default
    parsed = int(value)
    return max(minimum, parsed)


def _to_float(value: str | None, *, default: float, minimum: float) -> float:
    if value is None:
        return default
    parsed = float(value)
    return max(minimum, parsed)


@dataclass(frozen=True)
class Settings:
    database_url: str
    db_echo: bool
    docs_dir: str
    index_dir: str
    index_path: str
    chunk_size: int
    chunk_overlap: int
    pdf_max_chars: int
    embedding_provider: str
    embed_base_url: str
    embed_model: str
    embedding_dim: int
    embed_batch_size: int
    llm_mode: str
    llm_base_url: str | None
    llm_model: str
    llm_fallback_model: str
    llm_api_key: str
    groq_api_key: str
    groq_model: str
    llm_timeout_seconds: float
    llm_probe_timeout_seconds: float
    chat_temperature: float
    chat_max_tokens: int
    stream_max_tokens: int
    retrieval_top_k: int
    snippet_max_chars: int
    history_excerpt_chars: int
    history_max_messages: int
    history_char_budget: int
    history_message_overhead: int
    chat_chunk_size: int
    ingest_progress_every: int
    ingest_stale_seconds: int
    log_level: str


@lru_cache
def get_settings() -> Settings:
    index_dir = os.getenv("INDEX_DIR", "storage")
    return Settings(
        database_url=os.getenv(
            "API_DATABASE_URL",
            f"sqlite+pysqlite:///{Path(index_dir) / 'jobs.db'}",
        ),
        db_echo=_to_bool(os.getenv("API_DB_ECHO"), default=False),
        docs_dir=os.getenv("DOCS_DIR", "docs"),
        index_dir=index_dir,
        index_path=os.getenv("INDEX_PATH", str(Path(index_dir) / "index.json")),
        chunk_size=_to_int(os.getenv("TXT_CHUNK_SIZE"), default=600, minimum=1),
        chunk_overlap=_to_int(os.getenv("TXT_CHUNK_OVERLAP"), default=80, minimum=0),
        pdf_max_chars=_to_int(os.getenv("PDF_MAX_CHARS"), default=4000, minimum=100),
        embedding_provider=os.getenv("EMBEDDING_PROVIDER", "http").strip().lower(),
        embed_base_url=os.getenv("EMBED_BASE_URL", "http://ollama:11434/v1"),
        embed_model=os.getenv("EMBED_MODEL", "all-minilm"),
        embedding_dim=_to_int(os.getenv("EMBEDDING_DIM"), default=384, minimum=8),
        embed_batch_size=_to_int(os.getenv("EMBED_BATCH_SIZE"), default=16, minimum=1),
        llm_mode=os.getenv("LLM_MODE", "").strip().lower(),
        llm_base_url=os.getenv("LLM_BASE_URL") or None,
        llm_model=os.getenv("LLM_MODEL", "llama3.1:8b"),
        llm_fallback_model=os.getenv("LLM_FALLBACK_MODEL", ""),
        llm_api_key=os.getenv("LLM_API_KEY") or os.getenv("OPENAI_API_KEY") or "ollama",
        groq_api_key=os.getenv("GROQ_API_KEY", ""),
        groq_model=os.getenv("GROQ_MODEL", "llama-3.1-8b-instant"),
        llm_timeout_seconds=_to_float(os.getenv("LLM_TIMEOUT_SECONDS"), default=60.0, minimum=1.0),
        llm_probe_timeout_seconds=_to_float(
            os.getenv("LLM_PROBE_TIMEOUT_SECONDS"), default=0.8, minimum=0.1
        ),
        chat_temperature=_to_float(os.getenv("CHAT_TEMPERATURE"), default=0.2, minimum=0.0),
        chat_max_tokens=_to_int(os.getenv("CHAT_MAX_TOKENS"), default=2048, minimum=16),
        stream_max_tokens=_to_int(os.getenv("STREAM_MAX_TOKENS"), default=800, minimum=16),
        retrieval_top_k=_to_int(os.getenv("RETRIEVAL_TOP_K"), default=12, minimum=1),
        snippet_max_chars=_to_int(os.getenv("SNIPPET_MAX_CHARS"), default=2000, minimum=50),
        history_excerpt_chars=_to_int(
            os.getenv("RETRIEVAL_HISTORY_EXCERPT_CHARS"), default=800, minimum=0
        ),
        history_max_messages=_to_int(os.getenv("HISTORY_MAX_MESSAGES"), default=8, minimum=0),
        history_char_budget=_to_int(os.getenv("HISTORY_CHAR_BUDGET"), default=6000, minimum=0),
        history_message_overhead=_to_int(
            os.getenv("HISTORY_MESSAGE_OVERHEAD"), default=20, minimum=0
        ),
        chat_chunk_size=_to_int(os.getenv("CHAT_CHUNK_SIZE"), default=1200, minimum=100),
        ingest_progress_every=_to_int(os.getenv("INGEST_PROGRESS_EVERY"), default=25, minimum=1),
        ingest_stale_seconds=_to_int(os.getenv("INGEST_STALE_SECONDS"), default=600, minimum=10),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper(),
    )
