from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from docqa.config import get_settings
from docqa.db import Base, get_engine
from docqa.main import _index_store_for, app
from docqa.providers import resolve_provider

_PROVIDER_ENV = (
    "LLM_MODE",
    "LLM_BASE_URL",
    "LLM_API_KEY",
    "OPENAI_API_KEY",
    "GROQ_API_KEY",
    "LLM_FALLBACK_MODEL",
)


@pytest.fixture(autouse=True)
def reset_api_caches(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    for name in _PROVIDER_ENV:
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    get_engine.cache_clear()
    resolve_provider.cache_clear()
    _index_store_for.cache_clear()
    yield
    get_settings.cache_clear()
    get_engine.cache_clear()
    resolve_provider.cache_clear()
    _index_store_for.cache_clear()


@pytest.fixture
def docs_dir(tmp_path: Path) -> Path:
    path = tmp_path / "docs"
    path.mkdir()
    return path


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch, tmp_path: Path, docs_dir: Path) -> Iterator[TestClient]:
    sqlite_db_path = tmp_path / "api-tests.db"
    monkeypatch.setenv("API_DATABASE_URL", f"sqlite+pysqlite:///{sqlite_db_path}")
    monkeypatch.setenv("API_DB_ECHO", "false")
    monkeypatch.setenv("INDEX_DIR", str(tmp_path / "storage"))
    monkeypatch.delenv("INDEX_PATH", raising=False)
    monkeypatch.setenv("DOCS_DIR", str(docs_dir))
    monkeypatch.setenv("EMBEDDING_PROVIDER", "hash")

    engine = get_engine()
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    engine.dispose()
