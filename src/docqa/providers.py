from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass
from functools import lru_cache
import logging

import httpx

from docqa.config import ConfigurationError, Settings, get_settings
from docqa.llm import OpenAICompatibleChatClient

logger = logging.getLogger(__name__)

GROQ_BASE_URL = "https://api.groq.com/openai/v1"
DEFAULT_LOCAL_BASE_URL = "http://ollama:11434/v1"
LOCAL_CANDIDATES = (
    DEFAULT_LOCAL_BASE_URL,
    "http://host.docker.internal:11434/v1",
)

OPENAI_COMPATIBLE = "openai-compatible"
GROQ = "groq"


@dataclass(frozen=True)
class ProviderConfig:
    provider: str
    base_url: str
    model: str
    api_key: str
    fallback_model: str = ""

    def info(self) -> dict[str, str | None]:
        return {
            "provider": self.provider,
            "base_url": self.base_url if self.provider == OPENAI_COMPATIBLE else None,
            "model": self.model,
        }


Resolver = Callable[[Settings], ProviderConfig | None]


def _local(settings: Settings, base_url: str) -> ProviderConfig:
    return ProviderConfig(
        provider=OPENAI_COMPATIBLE,
        base_url=base_url,
        model=settings.llm_model,
        api_key=settings.llm_api_key,
        fallback_model=settings.llm_fallback_model,
    )


def _groq(settings: Settings) -> ProviderConfig:
    if not settings.groq_api_key:
        raise ConfigurationError("LLM_MODE=groq but GROQ_API_KEY is not set")
    return ProviderConfig(
        provider=GROQ,
        base_url=GROQ_BASE_URL,
        model=settings.groq_model,
        api_key=settings.groq_api_key,
    )


def resolve_forced_mode(settings: Settings) -> ProviderConfig | None:
    if settings.llm_mode == "groq":
        return _groq(settings)
    if settings.llm_mode in {"ollama", "openai", OPENAI_COMPATIBLE}:
        return _local(settings, settings.llm_base_url or DEFAULT_LOCAL_BASE_URL)
    return None


def resolve_explicit_base_url(settings: Settings) -> ProviderConfig | None:
    if settings.llm_base_url:
        return _local(settings, settings.llm_base_url)
    return None


def _probe(base_url: str, *, timeout_seconds: float) -> bool:
    try:
        response = httpx.get(f"{base_url}/models", timeout=timeout_seconds)
    except httpx.HTTPError:
        return False
    return response.is_success


def resolve_local_probe(settings: Settings) -> ProviderConfig | None:
    for base_url in LOCAL_CANDIDATES:
        if _probe(base_url, timeout_seconds=settings.llm_probe_timeout_seconds):
            logger.info("Detected local OpenAI-compatible server at %s", base_url)
            return _local(settings, base_url)
    return None


def resolve_groq_key(settings: Settings) -> ProviderConfig | None:
    if settings.groq_api_key:
        return _groq(settings)
    return None


DEFAULT_RESOLVERS: tuple[Resolver, ...] = (
    resolve_forced_mode,
    resolve_explicit_base_url,
    resolve_local_probe,
    resolve_groq_key,
)


def resolve_with(settings: Settings, resolvers: Sequence[Resolver]) -> ProviderConfig:
    for resolver in resolvers:
        provider = resolver(settings)
        if provider is not None:
            return provider
    raise ConfigurationError(
        "No LLM provider configured. Set LLM_BASE_URL for a local OpenAI-compatible server "
        "(e.g. Ollama), or set GROQ_API_KEY for Groq."
    )


@lru_cache
def resolve_provider() -> ProviderConfig:
    return resolve_with(get_settings(), DEFAULT_RESOLVERS)


def build_chat_client(provider: ProviderConfig, settings: Settings) -> OpenAICompatibleChatClient:
    return OpenAICompatibleChatClient(
        base_url=provider.base_url,
        default_model=provider.model,
        fallback_model=provider.fallback_model,
        api_key=provider.api_key,
        timeout_seconds=settings.llm_timeout_seconds,
    )
