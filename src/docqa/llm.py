from __future__ import annotations

from collections.abc import AsyncIterator
from dataclasses import dataclass
import json
from typing import Any, Protocol

import httpx


class LLMClientError(RuntimeError):
    pass


@dataclass(frozen=True)
class ChatResult:
    answer: str
    model: str
    used_fallback: bool


class LLMClient(Protocol):
    def complete(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float = 0.2,
        max_tokens: int = 800,
    ) -> ChatResult: ...

    def stream_answer(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float = 0.2,
        max_tokens: int = 800,
    ) -> AsyncIterator[str]: ...


_STREAM_DONE = object()


def _parse_stream_line(line: str) -> object:
    """Return the text delta carried by one SSE line, ``_STREAM_DONE``, or ``None``."""
    stripped = line.strip()
    if not stripped.startswith("data:"):
        return None

    data = stripped[5:].strip()
    if data == "[DONE]":
        return _STREAM_DONE
    try:
        payload = json.loads(data)
    except json.JSONDecodeError:
        return None

    choices = payload.get("choices") if isinstance(payload, dict) else None
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    delta = choices[0].get("delta")
    content = delta.get("content") if isinstance(delta, dict) else None
    return content if isinstance(content, str) else None


class OpenAICompatibleChatClient:
    """Chat completions against any OpenAI-compatible server (Ollama, Groq, vLLM)."""

    def __init__(
        self,
        *,
        base_url: str,
        default_model: str,
        fallback_model: str = "",
        api_key: str | None = None,
        timeout_seconds: float = 60.0,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._default_model = default_model
        self._fallback_model = fallback_model
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds

    @property
    def model(self) -> str:
        return self._default_model

    def complete(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float = 0.2,
        max_tokens: int = 800,
    ) -> ChatResult:
        for model, used_fallback in self._model_candidates():
            try:
                content = self._chat_completion(
                    model=model,
                    messages=messages,
                    temperature=temperature,
                    max_tokens=max_tokens,
                )
            except (httpx.HTTPError, ValueError) as exc:
                if used_fallback or not self._has_fallback():
                    raise LLMClientError(str(exc)) from exc
                continue

            return ChatResult(answer=content, model=model, used_fallback=used_fallback)

        raise LLMClientError("No model candidates configured")

    async def stream_answer(
        self,
        messages: list[dict[str, str]],
        *,
        temperature: float = 0.2,
        max_tokens: int = 800,
    ) -> AsyncIterator[str]:
        payload = self._payload(
            model=self._default_model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
        )
        payload["stream"] = True

        try:
            async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
                async with client.stream(
                    "POST",
                    f"{self._base_url}/chat/completions",
                    json=payload,
                    headers=self._headers(),
                ) as response:
                    response.raise_for_status()
                    async for line in response.aiter_lines():
                        parsed = _parse_stream_line(line)
                        if parsed is _STREAM_DONE:
                            return
                        if isinstance(parsed, str) and parsed:
                            yield parsed
        except httpx.HTTPError as exc:
            raise LLMClientError(str(exc)) from exc

    def _has_fallback(self) -> bool:
        return bool(self._fallback_model) and self._fallback_model != self._default_model

    def _model_candidates(self) -> list[tuple[str, bool]]:
        candidates: list[tuple[str, bool]] = [(self._default_model, False)]
        if self._has_fallback():
            candidates.append((self._fallback_model, True))
        return candidates

    def _headers(self) -> dict[str, str] | None:
        if not self._api_key:
            return None
        return {"Authorization": f"Bearer {self._api_key}"}

    def _payload(
        self,
        *,
        model: str,
        messages: list[dict[str, str]],
        temperature: float,
        max_tokens: int,
    ) -> dict[str, Any]:
        return {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }

    def _chat_completion(
        self,
        *,
        model: str,
        messages: list[dict[str, str]],
        temperature: float,
        max_tokens: int,
    ) -> str:
        response = httpx.post(
            f"{self._base_url}/chat/completions",
            json=self._payload(
                model=model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens,
            ),
            headers=self._headers(),
            timeout=self._timeout_seconds,
        )
        response.raise_for_status()

        payload = response.json()
        choices = payload.get("choices")
        if not isinstance(choices, list) or not choices:
            raise ValueError("Invalid chat completion payload: missing choices")

        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        content = message.get("content") if isinstance(message, dict) else None
        if not isinstance(content, str):
            raise ValueError("Invalid chat completion payload: missing assistant content")

        return content.strip()
