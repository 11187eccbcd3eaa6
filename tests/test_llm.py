import asyncio

import httpx
import pytest

from docqa.llm import LLMClientError, OpenAICompatibleChatClient, _parse_stream_line, _STREAM_DONE

MESSAGES = [{"role": "system", "content": "be brief"}, {"role": "user", "content": "hi"}]


class _FakeResponse:
    def __init__(self, payload: dict[str, object], *, status_code: int = 200) -> None:
        self._payload = payload
        self.status_code = status_code

    def raise_for_status(self) -> None:
        if self.status_code >= 400:
            request = httpx.Request("POST", "http://localhost:11434/v1/chat/completions")
            response = httpx.Response(self.status_code, request=request)
            raise httpx.HTTPStatusError("request failed", request=request, response=response)

    def json(self) -> dict[str, object]:
        return self._payload


def _completion(content: str) -> dict[str, object]:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


def test_complete_posts_messages_and_returns_answer(monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict[str, object] = {}

    def fake_post(url: str, *, json: dict[str, object], headers: dict[str, str] | None, timeout: float) -> _FakeResponse:
        captured["url"] = url
        captured["json"] = json
        captured["headers"] = headers
        return _FakeResponse(_completion("  Pumps need oil.  "))

    monkeypatch.setattr("docqa.llm.httpx.post", fake_post)

    client = OpenAICompatibleChatClient(
        base_url="http://localhost:11434/v1/",
        default_model="llama3.1:8b",
        api_key="secret",
    )
    result = client.complete(MESSAGES, temperature=0.1, max_tokens=64)

    assert result.answer == "Pumps need oil."
    assert result.model == "llama3.1:8b"
    assert result.used_fallback is False
    assert captured["url"] == "http://localhost:11434/v1/chat/completions"
    assert captured["json"] == {
        "model": "llama3.1:8b",
        "messages": MESSAGES,
        "temperature": 0.1,
        "max_tokens": 64,
    }
    assert captured["headers"] == {"Authorization": "Bearer secret"}


def test_complete_retries_with_fallback_model(monkeypatch: pytest.MonkeyPatch) -> None:
    models: list[object] = []

    def fake_post(url: str, *, json: dict[str, object], **kwargs: object) -> _FakeResponse:
        models.append(json["model"])
        if json["model"] == "primary":
            return _FakeResponse({}, status_code=500)
        return _FakeResponse(_completion("from fallback"))

    monkeypatch.setattr("docqa.llm.httpx.post", fake_post)

    client = OpenAICompatibleChatClient(base_url="http://llm/v1", default_model="primary", fallback_model="backup")
    result = client.complete(MESSAGES)

    assert models == ["primary", "backup"]
    assert result.answer == "from fallback"
    assert result.model == "backup"
    assert result.used_fallback is True


def test_complete_raises_without_fallback(monkeypatch: pytest.MonkeyPatch) -> None:
    def fake_post(url: str, **kwargs: object) -> _FakeResponse:
        return _FakeResponse({"choices": []})

    monkeypatch.setattr("docqa.llm.httpx.post", fake_post)

    client = OpenAICompatibleChatClient(base_url="http://llm/v1", default_model="primary")

    with pytest.raises(LLMClientError, match="missing choices"):
        client.complete(MESSAGES)


def test_parse_stream_line() -> None:
    assert _parse_stream_line('data: {"choices": [{"delta": {"content": "Hel"}}]}') == "Hel"
    assert _parse_stream_line("data: [DONE]") is _STREAM_DONE
    assert _parse_stream_line(": keep-alive") is None
    assert _parse_stream_line('data: {"choices": [{"delta": {"role": "assistant"}}]}') is None
    assert _parse_stream_line("data: not json") is None


def test_stream_answer_yields_content_deltas() -> None:
    body = (
        'data: {"choices": [{"delta": {"role": "assistant"}}]}\n\n'
        'data: {"choices": [{"delta": {"content": "Pumps "}}]}\n\n'
        'data: {"choices": [{"delta": {"content": "need oil."}}]}\n\n'
        "data: [DONE]\n\n"
        'data: {"choices": [{"delta": {"content": "ignored"}}]}\n\n'
    )
    seen: dict[str, object] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["body"] = request.content
        return httpx.Response(200, text=body, headers={"content-type": "text/event-stream"})

    transport = httpx.MockTransport(handler)
    real_client = httpx.AsyncClient

    def client_factory(**kwargs: object) -> httpx.AsyncClient:
        return real_client(transport=transport, **kwargs)

    client = OpenAICompatibleChatClient(base_url="http://llm/v1", default_model="primary")

    async def collect() -> list[str]:
        return [delta async for delta in client.stream_answer(MESSAGES)]

    with pytest.MonkeyPatch.context() as patcher:
        patcher.setattr("docqa.llm.httpx.AsyncClient", client_factory)
        deltas = asyncio.run(collect())

    assert deltas == ["Pumps ", "need oil."]
    assert seen["url"] == "http://llm/v1/chat/completions"
    assert b'"stream": true' in seen["body"] or b'"stream":true' in seen["body"]


def test_stream_answer_wraps_http_errors() -> None:
    transport = httpx.MockTransport(lambda request: httpx.Response(503))
    real_client = httpx.AsyncClient

    def client_factory(**kwargs: object) -> httpx.AsyncClient:
        return real_client(transport=transport, **kwargs)

    client = OpenAICompatibleChatClient(base_url="http://llm/v1", default_model="primary")

    async def collect() -> list[str]:
        return [delta async for delta in client.stream_answer(MESSAGES)]

    with pytest.MonkeyPatch.context() as patcher:
        patcher.setattr("docqa.llm.httpx.AsyncClient", client_factory)
        with pytest.raises(LLMClientError):
            asyncio.run(collect())
