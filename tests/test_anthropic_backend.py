from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, List

import httpx
import pytest

from computer_use_runtime.config.loader import RuntimeLlmConfig
from computer_use_runtime.core.errors import ProviderProtocolError
from computer_use_runtime.llm.anthropic_messages import AnthropicMessagesBackend
from computer_use_runtime.llm.protocol import MessagesRequest


def _request(**kwargs: Any) -> MessagesRequest:
    base: Dict[str, Any] = {
        "model": "test-model",
        "messages": [{"role": "user", "content": "hi"}],
        "system": [{"type": "text", "text": "sys"}],
        "tools": [{"name": "computer", "type": "computer_20250124"}],
        "max_tokens": 512,
        "betas": ["computer-use-2025-01-24", "prompt-caching-2024-07-31"],
    }
    base.update(kwargs)
    return MessagesRequest(**base)


def _backend(handler, **cfg: Any) -> AnthropicMessagesBackend:  # type: ignore[no-untyped-def]
    return AnthropicMessagesBackend(
        RuntimeLlmConfig.model_validate({"base_url": "https://llm.example.test/", **cfg}),
        api_key="sk-test",
        transport=httpx.MockTransport(handler),
    )


def test_request_shape_and_headers() -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "id": "msg_1",
                "model": "test-model",
                "stop_reason": "tool_use",
                "content": [{"type": "tool_use", "id": "t1", "name": "computer", "input": {"action": "screenshot"}}],
                "usage": {"input_tokens": 10, "output_tokens": 2},
            },
        )

    req = _request(thinking={"type": "enabled", "budget_tokens": 256}, extra={"temperature": 0})
    resp = asyncio.run(_backend(handler).create_message(req))

    assert resp.stop_reason == "tool_use"
    assert resp.content[0]["name"] == "computer"
    assert resp.usage == {"input_tokens": 10, "output_tokens": 2}

    sent = seen[0]
    assert str(sent.url) == "https://llm.example.test/v1/messages"
    assert sent.headers["x-api-key"] == "sk-test"
    assert sent.headers["anthropic-version"] == "2023-06-01"
    assert sent.headers["anthropic-beta"] == "computer-use-2025-01-24,prompt-caching-2024-07-31"
    body = json.loads(sent.content)
    assert body["model"] == "test-model"
    assert body["max_tokens"] == 512
    assert body["system"] == [{"type": "text", "text": "sys"}]
    assert body["tools"][0]["type"] == "computer_20250124"
    assert body["thinking"] == {"type": "enabled", "budget_tokens": 256}
    assert body["temperature"] == 0


def test_optional_fields_are_omitted() -> None:
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"stop_reason": "end_turn", "content": []})

    asyncio.run(_backend(handler).create_message(_request(system=[], tools=[], betas=[])))

    body = json.loads(seen[0].content)
    assert "system" not in body
    assert "tools" not in body
    assert "thinking" not in body
    assert "anthropic-beta" not in seen[0].headers


def test_api_key_from_env(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.setenv("MY_TEST_KEY", "sk-env")
    seen: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"content": []})

    backend = AnthropicMessagesBackend(
        RuntimeLlmConfig(api_key_env="MY_TEST_KEY"),
        transport=httpx.MockTransport(handler),
    )
    asyncio.run(backend.create_message(_request()))
    assert seen[0].headers["x-api-key"] == "sk-env"


def test_missing_api_key_fails_before_request(monkeypatch) -> None:  # type: ignore[no-untyped-def]
    monkeypatch.delenv("MY_TEST_KEY", raising=False)
    calls: List[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(200, json={})

    backend = AnthropicMessagesBackend(
        RuntimeLlmConfig(api_key_env="MY_TEST_KEY"),
        transport=httpx.MockTransport(handler),
    )
    with pytest.raises(ValueError, match="MY_TEST_KEY"):
        asyncio.run(backend.create_message(_request()))
    assert calls == []


def test_non_2xx_raises_http_status_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(529, json={"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})

    with pytest.raises(httpx.HTTPStatusError) as ei:
        asyncio.run(_backend(handler).create_message(_request()))
    assert ei.value.response.status_code == 529


def test_non_object_body_is_protocol_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=["not", "an", "object"])

    with pytest.raises(ProviderProtocolError):
        asyncio.run(_backend(handler).create_message(_request()))
