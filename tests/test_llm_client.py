"""Tests for the OpenAI-compatible and Anthropic text-understanding clients."""

import json
from pathlib import Path

import httpx
import pytest

from weave.config import WeaveConfig
from weave.errors import ExtractionUnavailableError, TransportFailure
from weave.llm_client import AnthropicClient, LLMClient, build_llm_client


def _config(tmp_path: Path, **overrides) -> WeaveConfig:
    return WeaveConfig(state_dir=tmp_path, db_path=tmp_path / "weave.sqlite", **overrides)


@pytest.mark.asyncio
class TestLLMClient:

    async def test_chat_completion_request_and_reply(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200, json={"choices": [{"message": {"content": '{"entities": []}'}}]}
            )

        client = LLMClient(
            base_url="http://llm.local:8000/",
            model="test-model",
            api_key="secret",
            transport=httpx.MockTransport(handler),
        )
        try:
            reply = await client.extract_structured("extract this")
        finally:
            await client.close()

        assert reply == '{"entities": []}'
        assert seen["url"] == "http://llm.local:8000/v1/chat/completions"
        assert seen["auth"] == "Bearer secret"
        assert seen["body"]["model"] == "test-model"
        assert seen["body"]["messages"][-1] == {"role": "user", "content": "extract this"}
        assert seen["body"]["stream"] is False

    async def test_no_auth_header_without_key(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert "Authorization" not in request.headers
            return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

        client = LLMClient("http://llm.local", "m", transport=httpx.MockTransport(handler))
        assert await client.extract_structured("p") == "ok"
        await client.close()

    async def test_retries_transient_status_then_succeeds(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            if len(calls) == 1:
                return httpx.Response(503, text="overloaded")
            return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

        client = LLMClient(
            "http://llm.local", "m", max_retries=2, backoff_base=0,
            transport=httpx.MockTransport(handler),
        )
        assert await client.extract_structured("p") == "ok"
        assert len(calls) == 2
        await client.close()

    async def test_non_retryable_status_fails_immediately(self):
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(400, text="max_tokens exceeds context length")

        client = LLMClient(
            "http://llm.local", "m", max_retries=3, backoff_base=0,
            transport=httpx.MockTransport(handler),
        )
        with pytest.raises(TransportFailure) as exc_info:
            await client.extract_structured("p")
        await client.close()

        assert len(calls) == 1
        assert "400" in str(exc_info.value)
        assert "max_tokens exceeds context length" in str(exc_info.value)

    async def test_connection_error_becomes_transport_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = LLMClient("http://llm.local", "m", transport=httpx.MockTransport(handler))
        with pytest.raises(TransportFailure) as exc_info:
            await client.extract_structured("p")
        await client.close()
        assert "ConnectError" in str(exc_info.value)

    async def test_unexpected_shape_is_transport_failure(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"choices": []})

        client = LLMClient("http://llm.local", "m", transport=httpx.MockTransport(handler))
        with pytest.raises(TransportFailure):
            await client.extract_structured("p")
        await client.close()


@pytest.mark.asyncio
class TestAnthropicClient:

    async def test_messages_request_and_reply(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200,
                json={
                    "content": [
                        {"type": "text", "text": '{"entities": '},
                        {"type": "text", "text": "[]}"},
                    ]
                },
            )

        client = AnthropicClient(
            base_url="https://api.anthropic.com",
            model="claude-test",
            api_key="sk-test",
            max_tokens=1024,
            transport=httpx.MockTransport(handler),
        )
        reply = await client.extract_structured("extract this")
        await client.close()

        assert reply == '{"entities": []}'
        assert seen["url"] == "https://api.anthropic.com/v1/messages"
        assert seen["headers"]["x-api-key"] == "sk-test"
        assert seen["headers"]["anthropic-version"] == "2023-06-01"
        assert seen["body"]["max_tokens"] == 1024
        assert seen["body"]["messages"] == [{"role": "user", "content": "extract this"}]


class TestBuildLLMClient:

    def test_openai_provider(self, tmp_path):
        client = build_llm_client(_config(tmp_path, llm_api_url="http://llm.local"))
        assert type(client) is LLMClient
        assert client.base_url == "http://llm.local"

    def test_anthropic_provider(self, tmp_path):
        client = build_llm_client(
            _config(tmp_path, llm_provider="anthropic", llm_api_key="sk", llm_max_retries=2)
        )
        assert isinstance(client, AnthropicClient)
        assert client.max_retries == 2

    def test_anthropic_without_key_is_unavailable(self, tmp_path):
        with pytest.raises(ExtractionUnavailableError):
            build_llm_client(_config(tmp_path, llm_provider="anthropic"))
