"""Tests for the reasoning client and conversation history."""

import json

import httpx
import pytest

from voxrelay.config import GatewayConfig, ReasoningConfig
from voxrelay.services.reasoning import (
    ConversationHistory,
    ReasoningClient,
    ReasoningError,
)


def completion(content):
    return httpx.Response(200, json={"choices": [{"message": {"role": "assistant", "content": content}}]})


def make_client(handler, **kwargs) -> ReasoningClient:
    http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ReasoningClient("http://gateway:18789/", "tok", client=http, **kwargs)


class TestConversationHistory:
    def test_caps_messages_per_key(self):
        history = ConversationHistory(max_messages=3)
        for i in range(5):
            history.append("a", "user", str(i))
        assert [m["content"] for m in history.get("a")] == ["2", "3", "4"]
        assert history.get("b") == []

    def test_get_returns_copy(self):
        history = ConversationHistory()
        history.append("a", "user", "x")
        history.get("a").clear()
        assert len(history.get("a")) == 1

    def test_clear(self):
        history = ConversationHistory()
        history.append("a", "user", "x")
        history.append("b", "user", "y")
        history.clear("a")
        assert history.get("a") == []
        history.clear()
        assert len(history) == 0


class TestReasoningClient:
    @pytest.mark.asyncio
    async def test_request_shape_and_history_update(self):
        seen = []

        def handler(request):
            seen.append(request)
            return completion("  About 240 calories.  ")

        history = ConversationHistory()
        history.append("agent:main:main", "user", "earlier")
        history.append("agent:main:main", "assistant", "reply")
        client = make_client(handler, system_prompt="Be brief.", model="openclaw:main")

        answer = await client.respond("agent:main:main", "Calories in an avocado?", history)

        assert answer == "About 240 calories."
        request = seen[0]
        assert str(request.url) == "http://gateway:18789/v1/chat/completions"
        assert request.headers["authorization"] == "Bearer tok"
        body = json.loads(request.content)
        assert body["model"] == "openclaw:main"
        assert body["max_tokens"] == 300
        assert body["user"] == "agent:main:main"
        assert [m["role"] for m in body["messages"]] == ["system", "user", "assistant", "user"]
        assert history.get("agent:main:main")[-2:] == [
            {"role": "user", "content": "Calories in an avocado?"},
            {"role": "assistant", "content": "About 240 calories."},
        ]

    @pytest.mark.asyncio
    async def test_http_error_raises_and_keeps_history(self):
        history = ConversationHistory()
        client = make_client(lambda r: httpx.Response(502))
        with pytest.raises(ReasoningError, match="HTTP 502"):
            await client.respond("k", "hi", history)
        assert history.get("k") == []

    @pytest.mark.asyncio
    async def test_empty_content_raises(self):
        client = make_client(lambda r: completion(""))
        with pytest.raises(ReasoningError):
            await client.respond("k", "hi", ConversationHistory())

    @pytest.mark.asyncio
    async def test_connection_errors_retried(self):
        calls = []

        def handler(request):
            calls.append(request)
            if len(calls) < 3:
                raise httpx.ConnectError("refused", request=request)
            return completion("ok")

        client = make_client(handler, retries=2, retry_backoff=0)
        assert await client.respond("k", "hi", ConversationHistory()) == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_connection_errors_exhaust_budget(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        client = make_client(handler, retries=1, retry_backoff=0)
        with pytest.raises(ReasoningError, match="Connection failed"):
            await client.respond("k", "hi", ConversationHistory())

    def test_from_settings_defaults_model_to_agent(self):
        client = ReasoningClient.from_settings(
            GatewayConfig(url="http://gw", agent_id="helper"),
            ReasoningConfig(),
        )
        assert client.model == "openclaw:helper"
        assert client.max_tokens == 300
