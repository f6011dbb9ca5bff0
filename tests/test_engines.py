"""Tests for the LLM client contract and the Anthropic backend (mocked SDK)."""

import asyncio
from unittest.mock import MagicMock

import anthropic
import httpx
import pytest

from strata.engines.base import LLMClient, LLMMessage, LLMResponse
from strata.errors import ExternalServiceError, LLMTimeoutError


class ScriptedClient(LLMClient):
    def __init__(self, reasons: list[str], delay: float = 0, **kwargs) -> None:
        super().__init__(**kwargs)
        self.reasons = list(reasons)
        self.delay = delay
        self.budgets: list[int] = []

    async def _complete(self, messages, max_tokens):
        self.budgets.append(max_tokens)
        if self.delay:
            await asyncio.sleep(self.delay)
        return LLMResponse(content="{}", finish_reason=self.reasons.pop(0))


MESSAGES = [LLMMessage("user", "hi")]


class TestLLMClient:
    @pytest.mark.asyncio
    async def test_call_records_budget(self):
        client = ScriptedClient(["stop"], max_tokens=1234)
        response = await client.call(MESSAGES)
        assert response.max_tokens == 1234
        assert client.budgets == [1234]

    @pytest.mark.asyncio
    async def test_retry_bumps_until_not_truncated(self):
        client = ScriptedClient(["length", "length", "stop"], max_tokens=4000)
        response = await client.call_with_retry(MESSAGES)
        assert response.finish_reason == "stop"
        assert client.budgets == [4000, 6000, 8000]

    @pytest.mark.asyncio
    async def test_retry_stops_at_cap(self):
        client = ScriptedClient(["length"] * 10, max_tokens=4000)
        response = await client.call_with_retry(MESSAGES, token_step=3000, max_tokens_cap=12000)
        assert response.finish_reason == "length"
        assert client.budgets == [4000, 7000, 10000]

    @pytest.mark.asyncio
    async def test_timeout(self):
        client = ScriptedClient(["stop"], delay=1, timeout=0.01)
        with pytest.raises(LLMTimeoutError) as exc:
            await client.call(MESSAGES)
        assert isinstance(exc.value, ExternalServiceError)


@pytest.fixture
def sdk_client(monkeypatch):
    """Real SDK client class with the network call replaced."""
    monkeypatch.setenv("ANTHROPIC_API_KEY", "test-key")
    from strata.engines.anthropic_api import AnthropicLLMClient

    def _make(**kwargs) -> AnthropicLLMClient:
        client = AnthropicLLMClient(**kwargs)
        client._client = MagicMock()
        return client

    return _make


def _request() -> httpx.Request:
    return httpx.Request("POST", "https://api.anthropic.com/v1/messages")


def _message(text: str, stop_reason: str = "end_turn"):
    block = MagicMock(type="text", text=text)
    return MagicMock(content=[block], stop_reason=stop_reason)


class TestAnthropicLLMClient:
    @pytest.mark.asyncio
    async def test_system_message_and_stop_reason(self, sdk_client):
        client = sdk_client(model="claude-test", max_tokens=500)
        create = client._client.messages.create
        create.return_value = _message('{"ok": true}', "max_tokens")

        response = await client.call([LLMMessage("system", "be brief"), LLMMessage("user", "hi")])

        assert response.content == '{"ok": true}'
        assert response.finish_reason == "length"
        kwargs = create.call_args.kwargs
        assert kwargs["system"] == "be brief"
        assert kwargs["messages"] == [{"role": "user", "content": "hi"}]
        assert kwargs["max_tokens"] == 500
        assert kwargs["model"] == "claude-test"

    @pytest.mark.asyncio
    async def test_api_error(self, sdk_client):
        client = sdk_client()
        client._client.messages.create.side_effect = anthropic.APIConnectionError(request=_request())
        with pytest.raises(ExternalServiceError, match="LLM API error"):
            await client.call(MESSAGES)

    @pytest.mark.asyncio
    async def test_sdk_timeout(self, sdk_client):
        client = sdk_client()
        client._client.messages.create.side_effect = anthropic.APITimeoutError(request=_request())
        with pytest.raises(LLMTimeoutError):
            await client.call(MESSAGES)

    @pytest.mark.asyncio
    async def test_empty_content(self, sdk_client):
        client = sdk_client()
        client._client.messages.create.return_value = MagicMock(content=[], stop_reason="end_turn")
        with pytest.raises(ExternalServiceError, match="missing content"):
            await client.call(MESSAGES)

    def test_name(self, sdk_client):
        assert sdk_client().name == "anthropic_api"
